"""
Identity resolution tests.

Covers:
    - exact identity (spool / field weld) keys and their required field
    - grouped rows exploding into QTY sequence-numbered keys
    - allocator numbering per group in batch order
    - quantity validation (zero, negative, fractional, missing)
"""

import pytest

from pipetrack.core.exceptions import ValidationError
from pipetrack.models.component import ComponentType
from pipetrack.services.identity_resolver import (
    ExactIdentityKey,
    GroupKey,
    SequenceAllocator,
    group_key_for,
    parse_quantity,
    resolve,
)
from pipetrack.services.takeoff_parser import TakeoffRow


def _row(**kw):
    kw.setdefault("row_num", 2)
    kw.setdefault("drawing", "P-001")
    return TakeoffRow(**kw)


class TestExactIdentity:
    def test_spool_uses_identity_column(self):
        key = resolve(_row(type="Spool", identity="sp-0100"), ComponentType.SPOOL, SequenceAllocator())
        assert key == ExactIdentityKey(field="spool_id", value="SP-100")
        assert key.token == "spool_id=SP-100"
        assert key.as_dict() == {"spool_id": "SP-100"}
        assert key.group_token is None and key.seq is None

    def test_field_weld_falls_back_to_commodity_code(self):
        key = resolve(_row(type="Field Weld", cmdty_code="W-001"), "field_weld", SequenceAllocator())
        assert key.field == "weld_number"
        assert key.value == "W-1"

    def test_missing_identity_is_error(self):
        with pytest.raises(ValidationError) as exc:
            resolve(_row(type="Spool"), ComponentType.SPOOL, SequenceAllocator())
        assert exc.value.details["field"] == "spool_id"

    def test_exact_identity_rejects_bad_qty(self):
        with pytest.raises(ValidationError):
            resolve(_row(type="Spool", identity="SP-1", qty="0"), ComponentType.SPOOL, SequenceAllocator())


class TestGroupedIdentity:
    def test_quantity_explodes_into_sequence(self):
        keys = resolve(
            _row(type="Valve", cmdty_code="vgt-2", size='2"', qty="3"),
            ComponentType.VALVE, SequenceAllocator(),
        )
        assert [k.seq for k in keys] == [1, 2, 3]
        assert keys[0].group == GroupKey("P-1", "VGT-2", "2")
        assert keys[2].token == "P-1|VGT-2|2|#3"
        assert keys[0].as_dict() == {
            "drawing_norm": "P-1", "commodity_code": "VGT-2", "size": "2", "seq": 1,
        }

    def test_same_group_continues_numbering_within_batch(self):
        allocator = SequenceAllocator()
        first = resolve(_row(cmdty_code="F1", qty=2), ComponentType.FITTING, allocator)
        second = resolve(_row(cmdty_code="F1", qty=2), ComponentType.FITTING, allocator)
        assert [k.seq for k in first + second] == [1, 2, 3, 4]

    def test_groups_number_independently(self):
        allocator = SequenceAllocator()
        a = resolve(_row(cmdty_code="F1", size="2", qty=1), ComponentType.FITTING, allocator)
        b = resolve(_row(cmdty_code="F1", size="3", qty=1), ComponentType.FITTING, allocator)
        assert a[0].seq == 1 and b[0].seq == 1
        assert a[0].group_token != b[0].group_token

    def test_spelling_variants_share_a_group(self):
        assert group_key_for(" p-0001 ", " vgt-2 ", '2"') == group_key_for("P_001", "VGT-2", "2")

    def test_existing_sequences(self):
        group = group_key_for("P-001", "F1", "2")
        allocator = SequenceAllocator({group.token: {1, 2}})
        keys = allocator.allocate(group, 3)
        assert [allocator.is_existing(k) for k in keys] == [True, True, False]
        assert allocator.existing_count(group.token) == 2
        assert allocator.existing_max(group.token) == 2

    def test_missing_commodity_code(self):
        with pytest.raises(ValidationError) as exc:
            resolve(_row(qty=1), ComponentType.VALVE, SequenceAllocator())
        assert exc.value.details["field"] == "cmdty_code"


class TestParseQuantity:
    @pytest.mark.parametrize("raw, expected", [("3", 3), (3, 3), (3.0, 3), (" 1,200 ", 1200)])
    def test_valid(self, raw, expected):
        assert parse_quantity(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "0", 0, "-2", "1.5", "abc", True])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_quantity(raw)
        assert exc.value.details["field"] == "qty"
