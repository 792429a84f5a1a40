"""
Identity resolution for takeoff rows.

Two key shapes, never mixed:

    ExactIdentityKey    spool / field_weld — one natural key field.
    GroupedIdentityKey  everything else — (drawing, commodity code, size, seq).

Grouped rows explode: a row asking for QTY 3 of a group yields three keys.
Sequence numbers are handed out by a SequenceAllocator that is scoped to
one validation pass.  It numbers each group from 1 in batch order, so a
batch that restates the quantities already on file resolves to exactly the
identities that exist; anything past the existing count is new.

The resolver performs no deduplication and no storage access.  Checking
keys against the existing dataset is the import validator's job.
"""

from __future__ import annotations

from dataclasses import dataclass

from pipetrack.core.exceptions import ValidationError
from pipetrack.models.component import EXACT_IDENTITY_FIELDS, ComponentType
from pipetrack.services.normalizer import normalize_code, normalize_identifier, normalize_size

GROUP_SEPARATOR = "|"


@dataclass(frozen=True)
class ExactIdentityKey:
    field: str
    value: str

    @property
    def token(self) -> str:
        return f"{self.field}={self.value}"

    @property
    def group_token(self) -> None:
        return None

    @property
    def seq(self) -> None:
        return None

    def as_dict(self) -> dict:
        return {self.field: self.value}


@dataclass(frozen=True)
class GroupKey:
    drawing_norm: str
    commodity_code: str
    size: str

    @property
    def token(self) -> str:
        return GROUP_SEPARATOR.join((self.drawing_norm, self.commodity_code, self.size))

    def as_dict(self) -> dict:
        return {
            "drawing_norm": self.drawing_norm,
            "commodity_code": self.commodity_code,
            "size": self.size,
        }


@dataclass(frozen=True)
class GroupedIdentityKey:
    group: GroupKey
    seq: int

    @property
    def token(self) -> str:
        return f"{self.group.token}{GROUP_SEPARATOR}#{self.seq}"

    @property
    def group_token(self) -> str:
        return self.group.token

    def as_dict(self) -> dict:
        return {**self.group.as_dict(), "seq": self.seq}


class SequenceAllocator:
    """Hands out grouped sequence numbers for one validation pass.

    ``claimed`` tracks the highest sequence given to each group so far in
    this batch; ``existing`` holds the active sequences already stored per
    group (loaded once, up front, by the caller).
    """

    def __init__(self, existing: dict[str, set[int]] | None = None):
        self.existing = existing or {}
        self.claimed: dict[str, int] = {}

    def allocate(self, group: GroupKey, quantity: int) -> list[GroupedIdentityKey]:
        start = self.claimed.get(group.token, 0)
        self.claimed[group.token] = start + quantity
        return [GroupedIdentityKey(group, seq) for seq in range(start + 1, start + quantity + 1)]

    def existing_count(self, group_token: str) -> int:
        return len(self.existing.get(group_token, ()))

    def existing_max(self, group_token: str) -> int:
        return max(self.existing.get(group_token, ()), default=0)

    def is_existing(self, key: GroupedIdentityKey) -> bool:
        return key.seq in self.existing.get(key.group_token, ())


def parse_quantity(raw) -> int:
    """Positive integer quantity; anything else is a ValidationError."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError("QTY is required", details={"field": "qty"})
    if isinstance(raw, bool):
        raise ValidationError(f"QTY must be a whole number, got {raw!r}", details={"field": "qty"})
    try:
        number = float(str(raw).strip().replace(",", ""))
    except ValueError as exc:
        raise ValidationError(
            f"QTY must be a whole number, got {raw!r}", details={"field": "qty"},
        ) from exc
    if not number.is_integer():
        raise ValidationError(f"QTY must be a whole number, got {raw!r}", details={"field": "qty"})
    quantity = int(number)
    if quantity <= 0:
        raise ValidationError(f"QTY must be greater than zero, got {quantity}", details={"field": "qty"})
    return quantity


def group_key_for(drawing_raw, commodity_code, size) -> GroupKey:
    return GroupKey(
        drawing_norm=normalize_identifier(drawing_raw),
        commodity_code=normalize_code(commodity_code),
        size=normalize_size(size),
    )


def resolve(row, component_type, allocator: SequenceAllocator):
    """Resolve one takeoff row to its identity key(s).

    Returns an ExactIdentityKey for exact types, or a list of
    GroupedIdentityKey (length = requested quantity) for grouped types.
    Raises ValidationError when the row cannot carry an identity.
    """
    component_type = ComponentType(component_type)

    if component_type in EXACT_IDENTITY_FIELDS:
        field = EXACT_IDENTITY_FIELDS[component_type]
        raw = row.identity or row.cmdty_code
        value = normalize_identifier(raw)
        if not value:
            raise ValidationError(
                f"{field} is required for {component_type.value}", details={"field": field},
            )
        if row.qty not in (None, ""):
            parse_quantity(row.qty)
        return ExactIdentityKey(field=field, value=value)

    if not normalize_code(row.cmdty_code):
        raise ValidationError(
            f"CMDTY CODE is required for {component_type.value}", details={"field": "cmdty_code"},
        )
    quantity = parse_quantity(row.qty)
    group = group_key_for(row.drawing, row.cmdty_code, row.size)
    return allocator.allocate(group, quantity)
