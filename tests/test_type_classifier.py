"""
TYPE label classification tests.

Covers exact enum values, keyword matching order, hardware exclusions and
both unmatched-type policies.
"""

import pytest

from pipetrack.models.component import ComponentType
from pipetrack.services.type_classifier import classify


class TestClassify:
    @pytest.mark.parametrize("label, expected", [
        ("spool", ComponentType.SPOOL),
        ("Field Weld", ComponentType.FIELD_WELD),
        ("THREADED PIPE", ComponentType.THREADED_PIPE),
        ("misc_component", ComponentType.MISC_COMPONENT),
    ])
    def test_enum_values(self, label, expected):
        assert classify(label).component_type == expected

    @pytest.mark.parametrize("label, expected", [
        ("Valve - Gate", ComponentType.VALVE),
        ("Pipe Support", ComponentType.SUPPORT),
        ("Spring Hanger", ComponentType.SUPPORT),
        ("90 Elbow", ComponentType.FITTING),
        ("Weld Neck Flange", ComponentType.FLANGE),
        ("SS Tubing", ComponentType.TUBING),
        ("Weldolet", ComponentType.FITTING),
        ("Sockolet 3000#", ComponentType.FITTING),
        ("Weld", ComponentType.FIELD_WELD),
    ])
    def test_keywords(self, label, expected):
        assert classify(label).component_type == expected

    def test_keyword_respects_word_start(self):
        # "steel" must not match the "tee" keyword
        assert classify("Steel Plate").component_type == ComponentType.MISC_COMPONENT

    def test_weld_keyword_matches_whole_word_only(self):
        assert classify("Welding Rod").component_type == ComponentType.MISC_COMPONENT

    @pytest.mark.parametrize("label", ["Gasket", "Stud Bolt", "Hex Nut"])
    def test_excluded_hardware_is_skipped(self, label):
        result = classify(label)
        assert result.component_type is None
        assert result.error is None
        assert result.skip_reason == f"Unsupported component type: {label}"

    def test_custom_exclusions(self):
        assert classify("Gasket", excluded=()).component_type == ComponentType.MISC_COMPONENT
        assert classify("Gate Valve", excluded=("valve",)).skip_reason

    def test_unmatched_policy_misc(self):
        assert classify("Widget").component_type == ComponentType.MISC_COMPONENT

    def test_unmatched_policy_reject(self):
        result = classify("Widget", unmatched_policy="reject")
        assert result.component_type is None
        assert "Widget" in result.error

    def test_blank_label_is_error(self):
        assert classify("  ").error == "TYPE is required"
        assert classify(None).error == "TYPE is required"
