"""
Progress calculation tests (pure functions, no database).

Covers:
    - template validation (weight sum exactly 100, duplicates, bad weights)
    - weighted percent for discrete and partial milestones
    - rounding half-up to two places
    - milestone state machine (complete / rollback / update)
    - prerequisite detection
"""

from decimal import Decimal

import pytest

from pipetrack.core.exceptions import InvalidTransitionError, TemplateValidationError, ValidationError
from pipetrack.models.progress_template import DEFAULT_TEMPLATES
from pipetrack.services.progress_calculator import (
    apply_milestone_action,
    calculate_percent,
    find_milestone,
    load_template_milestones,
    reaches_completion,
    unsatisfied_prerequisites,
)

SPOOL = load_template_milestones(DEFAULT_TEMPLATES["spool"][1])
THREADED = load_template_milestones(DEFAULT_TEMPLATES["threaded_pipe"][1])


class TestTemplateValidation:
    @pytest.mark.parametrize("component_type", sorted(DEFAULT_TEMPLATES))
    def test_default_templates_are_valid(self, component_type):
        specs = load_template_milestones(DEFAULT_TEMPLATES[component_type][1])
        assert sum(s.weight for s in specs) == Decimal("100")

    def test_weights_must_sum_to_100(self):
        with pytest.raises(TemplateValidationError) as exc:
            load_template_milestones([
                {"name": "A", "weight": 50, "order": 1},
                {"name": "B", "weight": 49.99, "order": 2},
            ])
        assert exc.value.details["weight_total"] == "99.99"

    def test_fractional_weights_summing_exactly(self):
        specs = load_template_milestones([
            {"name": "A", "weight": 33.33, "order": 1},
            {"name": "B", "weight": 33.33, "order": 2},
            {"name": "C", "weight": 33.34, "order": 3},
        ])
        assert [s.name for s in specs] == ["A", "B", "C"]

    @pytest.mark.parametrize("config", [
        [],
        [{"name": "A", "weight": 50, "order": 1}, {"name": "A", "weight": 50, "order": 2}],
        [{"name": "A", "weight": 50, "order": 1}, {"name": "B", "weight": 50, "order": 1}],
        [{"name": "A", "weight": 110, "order": 1}, {"name": "B", "weight": -10, "order": 2}],
        [{"name": "A", "weight": "lots", "order": 1}],
        [{"name": "", "weight": 100, "order": 1}],
    ])
    def test_structural_errors(self, config):
        with pytest.raises(TemplateValidationError):
            load_template_milestones(config)

    def test_specs_sorted_by_order(self):
        specs = load_template_milestones([
            {"name": "Late", "weight": 40, "order": 2},
            {"name": "Early", "weight": 60, "order": 1},
        ])
        assert [s.name for s in specs] == ["Early", "Late"]


class TestCalculatePercent:
    def test_discrete_receive_and_erect(self):
        assert calculate_percent(SPOOL, {"Receive": True, "Erect": True}) == Decimal("45.00")

    def test_nothing_complete(self):
        assert calculate_percent(SPOOL, {}) == Decimal("0.00")
        assert calculate_percent(SPOOL, None) == Decimal("0.00")

    def test_everything_complete(self):
        state = {s.name: True for s in SPOOL}
        assert calculate_percent(SPOOL, state) == Decimal("100.00")

    def test_partial_contributes_proportionally(self):
        assert calculate_percent(THREADED, {"Fabricate": 50}) == Decimal("8.00")

    def test_partial_independent_of_other_milestones(self):
        base = {"Punch": True, "Test": True, "Install": 25}
        without = calculate_percent(THREADED, base)
        with_fab = calculate_percent(THREADED, {**base, "Fabricate": 50})
        assert with_fab - without == Decimal("8.00")

    def test_rounding_half_up(self):
        specs = load_template_milestones([
            {"name": "A", "weight": 33.33, "order": 1, "is_partial": True},
            {"name": "B", "weight": 66.67, "order": 2},
        ])
        # 33.33 * 0.5 = 16.665 → 16.67
        assert calculate_percent(specs, {"A": 50}) == Decimal("16.67")

    def test_unknown_names_ignored(self):
        assert calculate_percent(SPOOL, {"Paint": True}) == Decimal("0.00")


class TestStateMachine:
    def test_discrete_complete_then_rollback(self):
        receive = find_milestone(SPOOL, "Receive")
        assert apply_milestone_action(receive, None, "complete") is True
        assert apply_milestone_action(receive, True, "rollback") is False

    def test_discrete_double_complete(self):
        with pytest.raises(InvalidTransitionError):
            apply_milestone_action(find_milestone(SPOOL, "Receive"), True, "complete")

    def test_discrete_rollback_not_started(self):
        with pytest.raises(InvalidTransitionError):
            apply_milestone_action(find_milestone(SPOOL, "Receive"), None, "rollback")

    def test_discrete_update_rejected(self):
        with pytest.raises(ValidationError):
            apply_milestone_action(find_milestone(SPOOL, "Receive"), None, "update", 50)

    def test_partial_update_allows_decrease(self):
        fab = find_milestone(THREADED, "Fabricate")
        assert apply_milestone_action(fab, 80, "update", 40) == 40
        assert apply_milestone_action(fab, 40, "update", "62.5") == 62.5

    @pytest.mark.parametrize("value", [-1, 101, "abc", None])
    def test_partial_update_out_of_range(self, value):
        with pytest.raises(ValidationError):
            apply_milestone_action(find_milestone(THREADED, "Fabricate"), 0, "update", value)

    def test_partial_complete_and_rollback(self):
        fab = find_milestone(THREADED, "Fabricate")
        assert apply_milestone_action(fab, 30, "complete") == 100
        assert apply_milestone_action(fab, 100, "rollback") == 0
        with pytest.raises(InvalidTransitionError):
            apply_milestone_action(fab, 100, "complete")
        with pytest.raises(InvalidTransitionError):
            apply_milestone_action(fab, 0, "rollback")

    def test_unknown_milestone(self):
        with pytest.raises(ValidationError) as exc:
            find_milestone(SPOOL, "Paint")
        assert "Receive" in exc.value.details["available"]

    def test_reaches_completion(self):
        fab = find_milestone(THREADED, "Fabricate")
        assert reaches_completion(fab, 50, 100)
        assert not reaches_completion(fab, 20, 60)
        assert not reaches_completion(fab, 100, 100)


class TestPrerequisites:
    def test_out_of_order(self):
        assert unsatisfied_prerequisites(SPOOL, {"Receive": True}, "Connect") == ["Erect"]

    def test_in_order(self):
        assert unsatisfied_prerequisites(SPOOL, {"Receive": True, "Erect": True}, "Connect") == []

    def test_partial_prerequisite_needs_100(self):
        assert unsatisfied_prerequisites(THREADED, {"Fabricate": 99}, "Install") == ["Fabricate"]
        assert unsatisfied_prerequisites(THREADED, {"Fabricate": 100}, "Install") == []
