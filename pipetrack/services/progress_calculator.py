"""
Progress calculation — pure functions, no storage access.

    percent_complete = Σ weight_i × contribution_i

    contribution_i = 1 / 0      discrete milestone complete / not
                     value/100  partial milestone at value ∈ [0, 100]

Weights sum to exactly 100, so the result is already a percentage.  All
arithmetic is Decimal; the result is rounded half-up to two places and
clamped to [0, 100].

Milestone state machine:
    discrete   not-started ──complete──▶ complete ──rollback──▶ not-started
    partial    any value in [0, 100] via update (decreases allowed);
               complete sets 100, rollback sets 0
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from pipetrack.core.exceptions import InvalidTransitionError, TemplateValidationError, ValidationError

HUNDRED = Decimal("100")
TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class MilestoneSpec:
    name: str
    weight: Decimal
    order: int
    is_partial: bool = False
    requires_operator: bool = False


def load_template_milestones(config) -> list[MilestoneSpec]:
    """Validate a template's milestone list and return it ordered.

    Raises TemplateValidationError when names or orders repeat, a weight is
    not a positive number, or the weights do not sum to exactly 100.
    """
    if not config:
        raise TemplateValidationError("Template has no milestones")

    specs = []
    names, orders = set(), set()
    for entry in config:
        name = (entry.get("name") or "").strip()
        if not name:
            raise TemplateValidationError("Milestone name is required")
        if name in names:
            raise TemplateValidationError(f"Duplicate milestone name '{name}'")
        names.add(name)

        try:
            order = int(entry.get("order"))
        except (TypeError, ValueError) as exc:
            raise TemplateValidationError(f"Milestone '{name}' has no valid order") from exc
        if order in orders:
            raise TemplateValidationError(f"Duplicate milestone order {order}")
        orders.add(order)

        try:
            weight = Decimal(str(entry.get("weight")))
        except (InvalidOperation, TypeError) as exc:
            raise TemplateValidationError(f"Milestone '{name}' has no valid weight") from exc
        if not weight.is_finite() or weight <= 0:
            raise TemplateValidationError(f"Milestone '{name}' weight must be positive")

        specs.append(MilestoneSpec(
            name=name,
            weight=weight,
            order=order,
            is_partial=bool(entry.get("is_partial", False)),
            requires_operator=bool(entry.get("requires_operator", False)),
        ))

    total = sum((s.weight for s in specs), Decimal("0"))
    if total != HUNDRED:
        raise TemplateValidationError(
            f"Milestone weights must sum to 100, got {total}",
            details={"weight_total": str(total)},
        )
    return sorted(specs, key=lambda s: s.order)


def contribution(spec: MilestoneSpec, value) -> Decimal:
    if spec.is_partial:
        if value is None or isinstance(value, bool):
            return Decimal("1") if value is True else Decimal("0")
        return max(Decimal("0"), min(HUNDRED, Decimal(str(value)))) / HUNDRED
    return Decimal("1") if value else Decimal("0")


def calculate_percent(milestones: list[MilestoneSpec], current_state: dict | None) -> Decimal:
    """Weighted percent complete, rounded half-up to two decimals."""
    state = current_state or {}
    total = sum(
        (spec.weight * contribution(spec, state.get(spec.name)) for spec in milestones),
        Decimal("0"),
    )
    total = max(Decimal("0"), min(HUNDRED, total))
    return total.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def is_satisfied(spec: MilestoneSpec, value) -> bool:
    if spec.is_partial:
        return contribution(spec, value) >= Decimal("1")
    return bool(value)


def unsatisfied_prerequisites(milestones, current_state, milestone_name) -> list[str]:
    """Lower-order milestones not yet satisfied, in template order."""
    state = current_state or {}
    target = find_milestone(milestones, milestone_name)
    return [
        spec.name for spec in milestones
        if spec.order < target.order and not is_satisfied(spec, state.get(spec.name))
    ]


def find_milestone(milestones, milestone_name) -> MilestoneSpec:
    for spec in milestones:
        if spec.name == milestone_name:
            return spec
    raise ValidationError(
        f"Milestone '{milestone_name}' is not part of this component's template",
        details={"milestone": milestone_name, "available": [s.name for s in milestones]},
    )


def _partial_value(raw) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, TypeError) as exc:
        raise ValidationError(f"Partial milestone value must be a number, got {raw!r}") from exc
    if not value.is_finite() or value < 0 or value > HUNDRED:
        raise ValidationError(f"Partial milestone value must be between 0 and 100, got {raw!r}")
    return value


def _json_number(value: Decimal):
    return int(value) if value == value.to_integral_value() else float(value)


def apply_milestone_action(spec: MilestoneSpec, current_value, action: str, value=None):
    """Return the milestone's next value after *action*.

    Raises InvalidTransitionError for moves the state machine does not
    allow and ValidationError for malformed values.
    """
    if spec.is_partial:
        current = contribution(spec, current_value) * HUNDRED
        if action == "update":
            if value is None:
                raise ValidationError("A value is required to update a partial milestone")
            return _json_number(_partial_value(value))
        if action == "complete":
            if current >= HUNDRED:
                raise InvalidTransitionError(f"milestone '{spec.name}'", "complete", "complete")
            return 100
        if action == "rollback":
            if current <= 0:
                raise InvalidTransitionError(f"milestone '{spec.name}'", "not-started", "rollback")
            return 0
        raise ValidationError(f"Unknown milestone action '{action}'")

    if action == "complete":
        if current_value:
            raise InvalidTransitionError(f"milestone '{spec.name}'", "complete", "complete")
        return True
    if action == "rollback":
        if not current_value:
            raise InvalidTransitionError(f"milestone '{spec.name}'", "not-started", "rollback")
        return False
    if action == "update":
        raise ValidationError(
            f"Milestone '{spec.name}' is discrete; use complete or rollback",
            details={"milestone": spec.name},
        )
    raise ValidationError(f"Unknown milestone action '{action}'")


def reaches_completion(spec: MilestoneSpec, previous_value, new_value) -> bool:
    """True when this change moves the milestone into its satisfied state."""
    return is_satisfied(spec, new_value) and not is_satisfied(spec, previous_value)
