"""
Takeoff TYPE column → ComponentType.

Spreadsheet type labels are free text ("Valve - Gate", "THREADED PIPE",
"Pipe Support", "Field Weld").  The mapping is an ordered keyword table,
matched case-insensitively against the label; the first keyword found
wins, so more specific phrases sit above the generic ones they contain.
Keywords match at a word start; a trailing space makes one match the whole
word only ("weld " does not catch "Welding Rod").

Exclusions are checked before the table: hardware the project does not
track individually (gaskets, bolts, nuts by default) is dropped with a
non-error skip reason.

What happens to labels that match nothing is a configuration decision
(IMPORT_UNMATCHED_TYPE_POLICY): "misc" maps them to misc_component,
"reject" turns them into a row error.
"""

import re
from dataclasses import dataclass

from pipetrack.models.component import ComponentType

UNMATCHED_POLICIES = {"misc", "reject"}

# Order matters: first match wins.
TYPE_KEYWORDS = [
    ("threaded pipe", ComponentType.THREADED_PIPE),
    ("threaded_pipe", ComponentType.THREADED_PIPE),
    ("field weld", ComponentType.FIELD_WELD),
    ("field_weld", ComponentType.FIELD_WELD),
    ("weldolet", ComponentType.FITTING),
    ("sockolet", ComponentType.FITTING),
    ("threadolet", ComponentType.FITTING),
    ("elbolet", ComponentType.FITTING),
    ("latrolet", ComponentType.FITTING),
    ("nipolet", ComponentType.FITTING),
    ("flange", ComponentType.FLANGE),
    ("weld ", ComponentType.FIELD_WELD),
    ("spool", ComponentType.SPOOL),
    ("support", ComponentType.SUPPORT),
    ("hanger", ComponentType.SUPPORT),
    ("valve", ComponentType.VALVE),
    ("instrument", ComponentType.INSTRUMENT),
    ("tubing", ComponentType.TUBING),
    ("tube", ComponentType.TUBING),
    ("hose", ComponentType.HOSE),
    ("fitting", ComponentType.FITTING),
    ("elbow", ComponentType.FITTING),
    ("tee", ComponentType.FITTING),
    ("reducer", ComponentType.FITTING),
    ("coupling", ComponentType.FITTING),
    ("cap", ComponentType.FITTING),
    ("misc", ComponentType.MISC_COMPONENT),
]

_WORD_SPLIT = re.compile(r"[\s\-_/,]+")


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one TYPE label.

    Exactly one of the three outcomes is set:
        component_type  the row becomes a component of this type
        skip_reason     the row is dropped without being an error
        error           the row is invalid
    """
    component_type: ComponentType | None = None
    skip_reason: str | None = None
    error: str | None = None


def _words(label: str) -> str:
    # pad with spaces so keyword matching respects word starts (" tee" ≠ "steel")
    return " " + " ".join(w for w in _WORD_SPLIT.split(label.lower()) if w) + " "


def classify(label, excluded=("gasket", "bolt", "nut"), unmatched_policy="misc") -> Classification:
    """Map a free-text TYPE label to a ComponentType."""
    raw = (str(label) if label is not None else "").strip()
    if not raw:
        return Classification(error="TYPE is required")

    exact = raw.lower().replace(" ", "_")
    for ct in ComponentType:
        if exact == ct.value:
            return Classification(component_type=ct)

    words = _words(raw)
    for keyword in excluded:
        if f" {keyword.lower()}" in words:
            return Classification(skip_reason=f"Unsupported component type: {raw}")

    for keyword, component_type in TYPE_KEYWORDS:
        if f" {keyword}" in words:
            return Classification(component_type=component_type)

    if unmatched_policy == "reject":
        return Classification(error=f"Unrecognized component type: {raw}")
    return Classification(component_type=ComponentType.MISC_COMPONENT)
