"""
Identifier normalization.

Free-text identifiers arrive from spreadsheets with every possible spelling
of the same drawing number: " p-0001 ", "P--0-0-1", "P_001", "P 001".  All
of them must collapse to one canonical value before they are compared,
stored in a uniqueness index, or fed to the similarity detector.

Rules (normalize_identifier):
    1. None / empty → ""; non-strings (numeric spreadsheet cells) are stringified
    2. trim + uppercase
    3. split on separator runs: whitespace - _ . /
    4. purely numeric segments lose their leading zeros; an all-zero segment
       that opens a numeric run (at the start, or right after a letter
       segment) and is followed by another numeric segment is itself a
       leading-zero run and disappears ("P-0-0-1" → "P-1"); zeros inside a
       run stay ("W-1-0-5" ≠ "W-1-5"), and so does a lone trailing "0"
    5. mixed alphanumeric segments are kept verbatim
    6. rejoin with "-"

Every function here is pure and total: it never raises on any input, and
applying it twice gives the same result as applying it once.
"""

import re

CANONICAL_SEPARATOR = "-"

_SEPARATORS = re.compile(r"[\s\-_./]+")
_NUMERIC = re.compile(r"[0-9]+")
_WHITESPACE = re.compile(r"\s+")


def _as_text(raw) -> str:
    if raw is None:
        return ""
    if isinstance(raw, float) and raw.is_integer():
        # Excel hands back 1001.0 for a cell typed as 1001
        raw = int(raw)
    return str(raw)


def normalize_identifier(raw) -> str:
    """Canonical form of a drawing number or other free-text identifier."""
    text = _as_text(raw).strip().upper()
    if not text:
        return ""

    segments = [seg for seg in _SEPARATORS.split(text) if seg]
    out = []
    leading = True  # inside a run of zero segments opening a numeric run
    for i, seg in enumerate(segments):
        if not _NUMERIC.fullmatch(seg):
            out.append(seg)
            leading = True
            continue
        stripped = seg.lstrip("0")
        if not stripped:
            nxt = segments[i + 1] if i + 1 < len(segments) else None
            if leading and nxt is not None and _NUMERIC.fullmatch(nxt):
                continue
            stripped = "0"
        out.append(stripped)
        leading = False
    return CANONICAL_SEPARATOR.join(out)


def normalize_size(raw) -> str:
    """Size component of a grouped identity key: 2", 1/2, '3 IN' → 2, 1X2, 3IN."""
    text = _as_text(raw).strip()
    text = text.replace('"', "").replace("'", "")
    text = _WHITESPACE.sub("", text)
    text = text.replace("/", "X").upper()
    return text or "NOSIZE"


def normalize_code(raw) -> str:
    """Commodity / class codes: trim, uppercase, single internal spaces."""
    return _WHITESPACE.sub(" ", _as_text(raw).strip()).upper()


def normalize_stencil(raw) -> str:
    return _WHITESPACE.sub("", _as_text(raw)).upper()
