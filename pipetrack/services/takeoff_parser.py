"""
Takeoff spreadsheet parsing — CSV and XLSX → TakeoffRow.

Column headers vary between estimators ("DWG", "Drawing No", "DRAWING");
they are matched case-insensitively against HEADER_ALIASES.  Columns that
map to nothing are kept verbatim in ``TakeoffRow.extra`` and end up in the
component attribute bag under their header text.

Row numbers are spreadsheet row numbers (header = row 1) for files and
1-based positions for JSON row lists.
"""

import csv
import io
import logging
import re
from dataclasses import dataclass, field

from openpyxl import load_workbook

from pipetrack.core.exceptions import ImportFileError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# Header mapping
# ═══════════════════════════════════════════════════════════════

HEADER_ALIASES = {
    "drawing": ["drawing", "dwg", "drawing no", "drawing number", "dwg no", "iso", "isometric"],
    "type": ["type", "component type", "item type"],
    "qty": ["qty", "quantity"],
    "cmdty_code": ["cmdty code", "commodity code", "cmdty", "commodity", "item code"],
    "size": ["size", "nps"],
    "identity": ["id", "spool id", "spool", "weld number", "weld no", "weld id", "tag"],
    "spec": ["spec", "pipe spec", "specification"],
    "description": ["description", "desc"],
    "comments": ["comments", "comment", "notes", "remarks"],
    "area": ["area"],
    "system": ["system"],
    "test_package": ["test package", "test pkg", "test_package", "package"],
    "drawing_title": ["drawing title", "title"],
    "drawing_rev": ["rev", "revision", "drawing rev"],
}

REQUIRED_COLUMNS = ("drawing", "type")

_ALIAS_LOOKUP = {
    alias: canonical
    for canonical, aliases in HEADER_ALIASES.items()
    for alias in aliases
}

_HEADER_SPACES = re.compile(r"[\s_]+")

CSV_TEMPLATE_HEADER = [
    "DRAWING", "TYPE", "QTY", "CMDTY CODE", "SIZE", "ID", "SPEC",
    "DESCRIPTION", "AREA", "SYSTEM", "TEST PACKAGE", "COMMENTS",
]
CSV_TEMPLATE_EXAMPLE = [
    ["P-001", "Spool", "1", "SP-100-A", "", "P-001-SP1", "CS150", "Spool 1", "A1", "COOLING", "TP-01", ""],
    ["P-001", "Valve", "2", "VGT-2-150", "2", "", "CS150", "Gate valve", "A1", "COOLING", "TP-01", ""],
    ["P-001", "Field Weld", "1", "", "", "W-001", "CS150", "", "A1", "COOLING", "TP-01", ""],
]


def canonical_header(header) -> str | None:
    key = _HEADER_SPACES.sub(" ", str(header or "").strip().lower())
    if key in _ALIAS_LOOKUP:
        return _ALIAS_LOOKUP[key]
    return _ALIAS_LOOKUP.get(key.replace(" ", "_"))


@dataclass
class TakeoffRow:
    row_num: int
    drawing: str | None = None
    type: str | None = None
    qty: object = None
    cmdty_code: str | None = None
    size: str | None = None
    identity: str | None = None
    spec: str | None = None
    description: str | None = None
    comments: str | None = None
    area: str | None = None
    system: str | None = None
    test_package: str | None = None
    drawing_title: str | None = None
    drawing_rev: str | None = None
    extra: dict = field(default_factory=dict)

    def attributes(self) -> dict:
        """Descriptive attribute bag stored on the component."""
        bag = {
            "type_label": self.type,
            "cmdty_code": self.cmdty_code,
            "size": self.size,
            "spec": self.spec,
            "description": self.description,
            "comments": self.comments,
        }
        if self.identity:
            bag["identity_raw"] = self.identity
        bag = {k: v for k, v in bag.items() if v not in (None, "")}
        bag.update(self.extra)
        return bag


def generate_csv_template() -> str:
    """Generate a CSV template string for takeoff import."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_TEMPLATE_HEADER)
    writer.writerows(CSV_TEMPLATE_EXAMPLE)
    return output.getvalue()


# ═══════════════════════════════════════════════════════════════
# Row building
# ═══════════════════════════════════════════════════════════════

def _cell(value):
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _build_rows(headers, records, first_row_num, max_rows):
    canonical = [canonical_header(h) for h in headers]
    present = {c for c in canonical if c}
    missing = [c for c in REQUIRED_COLUMNS if c not in present]
    if missing:
        raise ImportFileError(
            f"Takeoff is missing required column(s): {', '.join(c.upper() for c in missing)}. "
            f"Found columns: {', '.join(str(h) for h in headers if h)}"
        )

    rows = []
    for offset, values in enumerate(records):
        values = list(values) + [None] * (len(headers) - len(values))
        cells = [_cell(v) for v in values[:len(headers)]]
        if not any(cells):
            continue
        row = TakeoffRow(row_num=first_row_num + offset)
        for header, canon, value in zip(headers, canonical, cells):
            if value is None:
                continue
            if canon:
                if getattr(row, canon) is None:
                    setattr(row, canon, value)
            elif header:
                row.extra[str(header).strip()] = value
        rows.append(row)
        if max_rows and len(rows) > max_rows:
            raise ImportFileError(f"Takeoff exceeds the maximum of {max_rows} rows", 413)

    if not rows:
        raise ImportFileError("Takeoff file is empty or has no data rows")
    return rows


def parse_takeoff_csv(file_content: str | bytes, max_rows: int | None = None) -> list[TakeoffRow]:
    if isinstance(file_content, bytes):
        try:
            file_content = file_content.decode("utf-8-sig")  # Handle BOM
        except UnicodeDecodeError as exc:
            raise ImportFileError(
                f"Takeoff CSV is not valid UTF-8 (byte {exc.start}); re-save it as CSV UTF-8",
            ) from exc
    reader = csv.reader(io.StringIO(file_content))
    try:
        headers = next(reader)
    except StopIteration as exc:
        raise ImportFileError("Takeoff file is empty or has no data rows") from exc
    return _build_rows(headers, reader, first_row_num=2, max_rows=max_rows)


def parse_takeoff_xlsx(file_content: bytes, max_rows: int | None = None) -> list[TakeoffRow]:
    """First worksheet; the first non-empty row is the header."""
    try:
        workbook = load_workbook(io.BytesIO(file_content), read_only=True, data_only=True)
    except Exception as exc:
        raise ImportFileError(f"Could not read XLSX workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        rows_iter = sheet.iter_rows(values_only=True)
        header_row_num = 0
        headers = None
        for values in rows_iter:
            header_row_num += 1
            if any(_cell(v) for v in values):
                headers = [_cell(v) for v in values]
                break
        if headers is None:
            raise ImportFileError("Takeoff file is empty or has no data rows")
        return _build_rows(headers, rows_iter, first_row_num=header_row_num + 1, max_rows=max_rows)
    finally:
        workbook.close()


def rows_from_records(records: list[dict], max_rows: int | None = None) -> list[TakeoffRow]:
    """JSON row objects (keys are column headers) → TakeoffRow."""
    if not isinstance(records, list):
        raise ImportFileError("rows must be a list of objects")
    if not records:
        raise ImportFileError("Takeoff file is empty or has no data rows")
    headers = []
    for record in records:
        if not isinstance(record, dict):
            raise ImportFileError("rows must be a list of objects")
        for key in record:
            if key not in headers:
                headers.append(key)
    values = [[record.get(h) for h in headers] for record in records]
    return _build_rows(headers, values, first_row_num=1, max_rows=max_rows)


def parse_takeoff_file(filename: str | None, file_content, max_rows: int | None = None) -> list[TakeoffRow]:
    name = (filename or "").lower()
    if name.endswith((".xlsx", ".xlsm")):
        if isinstance(file_content, str):
            raise ImportFileError("XLSX uploads must be sent as binary file content")
        return parse_takeoff_xlsx(file_content, max_rows=max_rows)
    return parse_takeoff_csv(file_content, max_rows=max_rows)
