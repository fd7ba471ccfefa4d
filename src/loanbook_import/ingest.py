"""loanbook_import.ingest

Turns an uploaded file into a header row and ordered raw rows.

CSV (comma-delimited, double-quote escaping, optional UTF-8 BOM) and .xlsx
spreadsheets are accepted; for spreadsheets only the first sheet is read.
Blank rows are dropped without consuming a row index, so row 1 is always
the first non-blank line after the header.  No schema knowledge lives here.
"""

from __future__ import annotations

import csv
import io
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from loanbook_import.shared import ParseError

_XLSX_MAGIC = b"PK\x03\x04"
_SPREADSHEET_SUFFIXES = (".xlsx", ".xlsm")
_CSV_ENCODINGS = ("utf-8-sig", "cp1252")


@dataclass(frozen=True)
class RawRow:
    """One data row: stable 1-based index plus header→cell pairs in file order."""

    index: int
    values: dict[str, str]

    def get(self, header: str | None) -> str | None:
        if header is None:
            return None
        return self.values.get(header)


@dataclass(frozen=True)
class IngestedFile:
    headers: tuple[str, ...]
    rows: tuple[RawRow, ...]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def ingest_file(content: bytes, file_name: str = "") -> IngestedFile:
    """Parse uploaded bytes into headers + rows.

    Raises:
        ParseError: empty file, unreadable format, or missing/invalid header row.
    """
    if not content or not content.strip():
        raise ParseError("file is empty")

    if _is_spreadsheet(content, file_name):
        table = _read_spreadsheet(content)
    else:
        table = _read_csv(content)

    return _build(table)


def _is_spreadsheet(content: bytes, file_name: str) -> bool:
    if file_name.lower().endswith(_SPREADSHEET_SUFFIXES):
        return True
    if file_name.lower().endswith(".xls"):
        raise ParseError("legacy .xls workbooks are not supported; save as .xlsx or .csv")
    return content.startswith(_XLSX_MAGIC)


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _decode(content: bytes) -> str:
    for encoding in _CSV_ENCODINGS:
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ParseError("file is not valid text")


def _read_csv(content: bytes) -> list[list[str]]:
    text = _decode(content)
    if "\x00" in text:
        raise ParseError("file is not a CSV or spreadsheet")
    try:
        return [list(r) for r in csv.reader(io.StringIO(text, newline=""), strict=True)]
    except csv.Error as exc:
        raise ParseError(f"malformed CSV: {exc}") from exc


def _read_spreadsheet(content: bytes) -> list[list[str]]:
    try:
        workbook = openpyxl.load_workbook(
            io.BytesIO(content), read_only=True, data_only=True
        )
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise ParseError(f"unreadable spreadsheet: {exc}") from exc
    try:
        if not workbook.worksheets:
            raise ParseError("spreadsheet has no sheets")
        sheet = workbook.worksheets[0]
        return [
            [_cell_text(v) for v in row]
            for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


# ---------------------------------------------------------------------------
# Table → IngestedFile
# ---------------------------------------------------------------------------

def _is_blank(cells: list[str]) -> bool:
    return all(not c.strip() for c in cells)


def _build(table: list[list[str]]) -> IngestedFile:
    # Leading blank lines are skipped; the first non-blank line is the header.
    position = 0
    while position < len(table) and _is_blank(table[position]):
        position += 1
    if position == len(table):
        raise ParseError("missing header row")

    header_cells = [c.strip() for c in table[position]]
    while header_cells and not header_cells[-1]:
        header_cells.pop()
    if any(not h for h in header_cells):
        raise ParseError("header row contains a blank column name")
    duplicates = sorted({h for h in header_cells if header_cells.count(h) > 1})
    if duplicates:
        raise ParseError(f"header row contains duplicate columns: {duplicates}")

    rows: list[RawRow] = []
    for cells in table[position + 1:]:
        if _is_blank(cells):
            continue
        padded = list(cells[: len(header_cells)])
        padded += [""] * (len(header_cells) - len(padded))
        rows.append(RawRow(index=len(rows) + 1, values=dict(zip(header_cells, padded))))

    return IngestedFile(headers=tuple(header_cells), rows=tuple(rows))
