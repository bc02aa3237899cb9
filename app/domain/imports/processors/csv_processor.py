import csv
import logging
from dataclasses import dataclass, field
from io import StringIO
from typing import List

logger = logging.getLogger(__name__)

BOM = "\ufeff"

# Candidate delimiters in tie-break order: an equal count keeps the earlier one.
DELIMITER_CANDIDATES = (",", ";", "\t")


@dataclass
class ParsedTable:
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    delimiter: str = ","

    @property
    def is_empty(self) -> bool:
        return not self.headers or not self.rows


@dataclass
class TablePreview:
    headers: List[str]
    rows: List[List[str]]
    delimiter: str
    valid_rows: int
    invalid_rows: int


def _first_logical_line(text: str) -> str:
    """
    Return the first non-blank line, treating newlines inside quoted fields as
    part of the line.
    """
    in_quotes = False
    start = 0
    for index, char in enumerate(text):
        if char == '"':
            in_quotes = not in_quotes
        elif char == "\n" and not in_quotes:
            line = text[start:index].rstrip("\r")
            if line.strip():
                return line
            start = index + 1
    return text[start:].rstrip("\r") if text[start:].strip() else ""


def _count_unquoted(line: str, delimiter: str) -> int:
    count = 0
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            count += 1
    return count


def detect_delimiter(text: str) -> str:
    """
    Pick the delimiter from the first logical line: whichever of tab, semicolon
    or comma occurs most often. Ties favor comma.
    """
    first_line = _first_logical_line(text.lstrip(BOM))
    best = DELIMITER_CANDIDATES[0]
    best_count = _count_unquoted(first_line, best)
    for candidate in DELIMITER_CANDIDATES[1:]:
        count = _count_unquoted(first_line, candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def _read_rows(text: str, delimiter: str) -> List[List[str]]:
    reader = csv.reader(StringIO(text, newline=""), delimiter=delimiter, skipinitialspace=True)
    return [row for row in reader]


def parse_tabular_text(text: str) -> ParsedTable:
    """
    Parse delimited text into headers and data rows.

    The delimiter is sniffed once from the first logical line and reused for
    every subsequent line. Quoted fields may span lines and use ``""`` for a
    literal quote. Every field is trimmed and rows made only of empty fields
    are dropped. Input without any non-blank line yields an empty table.
    """
    if not text or not text.strip(BOM).strip():
        return ParsedTable()

    content = text[1:] if text.startswith(BOM) else text
    delimiter = detect_delimiter(content)
    raw_rows = _read_rows(content, delimiter)

    headers: List[str] = []
    rows: List[List[str]] = []
    for raw in raw_rows:
        values = [value.strip() for value in raw]
        if not any(values):
            continue
        if not headers:
            headers = values
            if headers[0].startswith(BOM):
                headers[0] = headers[0][len(BOM):].strip()
            continue
        rows.append(values)

    logger.debug(
        "Parsed table with %d columns and %d rows (delimiter=%r)",
        len(headers),
        len(rows),
        delimiter,
    )
    return ParsedTable(headers=headers, rows=rows, delimiter=delimiter)


def preview_tabular_text(text: str, limit: int = 5) -> TablePreview:
    """Headers, the first ``limit`` data rows and valid/blank row counts for display."""
    if not text or not text.strip(BOM).strip():
        return TablePreview(headers=[], rows=[], delimiter=",", valid_rows=0, invalid_rows=0)

    content = text[1:] if text.startswith(BOM) else text
    delimiter = detect_delimiter(content)
    raw_rows = [[value.strip() for value in row] for row in _read_rows(content, delimiter)]

    header_index = next((i for i, row in enumerate(raw_rows) if any(row)), None)
    if header_index is None:
        return TablePreview(headers=[], rows=[], delimiter=delimiter, valid_rows=0, invalid_rows=0)

    body = [row for row in raw_rows[header_index + 1:] if row]
    valid = [row for row in body if any(row)]
    return TablePreview(
        headers=raw_rows[header_index],
        rows=valid[:limit],
        delimiter=delimiter,
        valid_rows=len(valid),
        invalid_rows=len(body) - len(valid),
    )
