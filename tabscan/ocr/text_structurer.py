"""Text structuring for raw OCR output.

Turns unstructured recognized text into a list of uniform records with no
schema information. Lines are trimmed and blank lines dropped, then the first
matching rule wins:

1. delimited table: tab, pipe or comma separated rows, first row is the header
2. key/value: most lines contain a colon, all pairs collapse into one record
3. list: one record per line with its 1-based position

A delimited block with fewer than two usable rows is not a table; it falls
through to the list rule so no line is lost.
"""
from __future__ import annotations

import re
from typing import List, Optional, Sequence

from tabscan.ocr.models import Record

# Heuristic constants, tuned empirically. Callers may override them per call.
DELIMITER_PRIORITY = ('\t', '|', ',')
KEY_VALUE_RATIO = 0.5
PIPE = '|'

LIST_ITEM_FIELD = 'Item'
LIST_POSITION_FIELD = 'Line'

_LIST_MARKER = re.compile(r"^(?:[-*•]|\d+[\.)])\s*")


def split_lines(text: Optional[str]) -> List[str]:
    if not text:
        return []
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    return [line.strip() for line in text.split('\n') if line.strip()]


def detect_delimiter(lines: Sequence[str], delimiters: Sequence[str] = DELIMITER_PRIORITY) -> Optional[str]:
    for delimiter in delimiters:
        if any(delimiter in line for line in lines):
            return delimiter
    return None


def _split_row(line: str, delimiter: str) -> List[str]:
    skip = {delimiter, PIPE}
    cells = (cell.strip() for cell in line.split(delimiter))
    return [cell for cell in cells if cell and cell not in skip]


def parse_table(lines: Sequence[str], delimiter: str) -> List[Record]:
    rows = [row for row in (_split_row(line, delimiter) for line in lines) if row]
    if len(rows) < 2:
        return parse_list(lines)

    headers, body = rows[0], rows[1:]
    records: List[Record] = []
    for row in body:
        record: Record = {}
        for i, header in enumerate(headers):
            record[header] = row[i] if i < len(row) else ''
        records.append(record)
    return records


def looks_like_key_value(lines: Sequence[str], ratio: float = KEY_VALUE_RATIO) -> bool:
    if not lines:
        return False
    with_colon = sum(1 for line in lines if ':' in line)
    return with_colon > len(lines) * ratio


def parse_key_value(lines: Sequence[str]) -> List[Record]:
    record: Record = {}
    for line in lines:
        idx = line.find(':')
        # a colon in first position has no key to its left
        if idx <= 0:
            continue
        key = line[:idx].strip()
        if not key:
            continue
        record[key] = line[idx + 1:].strip()
    return [record] if record else []


def strip_list_marker(line: str) -> str:
    stripped = _LIST_MARKER.sub('', line, count=1).strip()
    return stripped or line


def parse_list(lines: Sequence[str]) -> List[Record]:
    return [
        {LIST_ITEM_FIELD: strip_list_marker(line), LIST_POSITION_FIELD: str(i)}
        for i, line in enumerate(lines, start=1)
    ]


def classify(
    text: Optional[str],
    delimiters: Sequence[str] = DELIMITER_PRIORITY,
    key_value_ratio: float = KEY_VALUE_RATIO,
) -> List[Record]:
    """Classify raw OCR text as table, key/value or list and return records."""
    lines = split_lines(text)
    if not lines:
        return []

    delimiter = detect_delimiter(lines, delimiters)
    if delimiter is not None:
        return parse_table(lines, delimiter)

    if looks_like_key_value(lines, key_value_ratio):
        return parse_key_value(lines)

    return parse_list(lines)
