# reader.py
"""
Turn uploaded bytes into RawContent.

Responsibilities:
- Pick the top-level strategy from the file extension only:
  .csv / .txt -> spreadsheet rows, .json -> structured payload.
- Strip a UTF-8 BOM, sniff the delimiter (';' when the header line has one).
- Normalize header names (lower-case, trimmed) so variants match flexibly.
- Trim every cell; keep empty strings so parsers can decide on defaults.

This module is "pure" (no DB calls, no format knowledge).
"""

import csv
import json
from io import BytesIO, TextIOWrapper
from pathlib import PurePath
from typing import Dict, List

from ..errors import UnsupportedFileType
from .base import RawContent

ROW_EXTENSIONS = {".csv", ".txt"}
PAYLOAD_EXTENSIONS = {".json"}


def _normalize_headers(headers: List[str]) -> List[str]:
    """Lowercase and strip whitespace so headers are matched flexibly."""
    return [h.strip().lower() for h in headers]


def read_rows(file_bytes: bytes, encoding: str = "utf-8-sig") -> RawContent:
    # Wrap bytes with a text stream so csv can read it as lines of text.
    text_stream = TextIOWrapper(BytesIO(file_bytes), encoding=encoding, newline="", errors="replace")
    first_line = text_stream.readline()
    text_stream.seek(0)
    delimiter = ";" if ";" in first_line else ","

    reader = csv.DictReader(text_stream, delimiter=delimiter)
    if reader.fieldnames is None:
        return RawContent(kind="rows", delimiter=delimiter)

    headers = _normalize_headers(reader.fieldnames)
    header_map = {orig: norm for orig, norm in zip(reader.fieldnames, headers)}

    rows: List[Dict[str, str]] = []
    for row in reader:
        normalized: Dict[str, str] = {}
        for orig_key, value in row.items():
            if orig_key is None:  # surplus cells beyond the header
                continue
            key = header_map.get(orig_key, orig_key.strip().lower())
            normalized[key] = value.strip() if isinstance(value, str) else ""
        if any(normalized.values()):  # skip blank lines
            rows.append(normalized)

    return RawContent(kind="rows", headers=tuple(headers), rows=rows, delimiter=delimiter)


def read_payload(file_bytes: bytes) -> RawContent:
    try:
        payload = json.loads(file_bytes.decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError):
        payload = None
    return RawContent(kind="payload", payload=payload)


def read_content(filename: str, file_bytes: bytes) -> RawContent:
    suffix = PurePath(filename or "").suffix.lower()
    if suffix in ROW_EXTENSIONS:
        return read_rows(file_bytes)
    if suffix in PAYLOAD_EXTENSIONS:
        return read_payload(file_bytes)
    raise UnsupportedFileType(filename)
