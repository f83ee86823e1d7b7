from __future__ import annotations

import csv
import io
import json
from typing import Any

from chapel.errors import InvalidFile


JSON_MIME_TYPES = ('application/json', 'text/json')


def _looks_like_json(filename: str, mime_type: str, text: str) -> bool:
    if (mime_type or '').lower() in JSON_MIME_TYPES or (filename or '').lower().endswith('.json'):
        return True
    return text.lstrip().startswith('[')


def _parse_json_rows(text: str) -> list[Any]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidFile('Scan file is not valid JSON', details={'error': str(exc)}) from exc
    if isinstance(parsed, dict) and isinstance(parsed.get('rows'), list):
        parsed = parsed['rows']
    if not isinstance(parsed, list):
        raise InvalidFile('Scan file must contain a list of rows')
    return parsed


def _parse_csv_rows(text: str) -> list[dict[str, str]]:
    try:
        reader = csv.DictReader(io.StringIO(text))
        headers = [str(item or '').strip().lower() for item in (reader.fieldnames or [])]
        if not any(headers):
            raise InvalidFile('Scan file has no header row')
        rows: list[dict[str, str]] = []
        for raw in reader:
            values = {
                header: str(raw.get(original) or '').strip()
                for header, original in zip(headers, reader.fieldnames or [])
                if header
            }
            if not any(values.values()):
                continue
            rows.append(values)
    except csv.Error as exc:
        raise InvalidFile('CSV parsing failed', details={'error': str(exc)}) from exc
    return rows


def read_scan_rows(file_bytes: bytes, *, filename: str = '', mime_type: str = '') -> list[Any]:
    """Turn an uploaded scan export into a list of raw row mappings."""
    if not file_bytes:
        raise InvalidFile('Scan file is empty')
    try:
        text = file_bytes.decode('utf-8-sig')
    except UnicodeDecodeError as exc:
        raise InvalidFile('Scan file must be UTF-8 text', details={'error': str(exc)}) from exc
    if not text.strip():
        raise InvalidFile('Scan file is empty')
    if _looks_like_json(filename, mime_type, text):
        return _parse_json_rows(text)
    return _parse_csv_rows(text)
