"""
Serialisation of collected user data into export files.

CSV layout, one block per domain present in the data:

    # Profile Data
    field,value
    email,user@example.com

    # Sessions Data
    session_id,exercise_type,...
    s1,squat,...

Quoting follows RFC 4180 through the ``csv`` module. Nested values (device
info, reminder days) are written as compact JSON with sorted keys.
"""

import csv
import io
import json
from typing import Any


SECTION_TITLES = {
    "profile": "Profile",
    "sessions": "Sessions",
    "consents": "Consents",
    "settings": "Settings",
    "subscriptions": "Subscriptions",
}
SINGULAR_DOMAINS = ("profile", "settings")

_DOMAIN_BY_SECTION = {f"# {title} Data": domain for domain, title in SECTION_TITLES.items()}


def to_json(data: dict) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def cell(value: Any) -> str:
    """Render one value as CSV cell text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def _columns(records: list[dict]) -> list[str]:
    columns: list[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    return columns


def to_csv(data: dict) -> str:
    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer)
    first = True

    for domain, title in SECTION_TITLES.items():
        if domain not in data or data[domain] is None:
            continue
        if not first:
            buffer.write("\r\n")
        first = False

        writer.writerow([f"# {title} Data"])
        if domain in SINGULAR_DOMAINS:
            writer.writerow(["field", "value"])
            for field, value in data[domain].items():
                writer.writerow([field, cell(value)])
        else:
            records = data[domain]
            if not records:
                continue
            columns = _columns(records)
            writer.writerow(columns)
            for record in records:
                writer.writerow([cell(record.get(column)) for column in columns])

    return buffer.getvalue()


def to_triples(data: dict) -> set[tuple[str, str, str]]:
    """Flatten collected data into (domain, field, value) triples."""
    triples = set()
    for domain in SECTION_TITLES:
        value = data.get(domain)
        if value is None:
            continue
        records = [value] if domain in SINGULAR_DOMAINS else value
        for record in records:
            for field, field_value in record.items():
                triples.add((domain, field, cell(field_value)))
    return triples


def parse_csv(text: str) -> set[tuple[str, str, str]]:
    """Parse ``to_csv`` output back into (domain, field, value) triples."""
    triples = set()
    domain = None
    columns = None

    for row in csv.reader(io.StringIO(text, newline="")):
        if not row:
            domain, columns = None, None
            continue
        if len(row) == 1 and row[0] in _DOMAIN_BY_SECTION:
            domain, columns = _DOMAIN_BY_SECTION[row[0]], None
            continue
        if domain is None:
            raise ValueError(f"CSV row outside of a section: {row!r}")
        if columns is None:
            columns = row
            continue

        if domain in SINGULAR_DOMAINS:
            field, value = row
            triples.add((domain, field, value))
        else:
            for field, value in zip(columns, row):
                triples.add((domain, field, value))

    return triples


def render(data: dict, export_format: str) -> tuple[bytes, str]:
    """Return (file bytes, content type) for the requested format."""
    if export_format == "csv":
        return to_csv(data).encode("utf-8"), "text/csv; charset=utf-8"
    return to_json(data).encode("utf-8"), "application/json"
