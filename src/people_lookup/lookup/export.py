"""Flat export shape for resolved records."""

from __future__ import annotations

import csv
import re
from collections.abc import Iterable
from pathlib import Path

from people_lookup.lookup.models import DetailRecord

LIST_SEPARATOR = "; "

EXPORT_COLUMNS = (
    "index",
    "name",
    "first_name",
    "last_name",
    "age",
    "marital_status",
    "city",
    "state",
    "location",
    "phone",
    "phone_type",
    "carrier",
    "phones",
    "emails",
    "family_members",
    "report_year",
    "is_deceased",
    "detail_link",
    "search_name",
    "search_location",
    "source",
)

_NON_DIGITS = re.compile(r"\D")


def normalize_us_phone(phone: str | None) -> str:
    """Digits only, prefixed with country code 1 unless already 11 digits starting with 1."""

    if not phone:
        return ""
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return ""
    if digits.startswith("1") and len(digits) == 11:
        return digits
    return "1" + digits


def _text(value: object) -> str:
    return "" if value is None else str(value)


def to_flat_row(record: DetailRecord, index: int = 1) -> dict[str, str]:
    """Every value is a plain string; list fields are joined into one cell."""

    phones = [normalize_us_phone(phone.number) for phone in record.phones]
    return {
        "index": str(index),
        "name": record.name,
        "first_name": _text(record.first_name),
        "last_name": _text(record.last_name),
        "age": _text(record.age),
        "marital_status": _text(record.marital_status),
        "city": _text(record.city),
        "state": _text(record.state),
        "location": _text(record.location),
        "phone": normalize_us_phone(record.phone),
        "phone_type": _text(record.phone_type),
        "carrier": _text(record.carrier),
        "phones": LIST_SEPARATOR.join(phone for phone in phones if phone),
        "emails": LIST_SEPARATOR.join(record.emails),
        "family_members": LIST_SEPARATOR.join(record.family_members),
        "report_year": _text(record.report_year),
        "is_deceased": "yes" if record.is_deceased else "no",
        "detail_link": record.detail_link,
        "search_name": record.search_name,
        "search_location": _text(record.search_location),
        "source": "cache" if record.from_cache else "live",
    }


def write_csv(records: Iterable[DetailRecord], path: Path) -> int:
    """Write records to ``path``; returns the number of rows written."""

    count = 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8-sig", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for count, record in enumerate(records, start=1):
            writer.writerow(to_flat_row(record, index=count))
    return count
