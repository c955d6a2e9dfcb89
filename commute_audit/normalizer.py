"""Reshape raw CSV rows into employee/employer address pairs."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List, Sequence

from .errors import InputError
from .models import AddressPair

SITE_DELIMITER = ";"


def read_csv_rows(path: str | Path) -> List[List[str]]:
    """Read a header-first CSV and return its data rows (header dropped).

    Raises InputError when the file holds no data row.
    """
    csv_path = Path(path)
    if not csv_path.is_file():
        raise InputError(f"CSV file not found: {csv_path}")
    with open(csv_path, "r", encoding="utf-8-sig", newline="") as f:
        rows = [row for row in csv.reader(f) if any(cell.strip() for cell in row)]
    if len(rows) < 2:
        raise InputError(f"CSV file has no data rows: {csv_path}")
    return rows[1:]


def employer_address(raw_site: str) -> str:
    """Reorder a "name;city" site descriptor into "city name".

    With more than one delimiter every delimiter becomes a space.
    """
    site = raw_site.strip()
    if SITE_DELIMITER not in site:
        return site
    parts = site.split(SITE_DELIMITER)
    if len(parts) == 2:
        return f"{parts[1].strip()} {parts[0].strip()}".strip()
    return site.replace(SITE_DELIMITER, " ").strip()


def normalize_row(values: Sequence[str]) -> AddressPair:
    fields = [(values[i] if i < len(values) else "") or "" for i in range(4)]
    street, city, postal_code, raw_site = (v.strip() for v in fields)
    employee = " ".join(part for part in (street, city, postal_code) if part)
    return AddressPair(employee_address=employee, employer_address=employer_address(raw_site))


def normalize_rows(rows: Iterable[Sequence[str]]) -> List[AddressPair]:
    """Map rows of (street, city, postal code, site) to AddressPairs.

    Rows whose employee or employer address ends up empty are dropped; an
    empty result is for the caller to report.
    """
    pairs = []
    for values in rows:
        pair = normalize_row(values)
        if pair.employee_address and pair.employer_address:
            pairs.append(pair)
    return pairs
