from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import requests

from core.config import DashboardConfig, SourceSheet
from core.layouts import ColumnLayout, select_layout
from core.models import COMBINED_KEY, COMBINED_NAME, RegionDataset, UnitRecord, sum_units


logger = logging.getLogger(__name__)

EXPORT_URL = "https://docs.google.com/spreadsheets/d/{sheet_id}/export?format=csv&gid={gid}"

EXCLUDED_LABELS = {"TOTAL", "LGU"}
GRAND_TOTAL_MARKER = "GRAND TOTAL"
STAFF_HEADER_LABEL = "PROVINCES"

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_LEADING_INT = re.compile(r"-?\d+")


class SourceFetchError(Exception):
    """A single source sheet could not be retrieved."""

    def __init__(self, source_name: str, reason: object):
        self.source_name = source_name
        self.reason = reason
        super().__init__(f"Failed to fetch {source_name} data: {reason}")


class NoSourcesAvailableError(Exception):
    def __init__(self, errors: Sequence[str] = ()):
        self.errors = list(errors)
        message = "Failed to fetch any province data"
        if self.errors:
            message = f"{message}: {', '.join(self.errors)}"
        super().__init__(message)


# ---------------- Parsing ----------------
def parse_csv_line(line: str, delimiter: str = ",") -> List[str]:
    """Split one CSV line; quotes toggle state and are dropped (no ``""`` escapes)."""
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    for ch in line:
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    fields.append("".join(current).strip())
    return fields


def parse_number(value: object) -> int:
    if value is None:
        return 0
    cleaned = _NON_NUMERIC.sub("", str(value))
    match = _LEADING_INT.match(cleaned)
    if not match:
        return 0
    return int(match.group(0))


def split_lines(text: str) -> List[str]:
    # Rows end at "\n" only; trailing "\r" is trimmed per field.
    return [line for line in text.split("\n") if line.strip()]


def _cell(columns: Sequence[str], idx: Optional[int]) -> int:
    if idx is None or idx >= len(columns):
        return 0
    return parse_number(columns[idx])


def is_data_row(name: Optional[str]) -> bool:
    if not name:
        return False
    label = name.strip().upper()
    if not label or label in EXCLUDED_LABELS:
        return False
    return GRAND_TOTAL_MARKER not in label


def map_row(columns: Sequence[str], layout: ColumnLayout) -> Optional[UnitRecord]:
    name = columns[0].strip() if columns else ""
    if not is_data_row(name):
        return None
    target_100k = _cell(columns, layout.target_100k)
    target_200k = _cell(columns, layout.target_200k)
    override = _cell(columns, layout.total_target)
    target = override if override > 0 else target_100k + target_200k
    return UnitRecord(
        name=name,
        target=target,
        target_100k=target_100k,
        target_200k=target_200k,
        system_result=_cell(columns, layout.system_result),
        system_variance=_cell(columns, layout.system_variance),
    )


def parse_region_csv(text: str, source: SourceSheet) -> RegionDataset:
    lines = split_lines(text)
    header = parse_csv_line(lines[0]) if lines else []
    layout = select_layout(header, source.layout)
    units = []
    for line in lines[1:]:
        record = map_row(parse_csv_line(line), layout)
        if record is not None:
            units.append(record)
    logger.debug("Parsed %s: layout=%s units=%d", source.name, layout.name, len(units))
    return RegionDataset.from_units(source.key, source.name, units)


def parse_staff_csv(text: str, sources: Iterable[SourceSheet]) -> Dict[str, int]:
    lookup: Dict[str, str] = {}
    for s in sources:
        lookup[s.name.strip().upper()] = s.key
        for alias in s.staff_aliases:
            lookup[alias.strip().upper()] = s.key

    staff: Dict[str, int] = {}
    for line in split_lines(text)[1:]:
        columns = parse_csv_line(line)
        label = columns[0].strip().upper() if columns else ""
        if not label or label == STAFF_HEADER_LABEL:
            continue
        key = lookup.get(label)
        count = parse_number(columns[1] if len(columns) > 1 else "0")
        if key and count > 0:
            staff[key] = count
    return staff


# ---------------- Fetchers ----------------
def build_export_url(sheet_id: str, gid: int) -> str:
    return EXPORT_URL.format(sheet_id=sheet_id, gid=gid)


def fetch_csv_text(session: requests.Session, url: str, timeout: Optional[float] = None) -> str:
    resp = session.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.content.decode("utf-8-sig", errors="replace")


def fetch_region(
    source: SourceSheet,
    config: DashboardConfig,
    session: Optional[requests.Session] = None,
) -> RegionDataset:
    url = build_export_url(config.sheet_id, source.gid)
    http = session or requests.Session()
    try:
        text = fetch_csv_text(http, url, timeout=config.request_timeout)
    except requests.RequestException as exc:
        raise SourceFetchError(source.name, exc) from exc
    finally:
        if session is None:
            http.close()
    return parse_region_csv(text, source)


def fetch_staff_assignments(
    config: DashboardConfig,
    session: Optional[requests.Session] = None,
) -> Dict[str, int]:
    url = build_export_url(config.sheet_id, config.staff_gid)
    http = session or requests.Session()
    try:
        text = fetch_csv_text(http, url, timeout=config.request_timeout)
        return parse_staff_csv(text, config.sources)
    except Exception:
        logger.exception("Error fetching staff assignments")
        return {}
    finally:
        if session is None:
            http.close()


# ---------------- Merge / combine ----------------
def merge_staff(provinces: Mapping[str, RegionDataset], staff: Mapping[str, int]) -> Dict[str, RegionDataset]:
    merged: Dict[str, RegionDataset] = {}
    for key, dataset in provinces.items():
        count = staff.get(key)
        merged[key] = dataset.with_staff(count) if count and count > 0 else dataset
    return merged


def build_combined(
    provinces: Mapping[str, RegionDataset],
    order: Optional[Sequence[str]] = None,
) -> RegionDataset:
    if not provinces:
        raise ValueError("build_combined requires at least one province")
    keys = [k for k in (order or []) if k in provinces]
    keys += [k for k in provinces if k not in keys]
    units = [provinces[k].grand_total.relabel(provinces[k].name) for k in keys]
    return RegionDataset(
        key=COMBINED_KEY,
        name=COMBINED_NAME,
        units=tuple(units),
        grand_total=sum_units(units),
    )
