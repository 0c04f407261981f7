from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from core.models import COMBINED_KEY


PROVINCE_SORT_FIELDS = (
    "name",
    "target",
    "system_result",
    "system_variance",
    "progress",
    "units",
    "staff_assigned",
)
UNIT_SORT_FIELDS = (
    "name",
    "target_100k",
    "target_200k",
    "target",
    "system_result",
    "system_variance",
    "progress",
)
SORT_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class DashboardFilters:
    selected_tab: str = COMBINED_KEY
    province_sort: str = "name"
    sort_field: str = "name"
    sort_direction: str = "asc"


def _choice(value: object, allowed: Iterable[str], default: str) -> str:
    s = str(value or "").strip()
    return s if s in allowed else default


def normalize_filters(raw: Optional[dict], *, available_tabs: Optional[Iterable[str]] = None) -> DashboardFilters:
    raw = raw or {}
    tabs = {COMBINED_KEY, *(available_tabs or [])}
    return DashboardFilters(
        selected_tab=_choice(raw.get("selected_tab"), tabs, COMBINED_KEY),
        province_sort=_choice(raw.get("province_sort"), PROVINCE_SORT_FIELDS, "name"),
        sort_field=_choice(raw.get("sort_field"), UNIT_SORT_FIELDS, "name"),
        sort_direction=_choice(str(raw.get("sort_direction") or "").lower(), SORT_DIRECTIONS, "asc"),
    )
