from __future__ import annotations

from pydantic import BaseModel


class DashboardFiltersModel(BaseModel):
    # Values are normalized (case, unknown choices) by core.filters.
    selected_tab: str = "all"
    province_sort: str = "name"
    sort_field: str = "name"
    sort_direction: str = "asc"


class RefreshAccepted(BaseModel):
    scheduled: bool = True
    loading: bool
