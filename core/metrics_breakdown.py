from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List

import pandas as pd

from core.filters import DashboardFilters
from core.metrics_overview import progress_pct
from core.models import COMBINED_KEY, RegionDataset, Snapshot, UnitRecord


def _capped_progress(unit: UnitRecord) -> int:
    return min(progress_pct(unit.system_result, unit.target), 100)


def breakdown_rows(dataset: RegionDataset) -> List[Dict[str, Any]]:
    return [{**asdict(u), "progress": _capped_progress(u)} for u in dataset.units]


def sort_breakdown_rows(rows: List[Dict[str, Any]], field: str, direction: str) -> List[Dict[str, Any]]:
    if not rows:
        return []
    df = pd.DataFrame(rows)
    ascending = direction != "desc"
    if field == "name":
        ordered = df.sort_values("name", key=lambda s: s.str.lower(), ascending=ascending, kind="mergesort")
    else:
        ordered = df.sort_values(field, ascending=ascending, kind="mergesort")
    return [rows[i] for i in ordered.index]


def compute_breakdown(filters: DashboardFilters, snapshot: Snapshot) -> Dict[str, Any]:
    dataset = snapshot.dataset(filters.selected_tab) or snapshot.combined
    rows = sort_breakdown_rows(breakdown_rows(dataset), filters.sort_field, filters.sort_direction)
    return {
        "tab": dataset.key,
        "title": "Province Breakdown" if dataset.key == COMBINED_KEY else f"{dataset.name} - Municipality Breakdown",
        "sort_field": filters.sort_field,
        "sort_direction": filters.sort_direction,
        "rows": rows,
        "row_count": len(rows),
        "grand_total": {**asdict(dataset.grand_total), "progress": _capped_progress(dataset.grand_total)},
    }


def export_frame(dataset: RegionDataset) -> pd.DataFrame:
    """Units plus a trailing grand-total row, for CSV download."""
    units = dataset.to_frame()
    total = pd.DataFrame([asdict(dataset.grand_total)], columns=units.columns)
    if units.empty:
        return total
    return pd.concat([units, total], ignore_index=True)
