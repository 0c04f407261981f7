from __future__ import annotations

from dataclasses import asdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List

import pandas as pd

from core.filters import DashboardFilters
from core.models import COMBINED_KEY, Snapshot, UnitRecord


ON_TRACK_VARIANCE_SHARE = 0.2


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def progress_pct(result: int, target: int) -> int:
    if target <= 0:
        return 0
    return round_half_up(result / target * 100)


def is_on_track(total: UnitRecord) -> bool:
    return total.system_variance <= total.target * ON_TRACK_VARIANCE_SHARE


def _province_rows(snapshot: Snapshot) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for key, dataset in snapshot.provinces.items():
        gt = dataset.grand_total
        rows.append(
            {
                "key": key,
                "name": dataset.name,
                "units": len(dataset.units),
                "staff_assigned": dataset.staff_assigned,
                "target": gt.target,
                "system_result": gt.system_result,
                "system_variance": gt.system_variance,
                "progress": progress_pct(gt.system_result, gt.target),
                "on_track": is_on_track(gt),
            }
        )
    return rows


def sort_province_rows(rows: List[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    if not rows:
        return []
    df = pd.DataFrame(rows)
    if field == "name":
        ordered = df.sort_values("name", key=lambda s: s.str.lower(), kind="mergesort")
    else:
        sort_col = pd.to_numeric(df[field], errors="coerce").fillna(0)
        ordered = df.assign(_sort=sort_col).sort_values("_sort", ascending=False, kind="mergesort")
    return [rows[i] for i in ordered.index]


def compute_overview(filters: DashboardFilters, snapshot: Snapshot) -> Dict[str, Any]:
    dataset = snapshot.dataset(filters.selected_tab) or snapshot.combined
    gt = dataset.grand_total
    payload: Dict[str, Any] = {
        "tab": dataset.key,
        "name": dataset.name,
        "kpis": {
            "target": gt.target,
            "system_result": gt.system_result,
            "system_variance": gt.system_variance,
            "progress": progress_pct(gt.system_result, gt.target),
        },
        "grand_total": asdict(gt),
        "staff_assigned": dataset.staff_assigned,
        "provinces": [],
        "failed_sources": list(snapshot.failed_sources),
        "fetched_at": snapshot.fetched_at,
    }
    # Province cards only accompany the all-provinces view.
    if dataset.key == COMBINED_KEY:
        payload["provinces"] = sort_province_rows(_province_rows(snapshot), filters.province_sort)
    return payload
