from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import pandas as pd


GRAND_TOTAL_LABEL = "Grand Total"
COMBINED_KEY = "all"
COMBINED_NAME = "All Provinces"

METRIC_FIELDS = ("target", "target_100k", "target_200k", "system_result", "system_variance")


@dataclass(frozen=True)
class UnitRecord:
    name: str
    target: int = 0
    target_100k: int = 0
    target_200k: int = 0
    system_result: int = 0
    system_variance: int = 0

    def relabel(self, name: str) -> "UnitRecord":
        return replace(self, name=name)


def sum_units(units: Iterable[UnitRecord], name: str = GRAND_TOTAL_LABEL) -> UnitRecord:
    totals = dict.fromkeys(METRIC_FIELDS, 0)
    for unit in units:
        for f in METRIC_FIELDS:
            totals[f] += getattr(unit, f)
    return UnitRecord(name=name, **totals)


@dataclass(frozen=True)
class RegionDataset:
    key: str
    name: str
    units: Tuple[UnitRecord, ...]
    grand_total: UnitRecord
    staff_assigned: Optional[int] = None

    @classmethod
    def from_units(cls, key: str, name: str, units: Iterable[UnitRecord]) -> "RegionDataset":
        units = tuple(units)
        return cls(key=key, name=name, units=units, grand_total=sum_units(units))

    def with_staff(self, count: Optional[int]) -> "RegionDataset":
        return replace(self, staff_assigned=count)

    def to_frame(self) -> pd.DataFrame:
        columns = ["name", *METRIC_FIELDS]
        if not self.units:
            return pd.DataFrame(columns=columns)
        return pd.DataFrame([asdict(u) for u in self.units], columns=columns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "units": [asdict(u) for u in self.units],
            "grand_total": asdict(self.grand_total),
            "staff_assigned": self.staff_assigned,
        }


@dataclass(frozen=True)
class Snapshot:
    provinces: Mapping[str, RegionDataset]
    combined: RegionDataset
    fetched_at: datetime
    failed_sources: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.provinces, MappingProxyType):
            object.__setattr__(self, "provinces", MappingProxyType(dict(self.provinces)))

    def dataset(self, key: str) -> Optional[RegionDataset]:
        if key == COMBINED_KEY:
            return self.combined
        return self.provinces.get(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provinces": {k: v.to_dict() for k, v in self.provinces.items()},
            "combined": self.combined.to_dict(),
            "fetched_at": self.fetched_at,
            "failed_sources": list(self.failed_sources),
        }


class RefreshStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class DashboardState:
    snapshot: Optional[Snapshot] = None
    loading: bool = False
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    status: RefreshStatus = RefreshStatus.IDLE

    def to_dict(self, include_snapshot: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "loading": self.loading,
            "error": self.error,
            "last_updated": self.last_updated,
            "failed_sources": list(self.snapshot.failed_sources) if self.snapshot else [],
        }
        if include_snapshot:
            payload["snapshot"] = self.snapshot.to_dict() if self.snapshot else None
        return payload
