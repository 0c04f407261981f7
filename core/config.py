from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple


@dataclass(frozen=True)
class SourceSheet:
    key: str
    name: str
    gid: int
    layout: Optional[str] = None
    staff_aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DashboardConfig:
    sheet_id: str
    sources: Tuple[SourceSheet, ...]
    staff_gid: int
    refresh_interval: float = 30.0
    request_timeout: Optional[float] = 20.0
    max_workers: int = 8
    cors_origins: Tuple[str, ...] = field(
        default_factory=lambda: ("http://localhost:3000", "http://127.0.0.1:3000")
    )

    def source(self, key: str) -> Optional[SourceSheet]:
        for s in self.sources:
            if s.key == key:
                return s
        return None

    @property
    def source_keys(self) -> Tuple[str, ...]:
        return tuple(s.key for s in self.sources)


SHEET_ID = "1e4tUUkePxBzaCYtZvsd4cMyNV5jHwVJFsDSwOx2aZDs"
STAFF_ASSIGNMENT_GID = 1713821295
REFRESH_INTERVAL = 30.0
REQUEST_TIMEOUT = 20.0

PROVINCE_SHEETS: Tuple[SourceSheet, ...] = (
    SourceSheet("albay", "Albay", 0),
    SourceSheet("camarinesnorte", "Camarines Norte", 994448163),
    SourceSheet("camarinessur", "Camarines Sur", 1099131531, layout="tier_200k_only"),
    SourceSheet("catanduanes", "Catanduanes", 1492615546),
    SourceSheet("masbate", "Masbate", 306476118),
    # The staffing sheet spells this one "SORGOSON".
    SourceSheet("sorsogon", "Sorsogon", 752950571, layout="tier_200k_only", staff_aliases=("SORGOSON",)),
)

DEFAULT_CONFIG = DashboardConfig(
    sheet_id=SHEET_ID,
    sources=PROVINCE_SHEETS,
    staff_gid=STAFF_ASSIGNMENT_GID,
    refresh_interval=REFRESH_INTERVAL,
    request_timeout=REQUEST_TIMEOUT,
)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def config_from_env(base: DashboardConfig = DEFAULT_CONFIG) -> DashboardConfig:
    """Apply process-start overrides from the environment.

    Read once when the API process builds its orchestrator; the resulting
    config is never changed afterwards.
    """
    sheet_id = (os.getenv("DASHBOARD_SHEET_ID") or "").strip() or base.sheet_id
    return replace(
        base,
        sheet_id=sheet_id,
        refresh_interval=_env_float("DASHBOARD_REFRESH_INTERVAL", base.refresh_interval) or base.refresh_interval,
        request_timeout=_env_float("DASHBOARD_REQUEST_TIMEOUT", base.request_timeout),
    )
