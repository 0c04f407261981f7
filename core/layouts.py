from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence


TOTAL_TARGET_MARKER = "TOTAL TARGET"


@dataclass(frozen=True)
class ColumnLayout:
    """Column positions of one CSV export variant. ``None`` means the field reads as 0."""

    name: str
    target_100k: Optional[int] = None
    target_200k: Optional[int] = None
    total_target: Optional[int] = None
    system_result: Optional[int] = None
    system_variance: Optional[int] = None


SINGLE_TIER = ColumnLayout("single_tier", target_100k=1, system_result=2, system_variance=3)
TWO_TIER = ColumnLayout(
    "two_tier",
    target_100k=1,
    target_200k=4,
    total_target=7,
    system_result=8,
    system_variance=9,
)
TIER_200K_ONLY = ColumnLayout("tier_200k_only", target_200k=4, system_result=5, system_variance=6)

LAYOUTS: Dict[str, ColumnLayout] = {
    layout.name: layout for layout in (SINGLE_TIER, TWO_TIER, TIER_200K_ONLY)
}


def has_total_target(header: Sequence[str]) -> bool:
    return any(TOTAL_TARGET_MARKER in str(col).upper() for col in header)


def select_layout(header: Sequence[str], override: Optional[str] = None) -> ColumnLayout:
    if override:
        try:
            return LAYOUTS[override]
        except KeyError:
            raise ValueError(f"Unknown column layout: {override!r}") from None
    return TWO_TIER if has_total_target(header) else SINGLE_TIER
