"""Refresh orchestration.

Each cycle fetches every province sheet and the staffing sheet concurrently,
waits for all province fetches to settle, and publishes a fresh immutable
``Snapshot``. Overlapping cycles are allowed; the most recently *started*
cycle wins and late results from older cycles are dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional

from core.config import DashboardConfig, SourceSheet
from core.data import (
    NoSourcesAvailableError,
    SourceFetchError,
    build_combined,
    fetch_region,
    fetch_staff_assignments,
    merge_staff,
)
from core.models import DashboardState, RefreshStatus, RegionDataset, Snapshot


logger = logging.getLogger(__name__)

RegionFetcher = Callable[[SourceSheet, DashboardConfig], RegionDataset]
StaffFetcher = Callable[[DashboardConfig], Mapping[str, int]]
StateListener = Callable[[DashboardState], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshOrchestrator:
    def __init__(
        self,
        config: DashboardConfig,
        *,
        fetch_region_fn: Optional[RegionFetcher] = None,
        fetch_staff_fn: Optional[StaffFetcher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._fetch_region = fetch_region_fn or fetch_region
        self._fetch_staff = fetch_staff_fn or fetch_staff_assignments
        self._clock = clock

        self._state = DashboardState()
        self._lock = threading.Lock()
        self._seq = 0
        self._published_seq = 0
        self._in_flight = 0
        self._listeners: List[StateListener] = []
        self._notify_lock = threading.RLock()
        self._workers: List[threading.Thread] = []

        self._stop = threading.Event()
        self._scheduler: Optional[threading.Thread] = None

    @property
    def state(self) -> DashboardState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---------------- One cycle ----------------
    def refresh(self) -> DashboardState:
        seq = self._begin_cycle()
        try:
            self._run_cycle(seq)
        finally:
            self._end_cycle()
        return self._state

    def _run_cycle(self, seq: int) -> None:
        sources = self.config.sources
        logger.info("Refresh cycle %d started (%d sources)", seq, len(sources))

        fetched: Dict[str, RegionDataset] = {}
        errors: List[str] = []
        failed: List[str] = []
        workers = max(1, min(self.config.max_workers, len(sources) + 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"refresh-{seq}") as executor:
            staff_future = executor.submit(self._fetch_staff, self.config)
            future_to_source = {executor.submit(self._fetch_region, s, self.config): s for s in sources}
            for future in as_completed(future_to_source):
                source = future_to_source[future]
                try:
                    fetched[source.key] = future.result()
                except SourceFetchError as exc:
                    logger.warning("%s", exc)
                    errors.append(str(exc))
                    failed.append(source.name)
                except Exception as exc:
                    logger.exception("Unexpected error loading %s", source.name)
                    errors.append(str(SourceFetchError(source.name, exc)))
                    failed.append(source.name)

            if not fetched:
                exc = NoSourcesAvailableError(errors)
                logger.error("Refresh cycle %d failed: %s", seq, exc)
                self._publish(seq, None, str(exc), RefreshStatus.FAILED)
                return

            staff = self._settle_staff(staff_future)

        # Keep configured source order regardless of completion order.
        provinces = {s.key: fetched[s.key] for s in sources if s.key in fetched}
        provinces = merge_staff(provinces, staff)
        snapshot = Snapshot(
            provinces=provinces,
            combined=build_combined(provinces, order=self.config.source_keys),
            fetched_at=self._clock(),
            failed_sources=tuple(s.name for s in sources if s.name in failed),
        )
        error = f"Some data failed to load: {', '.join(errors)}" if errors else None
        logger.info(
            "Refresh cycle %d loaded %d/%d sources (staff for %d)",
            seq,
            len(provinces),
            len(sources),
            len(staff),
        )
        self._publish(seq, snapshot, error, RefreshStatus.READY)

    def _settle_staff(self, future: Future) -> Mapping[str, int]:
        try:
            return future.result() or {}
        except Exception:
            logger.exception("Staff assignments unavailable; continuing without them")
            return {}

    # ---------------- State bookkeeping ----------------
    def _begin_cycle(self) -> int:
        with self._lock:
            self._seq += 1
            self._in_flight += 1
            state = replace(self._state, loading=True, status=RefreshStatus.FETCHING)
            self._state = state
            seq = self._seq
        self._notify()
        return seq

    def _publish(
        self,
        seq: int,
        snapshot: Optional[Snapshot],
        error: Optional[str],
        status: RefreshStatus,
    ) -> None:
        with self._lock:
            if seq < self._published_seq:
                logger.debug("Dropping result of superseded refresh cycle %d", seq)
                return
            self._published_seq = seq
            current = self._state
            state = DashboardState(
                snapshot=snapshot if snapshot is not None else current.snapshot,
                loading=True,
                error=error,
                last_updated=snapshot.fetched_at if snapshot is not None else current.last_updated,
                status=status,
            )
            self._state = state
        self._notify()

    def _end_cycle(self) -> None:
        with self._lock:
            self._in_flight -= 1
            state = replace(self._state, loading=self._in_flight > 0)
            self._state = state
        self._notify()

    def _notify(self) -> None:
        # Read the state under the notify lock so listeners never see an older
        # state after a newer one.
        with self._notify_lock:
            state = self._state
            for listener in list(self._listeners):
                try:
                    listener(state)
                except Exception:
                    logger.exception("State listener failed")

    # ---------------- Scheduling ----------------
    def trigger_refresh(self) -> threading.Thread:
        worker = threading.Thread(target=self._safe_refresh, name="refresh-manual", daemon=True)
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        return worker

    def _safe_refresh(self) -> None:
        try:
            self.refresh()
        except Exception:
            logger.exception("Refresh cycle crashed")

    def start(self) -> None:
        if self._scheduler is not None and self._scheduler.is_alive():
            return
        self._stop.clear()
        self._scheduler = threading.Thread(target=self._run_schedule, name="refresh-scheduler", daemon=True)
        self._scheduler.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._scheduler is not None:
            self._scheduler.join(timeout)
            self._scheduler = None
        with self._lock:
            workers, self._workers = self._workers, []
        for worker in workers:
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Refresh worker %s still running after stop", worker.name)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.is_alive()

    def _run_schedule(self) -> None:
        interval = self.config.refresh_interval
        next_tick = time.monotonic()
        while not self._stop.is_set():
            self.trigger_refresh()
            next_tick += interval
            if self._stop.wait(max(0.0, next_tick - time.monotonic())):
                break
