"""
Unit tests for core.refresh

Exercise the refresh orchestrator against fake endpoints: partial and total
source failure, staffing degradation, superseded cycles and the periodic
scheduler.
"""

import threading
import time
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import requests

from core.data import build_export_url, parse_region_csv
from core.models import RefreshStatus
from core.refresh import RefreshOrchestrator
from tests.fixtures.sample_data import (
    SAMPLE_BODIES,
    fake_region_fetcher,
    fake_staff_fetcher,
    sample_config,
)


FIXED_TIME = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)


def _orchestrator(failing=(), staff=None, staff_error=None, **config_overrides):
    return RefreshOrchestrator(
        sample_config(**config_overrides),
        fetch_region_fn=fake_region_fetcher(failing=failing),
        fetch_staff_fn=fake_staff_fetcher(staff=staff, error=staff_error),
        clock=lambda: FIXED_TIME,
    )


class TestRefreshCycle(unittest.TestCase):

    def test_initial_state(self):
        state = _orchestrator().state
        self.assertIsNone(state.snapshot)
        self.assertFalse(state.loading)
        self.assertIsNone(state.error)
        self.assertIsNone(state.last_updated)
        self.assertEqual(state.status, RefreshStatus.IDLE)

    def test_all_sources_succeed(self):
        orch = _orchestrator(staff={"albay": 4, "sorsogon": 3})
        state = orch.refresh()
        self.assertEqual(state.status, RefreshStatus.READY)
        self.assertFalse(state.loading)
        self.assertIsNone(state.error)
        self.assertEqual(state.last_updated, FIXED_TIME)
        snap = state.snapshot
        self.assertEqual(list(snap.provinces), ["albay", "camarinesnorte", "sorsogon"])
        self.assertEqual(snap.provinces["albay"].staff_assigned, 4)
        self.assertIsNone(snap.provinces["camarinesnorte"].staff_assigned)
        self.assertEqual(snap.combined.grand_total.target, 3100)
        self.assertEqual(snap.failed_sources, ())

    def test_partial_failure_publishes_successes(self):
        orch = _orchestrator(failing={"camarinesnorte"})
        state = orch.refresh()
        snap = state.snapshot
        self.assertEqual(set(snap.provinces), {"albay", "sorsogon"})
        self.assertEqual([u.name for u in snap.combined.units], ["Albay", "Sorsogon"])
        self.assertEqual(snap.combined.grand_total.target, 1250 + 150)
        self.assertEqual(snap.failed_sources, ("Camarines Norte",))
        self.assertIsNotNone(state.error)
        self.assertIn("Camarines Norte", state.error)
        self.assertTrue(state.error.startswith("Some data failed to load"))
        self.assertEqual(state.status, RefreshStatus.READY)

    def test_total_failure_keeps_previous_snapshot(self):
        fail_all = {"value": False}
        good = fake_region_fetcher()
        bad = fake_region_fetcher(failing=set(SAMPLE_BODIES))
        orch = RefreshOrchestrator(
            sample_config(),
            fetch_region_fn=lambda s, c: (bad if fail_all["value"] else good)(s, c),
            fetch_staff_fn=fake_staff_fetcher(),
            clock=lambda: FIXED_TIME,
        )
        first = orch.refresh()
        fail_all["value"] = True
        with self.assertLogs("core.refresh", level="ERROR"):
            second = orch.refresh()
        self.assertIs(second.snapshot, first.snapshot)
        self.assertEqual(second.last_updated, FIXED_TIME)
        self.assertEqual(second.status, RefreshStatus.FAILED)
        self.assertIn("Failed to fetch any province data", second.error)

    def test_total_failure_without_previous_snapshot(self):
        orch = _orchestrator(failing=set(SAMPLE_BODIES))
        with self.assertLogs("core.refresh", level="ERROR"):
            state = orch.refresh()
        self.assertIsNone(state.snapshot)
        self.assertIsNone(state.last_updated)
        self.assertIsNotNone(state.error)

    def test_staff_failure_does_not_block_publication(self):
        orch = _orchestrator(staff_error=RuntimeError("staff sheet gone"))
        with self.assertLogs("core.refresh", level="ERROR"):
            state = orch.refresh()
        self.assertEqual(len(state.snapshot.provinces), 3)
        for dataset in state.snapshot.provinces.values():
            self.assertIsNone(dataset.staff_assigned)
        self.assertIsNone(state.error)

    def test_unexpected_fetch_error_is_labeled(self):
        def _fetch(source, config):
            if source.key == "albay":
                raise KeyError("bad column")
            return parse_region_csv(SAMPLE_BODIES[source.key], source)

        orch = RefreshOrchestrator(sample_config(), fetch_region_fn=_fetch, fetch_staff_fn=fake_staff_fetcher())
        with self.assertLogs("core.refresh", level="ERROR"):
            state = orch.refresh()
        self.assertIn("Failed to fetch Albay data", state.error)
        self.assertNotIn("albay", state.snapshot.provinces)

    def test_error_cleared_after_recovery(self):
        failing = {"keys": {"albay"}}
        orch = RefreshOrchestrator(
            sample_config(),
            fetch_region_fn=lambda s, c: fake_region_fetcher(failing=failing["keys"])(s, c),
            fetch_staff_fn=fake_staff_fetcher(),
        )
        self.assertIsNotNone(orch.refresh().error)
        failing["keys"] = set()
        self.assertIsNone(orch.refresh().error)

    def test_snapshot_provinces_are_read_only(self):
        snap = _orchestrator().refresh().snapshot
        with self.assertRaises(TypeError):
            snap.provinces["albay"] = None

    def test_listeners_see_loading_then_result(self):
        orch = _orchestrator()
        seen = []
        orch.subscribe(lambda state: seen.append((state.loading, state.status)))
        broken = MagicMock(side_effect=RuntimeError("listener bug"))
        orch.subscribe(broken)
        with self.assertLogs("core.refresh", level="ERROR"):
            orch.refresh()
        self.assertEqual(seen[0], (True, RefreshStatus.FETCHING))
        self.assertEqual(seen[-1], (False, RefreshStatus.READY))
        self.assertTrue(broken.called)

    def test_transport_error_through_real_fetcher(self):
        bodies = {0: SAMPLE_BODIES["albay"], 22: SAMPLE_BODIES["sorsogon"]}

        def _get(url, timeout=None):
            if url == build_export_url("test-sheet", 11):
                raise requests.ConnectionError("Connection refused")
            resp = MagicMock()
            resp.content = next(
                (body.encode("utf-8") for gid, body in bodies.items() if url == build_export_url("test-sheet", gid)),
                b"PROVINCES,STAFF\nALBAY,2\n",
            )
            return resp

        orch = RefreshOrchestrator(sample_config(), clock=lambda: FIXED_TIME)
        with patch("core.data.requests.Session") as session_cls:
            session_cls.return_value.get.side_effect = _get
            with self.assertLogs("core.refresh", level="WARNING"):
                state = orch.refresh()
        self.assertEqual(list(state.snapshot.provinces), ["albay", "sorsogon"])
        self.assertEqual(state.snapshot.provinces["albay"].staff_assigned, 2)
        self.assertEqual(state.snapshot.failed_sources, ("Camarines Norte",))
        self.assertIn("Failed to fetch Camarines Norte data: Connection refused", state.error)

    def test_unsubscribe(self):
        orch = _orchestrator()
        listener = MagicMock()
        unsubscribe = orch.subscribe(listener)
        unsubscribe()
        orch.refresh()
        listener.assert_not_called()


class TestOverlappingCycles(unittest.TestCase):

    def test_latest_started_cycle_wins(self):
        release_first = threading.Event()
        first_started = threading.Event()
        claimed = {"done": False}
        lock = threading.Lock()
        good = fake_region_fetcher()

        def _fetch(source, config):
            # The first albay fetch (first cycle) blocks until the second cycle has published.
            if source.key == "albay":
                with lock:
                    block = not claimed["done"]
                    claimed["done"] = True
                if block:
                    first_started.set()
                    release_first.wait(5)
            return good(source, config)

        stamps = iter([datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 2, tzinfo=timezone.utc)])
        orch = RefreshOrchestrator(
            sample_config(),
            fetch_region_fn=_fetch,
            fetch_staff_fn=fake_staff_fetcher(),
            clock=lambda: next(stamps),
        )
        received = []
        orch.subscribe(received.append)
        first = threading.Thread(target=orch.refresh)
        first.start()
        self.assertTrue(first_started.wait(5))

        second_state = orch.refresh()
        self.assertTrue(second_state.loading)
        published = second_state.snapshot
        self.assertIsNotNone(published)

        release_first.set()
        first.join(5)
        final = orch.state
        self.assertIs(final.snapshot, published)
        self.assertFalse(final.loading)
        self.assertIs(received[-1], final)


class TestScheduler(unittest.TestCase):

    def test_start_runs_periodic_cycles(self):
        orch = _orchestrator(refresh_interval=0.05)
        cycles = []
        orch.subscribe(lambda s: cycles.append(s) if s.status == RefreshStatus.READY and not s.loading else None)
        orch.start()
        try:
            deadline = time.monotonic() + 5
            while len(cycles) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            self.assertTrue(orch.running)
        finally:
            orch.stop()
        self.assertGreaterEqual(len(cycles), 2)
        self.assertFalse(orch.running)

    def test_trigger_refresh_runs_in_background(self):
        orch = _orchestrator()
        worker = orch.trigger_refresh()
        worker.join(5)
        self.assertIsNotNone(orch.state.snapshot)

    def test_stop_waits_for_manual_refresh(self):
        good = fake_region_fetcher()

        def _slow(source, config):
            time.sleep(0.1)
            return good(source, config)

        orch = RefreshOrchestrator(sample_config(), fetch_region_fn=_slow, fetch_staff_fn=fake_staff_fetcher())
        worker = orch.trigger_refresh()
        orch.stop()
        self.assertFalse(worker.is_alive())
        self.assertIsNotNone(orch.state.snapshot)
        self.assertFalse(orch.state.loading)


if __name__ == "__main__":
    unittest.main()
