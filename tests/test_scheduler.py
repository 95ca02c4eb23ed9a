"""
Tests for the sweep scheduler.
"""

import threading

import pytest

from editorial.core.scheduler import SweepConfig, SweepScheduler


@pytest.fixture
def scheduler(harness):
    return SweepScheduler(harness.engine, SweepConfig(enabled=False, interval_seconds=1))


class TestTick:

    def test_tick_runs_a_sweep(self, scheduler):
        result = scheduler.tick()
        assert result is not None
        assert scheduler.last_result is result

        status = scheduler.get_status()
        assert status["last_result"]["sweep_id"] == result.sweep_id
        assert status["last_error"] is None

    def test_overlapping_tick_is_skipped(self, scheduler):
        """A tick that arrives while another is running returns None."""
        assert scheduler._tick_lock.acquire(blocking=False)
        try:
            assert scheduler.tick() is None
        finally:
            scheduler._tick_lock.release()

        assert scheduler.get_status()["ticks_skipped"] == 1
        assert scheduler.tick() is not None

    def test_failure_is_recorded_and_raised(self, harness, scheduler, monkeypatch):
        def broken(before):
            raise RuntimeError("database went away")

        monkeypatch.setattr(harness.repository, "find_invitations_needing_reminder", broken)
        with pytest.raises(RuntimeError):
            scheduler.tick()

        assert "database went away" in scheduler.get_status()["last_error"]
        assert not scheduler._tick_lock.locked()


class TestLifecycle:

    def test_disabled_start_is_noop(self, scheduler):
        scheduler.start()
        assert not scheduler.is_running

    def test_enabled_start_runs_first_tick(self, harness):
        scheduler = SweepScheduler(harness.engine, SweepConfig(enabled=True, interval_seconds=60))
        ticked = threading.Event()
        original = scheduler.tick

        def tick():
            result = original()
            ticked.set()
            return result

        scheduler.tick = tick
        scheduler.start()
        try:
            assert scheduler.is_running
            assert ticked.wait(timeout=5)
        finally:
            scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.last_result is not None

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("EDITORIAL_SWEEP_ENABLED", "true")
        monkeypatch.setenv("EDITORIAL_SWEEP_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("EDITORIAL_SWEEP_FAN_OUT", "8")

        config = SweepConfig.from_env()
        assert config.enabled
        assert config.interval_seconds == 60
        assert config.fan_out == 8
        assert config.dispatch_timeout_seconds == 10.0
