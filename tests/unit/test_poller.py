"""Tests for batchflow.poller: per-cycle state queries and the ticker."""

from __future__ import annotations

import logging
import threading

import pytest

from batchflow.errors import MonitoringCancelled, MonitoringTimeout
from batchflow.poller import StatePoller, SystemClock, Ticker, wait_for_unit
from batchflow.registry import JobRegistryRecord
from batchflow.state import UnitState
from batchflow.types import SubmissionKind


def _array(job_id: str = "100") -> JobRegistryRecord:
    return JobRegistryRecord(SubmissionKind.ARRAY, (job_id,), "/runs/r1")


def _individual(*ids: str) -> JobRegistryRecord:
    return JobRegistryRecord(SubmissionKind.INDIVIDUAL, ids, "/runs/r1")


class TestTicker:
    def test_wait_uses_clock(self, fake_clock):
        ticker = Ticker(interval=30.0, clock=fake_clock)
        assert ticker.wait() is True
        assert fake_clock.sleeps == [30.0]
        assert fake_clock.monotonic() == 30.0

    def test_cancelled_ticker_does_not_sleep(self, fake_clock):
        ticker = Ticker(interval=30.0, clock=fake_clock)
        ticker.cancel()
        assert ticker.cancelled
        assert ticker.wait() is False
        assert fake_clock.sleeps == []

    def test_cancel_interrupts_real_wait(self):
        ticker = Ticker(interval=60.0, clock=SystemClock())
        timer = threading.Timer(0.05, ticker.cancel)
        timer.start()
        assert ticker.wait() is False
        timer.join()


class TestIndividualPolling:
    def test_sacct_first(self, client, fake_slurm):
        fake_slurm.set_state("101", "RUNNING")
        fake_slurm.set_state("102", "COMPLETED")
        units = StatePoller(client, _individual("101", "102")).poll()
        assert units["101"].state is UnitState.RUNNING
        assert units["102"].state is UnitState.COMPLETED
        assert units["102"].source == "sacct"

    def test_falls_back_to_squeue(self, client, fake_slurm):
        fake_slurm.squeue_rows["101"] = "PENDING"
        units = StatePoller(client, _individual("101")).poll()
        assert units["101"].state is UnitState.PENDING
        assert units["101"].source == "squeue"

    def test_unanswered_unit_is_unknown(self, client, fake_slurm, caplog):
        fake_slurm.sacct_available = False
        fake_slurm.squeue_available = False
        with caplog.at_level(logging.WARNING):
            units = StatePoller(client, _individual("101", "102")).poll()
        assert {u.state for u in units.values()} == {UnitState.UNKNOWN}
        assert "101" in caplog.text

    def test_declared_total(self, client):
        assert StatePoller(client, _individual("1", "2", "3")).declared_total == 3


class TestArrayPolling:
    def test_discovers_units(self, client, fake_slurm):
        fake_slurm.set_state("100_1", "RUNNING")
        fake_slurm.set_state("100_2", "PENDING")
        poller = StatePoller(client, _array(), array_size=2)
        units = poller.poll()
        assert list(units) == ["100_1", "100_2"]
        assert poller.known_units == ["100_1", "100_2"]

    def test_sacct_overrides_squeue(self, client, fake_slurm):
        fake_slurm.squeue_rows["100_1"] = "RUNNING"
        fake_slurm.set_state("100_1", "COMPLETED")
        units = StatePoller(client, _array(), array_size=1).poll()
        assert units["100_1"].state is UnitState.COMPLETED

    def test_ignores_indices_beyond_declared_size(self, client, fake_slurm):
        for i in range(1, 5):
            fake_slurm.set_state(f"100_{i}", "PENDING")
        units = StatePoller(client, _array(), array_size=3).poll()
        assert set(units) == {"100_1", "100_2", "100_3"}

    def test_known_unit_that_disappears_reads_unknown(self, client, fake_slurm):
        fake_slurm.set_state("100_1", "RUNNING")
        poller = StatePoller(client, _array(), array_size=1)
        poller.poll()
        fake_slurm.sacct_rows.clear()
        units = poller.poll()
        assert units["100_1"].state is UnitState.UNKNOWN

    def test_plain_job_is_monitored_under_bare_id(self, client, fake_slurm):
        fake_slurm.set_state("55", "RUNNING")
        units = StatePoller(client, _array("55")).poll()
        assert list(units) == ["55"]

    def test_declared_total_defaults_to_none(self, client):
        assert StatePoller(client, _array()).declared_total is None


class TestWaitForUnit:
    def test_returns_terminal_info(self, client, fake_slurm, ticker, fake_clock):
        fake_slurm.set_state("101", "PENDING")
        fake_slurm.timeline = [{"101": "RUNNING"}, {"101": "COMPLETED"}]
        poller = StatePoller(client, _individual("101"))

        info = wait_for_unit(poller, "101", ticker)

        assert info.state is UnitState.COMPLETED
        assert len(fake_clock.sleeps) == 2

    def test_unknown_never_ends_the_wait(self, client, fake_slurm, ticker):
        fake_slurm.timeline = [{}, {"101": "FAILED"}]
        poller = StatePoller(client, _individual("101"))
        assert wait_for_unit(poller, "101", ticker).state is UnitState.FAILED

    def test_budget(self, client, fake_slurm, ticker):
        fake_slurm.set_state("101", "RUNNING")
        poller = StatePoller(client, _individual("101"))
        with pytest.raises(MonitoringTimeout) as exc_info:
            wait_for_unit(poller, "101", ticker, max_cycles=3)
        assert exc_info.value.cycles == 3
        assert exc_info.value.snapshot.running == 1

    def test_cancelled(self, client, fake_slurm, ticker):
        fake_slurm.set_state("101", "RUNNING")
        ticker.cancel()
        with pytest.raises(MonitoringCancelled):
            wait_for_unit(StatePoller(client, _individual("101")), "101", ticker)
