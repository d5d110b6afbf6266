"""Tests for scheduler module."""

import asyncio
from datetime import timedelta

import pytest

from caltrain_tracker.errors import NetworkError
from caltrain_tracker.scheduler import (
    RefreshJob,
    RefreshScheduler,
    create_and_start_scheduler,
    schedule_refresh_job,
)


def make_job(name: str, calls: list[str], interval_seconds: float = 3600, run_at_start: bool = False) -> RefreshJob:
    """Create a job that records its calls."""

    async def refresh() -> None:
        calls.append(name)

    return RefreshJob(name=name, interval_seconds=interval_seconds, func=refresh, run_at_start=run_at_start)


class TestRefreshScheduler:
    """Tests for RefreshScheduler class."""

    def test_initialization(self) -> None:
        """Test scheduler initialization."""
        calls: list[str] = []
        scheduler = RefreshScheduler([make_job("schedule", calls), make_job("alerts", calls)])

        assert [job.name for job in scheduler.jobs] == ["schedule", "alerts"]
        assert scheduler.is_running is False
        assert calls == []

    def test_duplicate_names_rejected(self) -> None:
        """Test job names must be unique."""
        calls: list[str] = []

        with pytest.raises(ValueError, match="unique"):
            RefreshScheduler([make_job("schedule", calls), make_job("schedule", calls)])

    async def test_start_and_stop(self) -> None:
        """Test scheduler start and stop lifecycle."""
        calls: list[str] = []
        scheduler = RefreshScheduler([make_job("schedule", calls)])

        await scheduler.start()
        assert scheduler.is_running is True

        await scheduler.stop(wait=True)
        assert scheduler.is_running is False

    async def test_stop_without_start(self) -> None:
        """Test that stop() is safe to call without start()."""
        scheduler = RefreshScheduler([])

        # Should not raise
        await scheduler.stop()

    async def test_job_runs_at_start(self) -> None:
        """Test a job marked run_at_start fires as soon as the scheduler starts."""
        ran = asyncio.Event()

        async def refresh() -> None:
            ran.set()

        scheduler = RefreshScheduler([RefreshJob(name="schedule", interval_seconds=3600, func=refresh)])
        await scheduler.start()
        try:
            await asyncio.wait_for(ran.wait(), timeout=5)
        finally:
            await scheduler.stop()

    async def test_run_once_executes_job(self) -> None:
        """Test run_once works without starting the scheduler."""
        calls: list[str] = []
        job = make_job("schedule", calls)
        scheduler = RefreshScheduler([job])

        assert await scheduler.run_once(job) is True
        assert calls == ["schedule"]
        assert scheduler.failures["schedule"] == 0

    async def test_run_once_counts_failures(self) -> None:
        """Test tracker errors are absorbed and counted until a success resets them."""
        outcomes: list[Exception | None] = [
            NetworkError("gtfs_schedule", "down"),
            NetworkError("gtfs_schedule", "down"),
            None,
        ]

        async def refresh() -> None:
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        job = RefreshJob(name="schedule", interval_seconds=60, func=refresh)
        scheduler = RefreshScheduler([job])

        assert await scheduler.run_once(job) is False
        assert await scheduler.run_once(job) is False
        assert scheduler.failures["schedule"] == 2
        assert await scheduler.run_once(job) is True
        assert scheduler.failures["schedule"] == 0

    async def test_run_once_propagates_unexpected_errors(self) -> None:
        """Test programming errors are not swallowed."""

        async def refresh() -> None:
            raise KeyError("bug")

        job = RefreshJob(name="schedule", interval_seconds=60, func=refresh)

        with pytest.raises(KeyError):
            await RefreshScheduler([job]).run_once(job)


class TestScheduleRefreshJob:
    """Tests for schedule_refresh_job."""

    def test_job_wraps_service_refresh(self) -> None:
        """Test the job calls the schedule service's refresh on the given interval."""

        class StubService:
            async def refresh(self) -> None:
                pass

        service = StubService()
        job = schedule_refresh_job(service, timedelta(hours=24))  # type: ignore[arg-type]

        assert job.name == "schedule"
        assert job.interval_seconds == 86400
        assert job.func == service.refresh


class TestCreateAndStartScheduler:
    """Tests for create_and_start_scheduler factory function."""

    async def test_creates_and_starts_scheduler(self) -> None:
        """Test that factory creates and starts a scheduler."""
        calls: list[str] = []

        scheduler = await create_and_start_scheduler([make_job("schedule", calls)])

        try:
            assert scheduler.is_running is True
            assert len(scheduler.jobs) == 1
        finally:
            await scheduler.stop()
