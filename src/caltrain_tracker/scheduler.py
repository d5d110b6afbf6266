"""APScheduler-based background refresh of schedule and feed data."""

import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from apscheduler import AsyncScheduler, CoalescePolicy
from apscheduler.triggers.interval import IntervalTrigger

from caltrain_tracker.errors import TrackerError
from caltrain_tracker.logging import get_logger
from caltrain_tracker.schedule import ScheduleService

logger = get_logger(__name__)

# APScheduler v4 requires serializable function references, so jobs run
# through a module-level function that looks up the scheduler instance
_scheduler_registry: dict[str, "RefreshScheduler"] = {}


@dataclass(frozen=True)
class RefreshJob:
    """A named coroutine run on a fixed interval."""

    name: str
    interval_seconds: float
    func: Callable[[], Awaitable[object]]
    run_at_start: bool = True


async def _execute_refresh(scheduler_id: str, job_name: str) -> None:
    """Module-level function for APScheduler to call.

    Args:
        scheduler_id: Unique ID of the scheduler instance.
        job_name: Name of the job to run.
    """
    scheduler = _scheduler_registry.get(scheduler_id)
    if scheduler:
        job = scheduler._jobs_by_name.get(job_name)
        if job:
            await scheduler.run_once(job)


class RefreshScheduler:
    """Runs refresh jobs periodically in the background."""

    def __init__(
        self,
        jobs: Sequence[RefreshJob],
        misfire_grace_time: float = 60.0,
    ) -> None:
        """Initialize the refresh scheduler.

        Args:
            jobs: Jobs to schedule (names must be unique).
            misfire_grace_time: Seconds after scheduled time to still run a job.
        """
        self._id = str(uuid.uuid4())
        self._jobs_by_name = {job.name: job for job in jobs}
        if len(self._jobs_by_name) != len(jobs):
            raise ValueError("Refresh job names must be unique")
        self._misfire_grace_time = misfire_grace_time
        self._scheduler: AsyncScheduler | None = None
        self.failures: dict[str, int] = {}

    @property
    def jobs(self) -> list[RefreshJob]:
        return list(self._jobs_by_name.values())

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None and self._scheduler.state.name == "started"

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        _scheduler_registry[self._id] = self

        # APScheduler v4 requires the context manager to be entered
        self._scheduler = AsyncScheduler()
        await self._scheduler.__aenter__()

        now = datetime.now(UTC)
        for job in self._jobs_by_name.values():
            start_time = now if job.run_at_start else now + timedelta(seconds=job.interval_seconds)
            trigger = IntervalTrigger(seconds=job.interval_seconds, start_time=start_time)

            await self._scheduler.add_schedule(
                _execute_refresh,
                trigger=trigger,
                id=f"refresh-{job.name}",
                kwargs={"scheduler_id": self._id, "job_name": job.name},
                misfire_grace_time=self._misfire_grace_time,
                coalesce=CoalescePolicy.latest,  # Skip missed, run latest only
            )

        await self._scheduler.start_in_background()
        logger.info("refresh_scheduler_started", jobs=sorted(self._jobs_by_name))

    async def stop(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: If True, wait for running jobs to complete.
        """
        if self._scheduler is not None:
            await self._scheduler.stop()
            if wait:
                await self._scheduler.wait_until_stopped()
            await self._scheduler.__aexit__(None, None, None)
            self._scheduler = None

        _scheduler_registry.pop(self._id, None)

    async def run_once(self, job: RefreshJob) -> bool:
        """Run a job immediately.

        Tracker errors are logged and counted so the schedule keeps firing;
        anything else propagates.

        Returns:
            True if the job succeeded.
        """
        try:
            await job.func()
        except TrackerError as e:
            self.failures[job.name] = self.failures.get(job.name, 0) + 1
            logger.warning(
                "refresh_job_failed",
                job=job.name,
                error_type=type(e).__name__,
                error=str(e),
                consecutive_failures=self.failures[job.name],
            )
            return False
        self.failures[job.name] = 0
        logger.debug("refresh_job_succeeded", job=job.name)
        return True


def schedule_refresh_job(schedule_service: ScheduleService, interval: timedelta) -> RefreshJob:
    """Job that re-downloads the static schedule every ``interval``."""
    return RefreshJob(
        name="schedule",
        interval_seconds=interval.total_seconds(),
        func=schedule_service.refresh,
    )


async def create_and_start_scheduler(jobs: Sequence[RefreshJob]) -> RefreshScheduler:
    """Create and start a refresh scheduler in one step."""
    scheduler = RefreshScheduler(jobs)
    await scheduler.start()
    return scheduler
