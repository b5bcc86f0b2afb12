"""
One-shot notification scheduler.

Jobs are kept in a heap ordered by the absolute instant they are due at,
with at most one live job per key. Scheduling under a key that already has a
job replaces it: the old job is cancelled and the new one registered inside
the same critical section.
"""

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Awaitable, Callable

from streamping.errors import SchedulerError

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[None]]

# Enough years to always contain a leap day
_MAX_YEARS_AHEAD = 9

_CRON_FIELDS = (
    ("second", 0, 59),
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
)


class JobState(Enum):
    SCHEDULED = auto()
    FIRED = auto()
    CANCELLED = auto()


@dataclass(eq=False)
class ScheduledJob:
    """A uniquely keyed action due at one absolute instant."""

    key: str
    when: datetime
    action: Action
    handle: int
    state: JobState = JobState.SCHEDULED

    @property
    def cron(self) -> str:
        return cron_expression(self.when)


def cron_expression(when: datetime) -> str:
    """Encode an instant as a six-field cron expression (UTC).

    Args:
        when: Aware datetime to encode

    Returns:
        ``"second minute hour day month *"``
    """
    when = when.astimezone(timezone.utc)
    return f"{when.second} {when.minute} {when.hour} {when.day} {when.month} *"


def next_instant(expression: str, now: datetime) -> datetime:
    """Resolve a six-field cron expression to its next occurrence after ``now``.

    Only fixed values are supported for the first five fields and the weekday
    field must be ``*``. The expression names a single calendar instant, so
    the result is the first year in which that date exists and lies after
    ``now``.

    Args:
        expression: ``"second minute hour day month *"``, interpreted in UTC
        now: Aware reference time

    Returns:
        The aware UTC datetime of the next occurrence

    Raises:
        SchedulerError: If the expression is malformed or never occurs
    """
    fields = expression.split()
    if len(fields) != 6:
        raise SchedulerError(f"Cron expression {expression!r} must have 6 fields")
    if fields[5] != "*":
        raise SchedulerError(f"Cron expression {expression!r} must use '*' for the weekday")

    values = []
    for (name, low, high), text in zip(_CRON_FIELDS, fields):
        try:
            value = int(text)
        except ValueError:
            raise SchedulerError(f"Invalid {name} {text!r} in cron expression {expression!r}")
        if not low <= value <= high:
            raise SchedulerError(f"The {name} {value} is out of range in {expression!r}")
        values.append(value)

    second, minute, hour, day, month = values
    now = now.astimezone(timezone.utc)
    for year in range(now.year, now.year + _MAX_YEARS_AHEAD):
        try:
            candidate = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
        except ValueError:
            # Day does not exist in this year (e.g. Feb 29)
            continue
        if candidate > now:
            return candidate

    raise SchedulerError(f"Cron expression {expression!r} never occurs")


class NotificationScheduler:
    """Fires uniquely keyed one-shot actions at absolute future instants."""

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        max_sleep: float = 60,
    ):
        """Initialize the scheduler.

        Args:
            clock: Returns the current aware time, defaults to UTC wall clock
            max_sleep: Longest time in seconds the run loop sleeps between checks
        """
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_sleep = max_sleep
        self.running = False
        self.closed = False

        self._jobs: dict[str, ScheduledJob] = {}  # key -> latest job
        self._queue: list[tuple[datetime, int, ScheduledJob]] = []
        self._handles = itertools.count(1)
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._action_tasks: set[asyncio.Task] = set()

    async def schedule(
        self, key: str, when: datetime | str, action: Action
    ) -> ScheduledJob:
        """Schedule an action under a key, replacing any existing job for it.

        Args:
            key: Unique job key
            when: Aware datetime, or a six-field cron expression
            action: Coroutine function to run once when the job is due

        Returns:
            The registered ScheduledJob

        Raises:
            SchedulerError: If the instant is invalid or not in the future,
                or the scheduler has been stopped
        """
        if self.closed:
            raise SchedulerError(f"Scheduler is stopped, cannot schedule {key}")

        now = self.clock()
        if isinstance(when, str):
            instant = next_instant(when, now)
        else:
            if when.tzinfo is None:
                raise SchedulerError(f"Instant for {key} must be timezone aware")
            instant = when.astimezone(timezone.utc)

        if instant <= now:
            raise SchedulerError(f"Instant {instant.isoformat()} for {key} is not in the future")

        async with self._lock:
            replaced = self._cancel_locked(key)
            job = ScheduledJob(key=key, when=instant, action=action, handle=next(self._handles))
            heapq.heappush(self._queue, (instant, job.handle, job))
            self._jobs[key] = job

        self._wakeup.set()
        if replaced:
            logger.info(f"Rescheduled {key} for {instant.isoformat()} ({job.cron})")
        else:
            logger.info(f"Scheduled {key} for {instant.isoformat()} ({job.cron})")
        return job

    async def cancel(self, key: str) -> bool:
        """Cancel and remove the job for a key.

        Returns:
            True if a job that had not fired yet was cancelled
        """
        async with self._lock:
            cancelled = self._cancel_locked(key)
        if cancelled:
            self._wakeup.set()
            logger.info(f"Cancelled {key}")
        return cancelled

    def _cancel_locked(self, key: str) -> bool:
        job = self._jobs.pop(key, None)
        if job is None or job.state is not JobState.SCHEDULED:
            return False
        job.state = JobState.CANCELLED
        return True

    def get(self, key: str) -> ScheduledJob | None:
        return self._jobs.get(key)

    def state(self, key: str) -> JobState | None:
        """State of the job for a key, None if no job is registered."""
        job = self._jobs.get(key)
        return job.state if job else None

    def pending(self) -> list[ScheduledJob]:
        """Jobs that have not fired yet, earliest first."""
        return sorted(
            (job for job in self._jobs.values() if job.state is JobState.SCHEDULED),
            key=lambda job: (job.when, job.handle),
        )

    async def run_due(self, now: datetime | None = None) -> list[ScheduledJob]:
        """Fire every job due at or before ``now``.

        Jobs are dispatched in order of their instant. Fired jobs stay
        registered under their key until replaced or cancelled.

        Args:
            now: Reference time, defaults to the scheduler clock

        Returns:
            The jobs that were fired
        """
        now = now or self.clock()
        due = []
        async with self._lock:
            while self._queue and self._queue[0][0] <= now:
                _, _, job = heapq.heappop(self._queue)
                if job.state is not JobState.SCHEDULED:
                    continue
                job.state = JobState.FIRED
                due.append(job)

        for job in due:
            logger.info(f"Firing {job.key} (due {job.when.isoformat()})")
            task = asyncio.create_task(self._fire(job))
            self._action_tasks.add(task)
            task.add_done_callback(self._action_tasks.discard)

        return due

    async def _fire(self, job: ScheduledJob):
        try:
            await job.action()
        except Exception:
            logger.exception(f"Error running scheduled action {job.key}:")

    def _seconds_until_next(self) -> float:
        if not self._queue:
            return self.max_sleep
        delay = (self._queue[0][0] - self.clock()).total_seconds()
        return max(0.0, min(delay, self.max_sleep))

    async def start(self):
        """Start the background loop that fires due jobs."""
        if self._task and not self._task.done():
            return
        self.running = True
        self.closed = False
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self):
        """Stop the background loop. Jobs that have not fired are dropped."""
        self.running = False
        self.closed = True
        self._wakeup.set()

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            for job in self._jobs.values():
                if job.state is JobState.SCHEDULED:
                    job.state = JobState.CANCELLED
            self._queue.clear()

    async def drain(self):
        """Wait for all dispatched actions to finish."""
        while self._action_tasks:
            await asyncio.gather(*list(self._action_tasks), return_exceptions=True)

    async def _run_loop(self):
        while self.running:
            try:
                self._wakeup.clear()
                await self.run_due()
                delay = self._seconds_until_next()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in scheduler loop")
                await asyncio.sleep(1)
