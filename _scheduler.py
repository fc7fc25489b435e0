from __future__ import annotations
import asyncio, itertools, logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import pytz

from _sessions import PublishRequest

log = logging.getLogger("telegraph-publisher")

TIME_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M")
TIME_HINT = "YYYY-MM-DD HH:MM"


class ScheduleTimeError(ValueError):
    pass


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def parse_schedule_time(text: str, tz_name: str = "UTC", now: Optional[datetime] = None) -> datetime:
    """
    Parse "YYYY-MM-DD HH:MM" in tz_name and return an aware UTC datetime strictly
    in the future.
    """
    raw = " ".join((text or "").split())
    if not raw:
        raise ScheduleTimeError("empty time")
    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ScheduleTimeError(f"unknown timezone {tz_name!r}")

    naive = None
    for fmt in TIME_FORMATS:
        try:
            naive = datetime.strptime(raw, fmt)
            break
        except ValueError:
            continue
    if naive is None:
        raise ScheduleTimeError(f"expected {TIME_HINT}, got {raw!r}")

    try:
        local = tz.localize(naive, is_dst=None)
    except (pytz.AmbiguousTimeError, pytz.NonExistentTimeError):
        raise ScheduleTimeError(f"{raw} does not exist or is ambiguous in {tz_name}")
    fires_at = local.astimezone(pytz.utc)
    if fires_at <= (now or utcnow()):
        raise ScheduleTimeError(f"{raw} is not in the future")
    return fires_at


@dataclass
class ScheduledJob:
    job_id: int
    owner_id: int
    request: PublishRequest
    fires_at: datetime
    task: Optional[asyncio.Task] = None


JobCallback = Callable[[ScheduledJob], Awaitable[None]]


class PublishScheduler:
    """Deferred publishes. Each job holds its own request snapshot and fires once."""

    def __init__(self, on_fire: JobCallback, clock: Callable[[], datetime] = utcnow):
        self._on_fire = on_fire
        self._clock = clock
        self._ids = itertools.count(1)
        self._jobs: Dict[int, List[ScheduledJob]] = {}

    def schedule(self, owner_id: int, request: PublishRequest, fires_at: datetime) -> ScheduledJob:
        job = ScheduledJob(next(self._ids), owner_id, request, fires_at)
        self._jobs.setdefault(owner_id, []).append(job)
        job.task = asyncio.get_running_loop().create_task(self._run(job), name=f"publish-job-{job.job_id}")
        log.info("SCHEDULE: job=%s uid=%s fires_at=%s", job.job_id, owner_id, fires_at.isoformat())
        return job

    async def _run(self, job: ScheduledJob) -> None:
        delay = (job.fires_at - self._clock()).total_seconds()
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            self._drop(job)
            log.info("SCHEDULE: firing job=%s uid=%s", job.job_id, job.owner_id)
            await self._on_fire(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("SCHEDULE: job=%s uid=%s crashed", job.job_id, job.owner_id)

    def _drop(self, job: ScheduledJob) -> bool:
        jobs = self._jobs.get(job.owner_id, [])
        if job not in jobs:
            return False
        jobs.remove(job)
        if not jobs:
            self._jobs.pop(job.owner_id, None)
        return True

    def cancel(self, job_id: int) -> bool:
        for jobs in list(self._jobs.values()):
            for job in jobs:
                if job.job_id == job_id:
                    self._drop(job)
                    if job.task is not None:
                        job.task.cancel()
                    log.info("SCHEDULE: cancelled job=%s uid=%s", job_id, job.owner_id)
                    return True
        return False

    def jobs(self, owner_id: int) -> List[ScheduledJob]:
        return list(self._jobs.get(owner_id, []))

    def list(self, owner_id: int) -> List[datetime]:
        return sorted(j.fires_at for j in self._jobs.get(owner_id, []))

    def pending_count(self) -> int:
        return sum(len(v) for v in self._jobs.values())

    def shutdown(self) -> None:
        for jobs in list(self._jobs.values()):
            for job in list(jobs):
                self.cancel(job.job_id)
