from __future__ import annotations
import logging, time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from _prompts import PromptKind, PromptStore
from _publish import PublishError, PublishPipeline, PublishedLink
from _scheduler import PublishScheduler, ScheduledJob, ScheduleTimeError, parse_schedule_time, utcnow
from _sessions import (
    NoPendingUpload, PublishRequest, SessionEvent, SessionState, SessionStore, StaleSession, UploadSession,
)

log = logging.getLogger("telegraph-publisher")


class ScheduleInputError(ScheduleTimeError):
    def __init__(self, message: str, retry: bool):
        super().__init__(message)
        self.retry = retry


@dataclass(frozen=True)
class Notice:
    user_id: int
    kind: str  # published | publish_failed | expired
    link: Optional[str] = None
    error: Optional[str] = None
    fires_at: Optional[datetime] = None
    recorded: bool = True


Notifier = Callable[[Notice], Awaitable[None]]


class UploadFlow:
    def __init__(self, sessions: SessionStore, pipeline: PublishPipeline, prompts: PromptStore,
                 notify: Notifier, tz: str = "UTC", session_ttl: float = 24 * 60 * 60,
                 clock: Callable[[], float] = time.time,
                 utc_clock: Callable[[], datetime] = utcnow,
                 preview: bool = True):
        self.sessions = sessions
        self.pipeline = pipeline
        self.prompts = prompts
        self._notify = notify
        self.tz = tz
        self.session_ttl = session_ttl
        self._clock = clock
        self._utc_clock = utc_clock
        self.preview = preview
        self.scheduler = PublishScheduler(self.fire, clock=utc_clock)

    async def begin(self, user_id: int, file_id: str, caption: Optional[str] = None) -> UploadSession:
        artifact = None
        if self.preview:
            try:
                artifact = await self.pipeline.prepare_preview(file_id)
            except (PublishError, OSError) as e:
                log.info("FLOW: preview not prepared uid=%s err=%s", user_id, e)
        self.prompts.clear(user_id)
        return self.sessions.begin_session(user_id, file_id, caption=caption, artifact_path=artifact)

    def confirm(self, user_id: int) -> UploadSession:
        return self.sessions.transition(user_id, SessionEvent.CONFIRM)

    def cancel(self, user_id: int) -> UploadSession:
        self.prompts.clear(user_id)
        return self.sessions.transition(user_id, SessionEvent.CANCEL)

    async def publish_now(self, user_id: int) -> PublishedLink:
        session = self.sessions.transition(user_id, SessionEvent.PUBLISH_NOW)
        request = session.snapshot()
        try:
            link = await self.pipeline.publish(request)
        except Exception:
            # any failure ends the session and releases its artifact
            self._complete(request, SessionEvent.PUBLISH_FAILED)
            raise
        self._complete(request, SessionEvent.PUBLISH_COMPLETED)
        return link

    def _complete(self, request: PublishRequest, event: SessionEvent) -> None:
        try:
            self.sessions.transition(request.owner_id, event, expected_id=request.session_id)
        except StaleSession:
            log.warning("FLOW: uid=%s session %s changed while publishing; %s not applied",
                        request.owner_id, request.session_id, event.value)

    def request_schedule(self, user_id: int) -> UploadSession:
        session = self.sessions.transition(user_id, SessionEvent.SCHEDULE_REQUESTED)
        self.prompts.await_input(user_id, PromptKind.SCHEDULE_TIME)
        return session

    def submit_schedule_time(self, user_id: int, text: str) -> ScheduledJob:
        session = self.sessions.get(user_id)
        if session is None or session.state is not SessionState.AWAITING_SCHEDULE_TIME:
            self.prompts.clear(user_id)
            raise NoPendingUpload(user_id)
        try:
            fires_at = parse_schedule_time(text, self.tz, now=self._utc_clock())
        except ScheduleTimeError as e:
            retry = self.prompts.record_failure(user_id)
            if not retry:
                self.sessions.end_session(user_id)
            log.info("FLOW: bad schedule time uid=%s retry=%s err=%s", user_id, retry, e)
            raise ScheduleInputError(str(e), retry) from e

        request = session.snapshot()
        self.sessions.transition(user_id, SessionEvent.SCHEDULE_COMMITTED, expected_id=session.session_id)
        self.prompts.clear(user_id)
        return self.scheduler.schedule(user_id, request, fires_at)

    async def fire(self, job: ScheduledJob) -> None:
        # the live session store is not consulted: the job publishes its own snapshot
        try:
            link = await self.pipeline.publish(job.request)
        except PublishError as e:
            await self._send(Notice(job.owner_id, "publish_failed", error=str(e), fires_at=job.fires_at))
            return
        except Exception as e:
            log.exception("FLOW: scheduled job=%s uid=%s crashed", job.job_id, job.owner_id)
            await self._send(Notice(job.owner_id, "publish_failed", error=repr(e), fires_at=job.fires_at))
            return
        await self._send(Notice(job.owner_id, "published", link=link.url, fires_at=job.fires_at,
                                recorded=link.recorded))

    async def expire_stale(self) -> List[UploadSession]:
        stale = self.sessions.expire(self._clock() - self.session_ttl)
        for s in stale:
            self.prompts.clear(s.owner_id)
            await self._send(Notice(s.owner_id, "expired"))
        return stale

    async def _send(self, notice: Notice) -> None:
        try:
            await self._notify(notice)
        except Exception:
            log.exception("FLOW: notify failed uid=%s kind=%s", notice.user_id, notice.kind)
