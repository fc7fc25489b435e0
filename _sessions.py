from __future__ import annotations
import enum, logging, os, time, uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

log = logging.getLogger("telegraph-publisher")


class SessionState(str, enum.Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CHOOSING_TIMING = "choosing_timing"
    AWAITING_SCHEDULE_TIME = "awaiting_schedule_time"
    PUBLISHING = "publishing"
    TERMINAL = "terminal"


class SessionEvent(str, enum.Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    PUBLISH_NOW = "publish_now"
    SCHEDULE_REQUESTED = "schedule_requested"
    SCHEDULE_COMMITTED = "schedule_committed"
    PUBLISH_COMPLETED = "publish_completed"
    PUBLISH_FAILED = "publish_failed"


class SessionError(Exception):
    pass


class NoPendingUpload(SessionError):
    pass


class InvalidTransition(SessionError):
    def __init__(self, state: SessionState, event: SessionEvent):
        super().__init__(f"{event.value} not allowed in {state.value}")
        self.state = state
        self.event = event


class StaleSession(SessionError):
    """The session a completion refers to was replaced or removed meanwhile."""


S, E = SessionState, SessionEvent

# next state; None = session ends
_TRANSITIONS = {
    (S.AWAITING_CONFIRMATION, E.CONFIRM): S.CHOOSING_TIMING,
    (S.CHOOSING_TIMING, E.PUBLISH_NOW): S.PUBLISHING,
    (S.CHOOSING_TIMING, E.SCHEDULE_REQUESTED): S.AWAITING_SCHEDULE_TIME,
    (S.AWAITING_SCHEDULE_TIME, E.SCHEDULE_COMMITTED): None,
    (S.PUBLISHING, E.PUBLISH_COMPLETED): None,
    (S.PUBLISHING, E.PUBLISH_FAILED): None,
}


@dataclass
class UploadSession:
    owner_id: int
    file_id: str
    caption: Optional[str] = None
    artifact_path: Optional[str] = None
    state: SessionState = SessionState.AWAITING_CONFIRMATION
    created_at: float = 0.0
    preview_message_id: Optional[int] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def live(self) -> bool:
        return self.state is not SessionState.TERMINAL

    def snapshot(self) -> "PublishRequest":
        return PublishRequest(
            owner_id=self.owner_id,
            file_id=self.file_id,
            caption=self.caption,
            session_id=self.session_id,
        )


@dataclass(frozen=True)
class PublishRequest:
    owner_id: int
    file_id: str
    caption: Optional[str] = None
    session_id: Optional[str] = None


def release_artifact(session: UploadSession) -> None:
    path, session.artifact_path = session.artifact_path, None
    if not path:
        return
    try:
        os.remove(path)
        log.debug("SESSION: artifact released uid=%s path=%s", session.owner_id, path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("SESSION: artifact cleanup failed uid=%s path=%s err=%s", session.owner_id, path, e)


class SessionStore:
    """
    At most one live upload per user. All methods are synchronous so a call
    can never interleave with another event for the same user.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[int, UploadSession] = {}

    def begin_session(self, user_id: int, file_id: str, caption: Optional[str] = None,
                      artifact_path: Optional[str] = None) -> UploadSession:
        old = self._sessions.pop(user_id, None)
        if old is not None:
            log.info("SESSION: uid=%s replaced %s (%s)", user_id, old.session_id, old.state.value)
            self._close(old)
        session = UploadSession(
            owner_id=user_id,
            file_id=file_id,
            caption=caption,
            artifact_path=artifact_path,
            created_at=self._clock(),
        )
        self._sessions[user_id] = session
        log.info("SESSION: begin uid=%s sid=%s", user_id, session.session_id)
        return session

    def get(self, user_id: int) -> Optional[UploadSession]:
        return self._sessions.get(user_id)

    def transition(self, user_id: int, event: SessionEvent,
                   expected_id: Optional[str] = None) -> UploadSession:
        session = self._sessions.get(user_id)
        if expected_id is not None and (session is None or session.session_id != expected_id):
            raise StaleSession(expected_id)
        if session is None:
            raise NoPendingUpload(user_id)

        if event is SessionEvent.CANCEL:
            self.end_session(user_id)
            return session

        key = (session.state, event)
        if key not in _TRANSITIONS:
            raise InvalidTransition(session.state, event)
        nxt = _TRANSITIONS[key]
        log.debug("SESSION: uid=%s %s --%s--> %s", user_id, session.state.value, event.value,
                  nxt.value if nxt else "(none)")
        if nxt is None:
            self.end_session(user_id)
        else:
            session.state = nxt
        return session

    def end_session(self, user_id: int) -> Optional[UploadSession]:
        session = self._sessions.pop(user_id, None)
        if session is not None:
            self._close(session)
            log.info("SESSION: end uid=%s sid=%s", user_id, session.session_id)
        return session

    def expire(self, older_than: float) -> List[UploadSession]:
        stale = [s for s in self._sessions.values() if s.created_at < older_than]
        for s in stale:
            self._sessions.pop(s.owner_id, None)
            self._close(s)
            log.info("SESSION: expired uid=%s sid=%s state=%s", s.owner_id, s.session_id, s.state.value)
        return stale

    def _close(self, session: UploadSession) -> None:
        session.state = SessionState.TERMINAL
        release_artifact(session)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._sessions
