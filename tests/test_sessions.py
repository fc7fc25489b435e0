"""
Tests for _sessions.py

State machine transitions, destructive overwrite, artifact release on every
path back to "no session", and expiry.
"""

import os

import pytest

from _sessions import (
    InvalidTransition, NoPendingUpload, SessionEvent, SessionState, SessionStore, StaleSession,
)


def make_artifact(work_dir, name):
    path = os.path.join(work_dir, name)
    with open(path, "wb") as f:
        f.write(b"x")
    return path


@pytest.fixture
def sessions(clock):
    return SessionStore(clock=clock)


class TestBeginSession:

    def test_begin_creates_awaiting_confirmation(self, sessions):
        s = sessions.begin_session(42, "file-1", caption="hi")
        assert s.state is SessionState.AWAITING_CONFIRMATION
        assert sessions.get(42) is s
        assert s.caption == "hi"

    def test_overwrite_releases_previous_artifact(self, sessions, work_dir):
        first = make_artifact(work_dir, "a.jpg")
        second = make_artifact(work_dir, "b.jpg")
        s1 = sessions.begin_session(42, "ref1", artifact_path=first)
        s2 = sessions.begin_session(42, "ref2", artifact_path=second)
        assert not os.path.exists(first)
        assert os.path.exists(second)
        assert s1.state is SessionState.TERMINAL
        assert sessions.get(42) is s2
        assert s2.file_id == "ref2"
        assert len(sessions) == 1

    def test_users_do_not_interfere(self, sessions):
        sessions.begin_session(1, "a")
        sessions.begin_session(2, "b")
        sessions.transition(1, SessionEvent.CANCEL)
        assert 1 not in sessions
        assert sessions.get(2).file_id == "b"


class TestTransitions:

    def test_cancel_from_awaiting_confirmation(self, sessions, work_dir):
        path = make_artifact(work_dir, "c.jpg")
        sessions.begin_session(42, "ref", artifact_path=path)
        sessions.transition(42, SessionEvent.CANCEL)
        assert sessions.get(42) is None
        assert not os.path.exists(path)

    def test_publish_path(self, sessions, work_dir):
        path = make_artifact(work_dir, "p.jpg")
        s = sessions.begin_session(7, "ref", artifact_path=path)
        assert sessions.transition(7, SessionEvent.CONFIRM).state is SessionState.CHOOSING_TIMING
        assert sessions.transition(7, SessionEvent.PUBLISH_NOW).state is SessionState.PUBLISHING
        sessions.transition(7, SessionEvent.PUBLISH_COMPLETED, expected_id=s.session_id)
        assert 7 not in sessions
        assert not os.path.exists(path)

    def test_publish_failed_releases_artifact(self, sessions, work_dir):
        path = make_artifact(work_dir, "f.jpg")
        s = sessions.begin_session(7, "ref", artifact_path=path)
        sessions.transition(7, SessionEvent.CONFIRM)
        sessions.transition(7, SessionEvent.PUBLISH_NOW)
        sessions.transition(7, SessionEvent.PUBLISH_FAILED, expected_id=s.session_id)
        assert 7 not in sessions
        assert not os.path.exists(path)

    def test_schedule_path(self, sessions):
        sessions.begin_session(9, "ref")
        sessions.transition(9, SessionEvent.CONFIRM)
        s = sessions.transition(9, SessionEvent.SCHEDULE_REQUESTED)
        assert s.state is SessionState.AWAITING_SCHEDULE_TIME
        sessions.transition(9, SessionEvent.SCHEDULE_COMMITTED)
        assert 9 not in sessions

    def test_no_session(self, sessions):
        with pytest.raises(NoPendingUpload):
            sessions.transition(42, SessionEvent.CONFIRM)

    def test_invalid_transition_keeps_session(self, sessions):
        sessions.begin_session(42, "ref")
        with pytest.raises(InvalidTransition):
            sessions.transition(42, SessionEvent.PUBLISH_NOW)
        assert sessions.get(42).state is SessionState.AWAITING_CONFIRMATION

    def test_cancel_while_publishing_makes_completion_stale(self, sessions):
        s = sessions.begin_session(42, "ref")
        sessions.transition(42, SessionEvent.CONFIRM)
        sessions.transition(42, SessionEvent.PUBLISH_NOW)
        sessions.transition(42, SessionEvent.CANCEL)
        with pytest.raises(StaleSession):
            sessions.transition(42, SessionEvent.PUBLISH_COMPLETED, expected_id=s.session_id)

    def test_completion_for_replaced_session_does_not_touch_new_one(self, sessions):
        old = sessions.begin_session(42, "ref1")
        sessions.transition(42, SessionEvent.CONFIRM)
        sessions.transition(42, SessionEvent.PUBLISH_NOW)
        new = sessions.begin_session(42, "ref2")
        with pytest.raises(StaleSession):
            sessions.transition(42, SessionEvent.PUBLISH_COMPLETED, expected_id=old.session_id)
        assert sessions.get(42) is new
        assert new.state is SessionState.AWAITING_CONFIRMATION


class TestEndAndExpire:

    def test_end_session_is_idempotent(self, sessions, work_dir):
        path = make_artifact(work_dir, "e.jpg")
        sessions.begin_session(42, "ref", artifact_path=path)
        assert sessions.end_session(42) is not None
        assert sessions.end_session(42) is None
        assert not os.path.exists(path)

    def test_missing_artifact_is_not_an_error(self, sessions, work_dir):
        sessions.begin_session(42, "ref", artifact_path=os.path.join(work_dir, "gone.jpg"))
        sessions.end_session(42)
        assert 42 not in sessions

    def test_artifact_released_exactly_once(self, sessions, work_dir):
        path = make_artifact(work_dir, "once.jpg")
        s = sessions.begin_session(42, "ref", artifact_path=path)
        sessions.end_session(42)
        assert s.artifact_path is None
        # a new file at the same path must survive a second release attempt
        make_artifact(work_dir, "once.jpg")
        sessions.end_session(42)
        assert os.path.exists(path)

    def test_expire_drops_old_sessions(self, sessions, clock, work_dir):
        path = make_artifact(work_dir, "old.jpg")
        sessions.begin_session(1, "old", artifact_path=path)
        clock.advance(10)
        sessions.begin_session(2, "new")
        stale = sessions.expire(older_than=clock() - 5)
        assert [s.owner_id for s in stale] == [1]
        assert 1 not in sessions and 2 in sessions
        assert not os.path.exists(path)

    def test_snapshot_is_independent(self, sessions):
        s = sessions.begin_session(9, "ref", caption="c")
        snap = s.snapshot()
        sessions.begin_session(9, "other")
        assert snap.file_id == "ref"
        assert snap.caption == "c"
        assert snap.session_id == s.session_id
