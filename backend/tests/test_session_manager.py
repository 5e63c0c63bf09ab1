"""
SessionManager Tests

- Session start requires an active prompt
- Ownership checks and expiry (idle timeout, absolute deadline, ended)
- Atomic counter updates
- End / extend / cleanup and the background sweep
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from exceptions import PromptNotFound, SessionExpired, SessionNotFound, UnauthorizedAccess
from models import AISession, SessionStatus
from db import get_session_factory
from services.session_manager import SessionManager, SessionSweeper


class MovableClock:
    def __init__(self):
        self.now = datetime(2025, 1, 15, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return MovableClock()


@pytest.fixture
def manager(db, catalog, clock, reference_prompt):
    return SessionManager(db, catalog, idle_timeout_seconds=1800, max_hours=24, clock=clock)


def test_start_session(manager, reference_prompt, clock):
    session = manager.start_session("user-1", "reference_coach", {"source": "web"})

    assert session.agent_id
    assert session.agent_id != session.id
    assert session.owner_id == "user-1"
    assert session.prompt_id == reference_prompt.id
    assert session.status == SessionStatus.ACTIVE
    assert session.interaction_count == 0
    assert session.meta_data == {"source": "web"}
    assert session.expires_at == clock.now + timedelta(hours=24)


def test_start_session_without_prompt(manager):
    with pytest.raises(PromptNotFound):
        manager.start_session("user-1", "verification")


def test_start_session_requires_owner(manager):
    with pytest.raises(UnauthorizedAccess):
        manager.start_session("", "reference_coach")


def test_get_authorized_owner_mismatch(manager):
    session = manager.start_session("user-1", "reference_coach")

    with pytest.raises(UnauthorizedAccess) as exc_info:
        manager.get_authorized(session.agent_id, "user-2")
    assert not isinstance(exc_info.value, SessionExpired)


def test_get_authorized_unknown_agent(manager):
    with pytest.raises(SessionNotFound):
        manager.get_authorized("no-such-agent", "user-1")


def test_idle_session_expires(manager, clock, db):
    session = manager.start_session("user-1", "reference_coach")

    clock.advance(minutes=29)
    assert manager.get_authorized(session.agent_id, "user-1").id == session.id

    clock.advance(minutes=2)
    with pytest.raises(SessionExpired):
        manager.get_authorized(session.agent_id, "user-1")

    db.refresh(session)
    assert session.status == SessionStatus.EXPIRED
    assert session.termination_reason == "expired"


def test_activity_keeps_session_alive(manager, clock):
    session = manager.start_session("user-1", "reference_coach")

    for _ in range(3):
        clock.advance(minutes=20)
        manager.record_interaction(session.id, 10, 0.001)

    assert manager.get_authorized(session.agent_id, "user-1").status == SessionStatus.ACTIVE


def test_absolute_deadline(manager, clock):
    session = manager.start_session("user-1", "reference_coach")

    # Stay active but cross the 24h deadline
    for _ in range(25):
        clock.advance(minutes=59)
        manager.record_interaction(session.id, 1, 0.0)

    with pytest.raises(SessionExpired):
        manager.get_authorized(session.agent_id, "user-1")


def test_record_interaction_increments(manager, db):
    session = manager.start_session("user-1", "reference_coach")

    manager.record_interaction(session.id, 150, 0.002)
    manager.record_interaction(session.id, 50, 0.001)

    stored = db.query(AISession).filter(AISession.id == session.id).one()
    db.refresh(stored)
    assert stored.interaction_count == 2
    assert stored.total_tokens == 200
    assert stored.total_cost == pytest.approx(0.003)


def test_end_session(manager, clock):
    session = manager.start_session("user-1", "reference_coach")
    clock.advance(minutes=12)

    result = manager.end_session(session.agent_id, "user-1", "user closed chat")

    assert result == {"success": True, "status": SessionStatus.ENDED, "duration_minutes": 12}
    with pytest.raises(SessionExpired) as exc_info:
        manager.get_authorized(session.agent_id, "user-1")
    assert exc_info.value.status == SessionStatus.ENDED


def test_end_session_checks_owner(manager):
    session = manager.start_session("user-1", "reference_coach")
    with pytest.raises(UnauthorizedAccess):
        manager.end_session(session.agent_id, "intruder")


def test_extend_session(manager):
    session = manager.start_session("user-1", "reference_coach")
    original = session.expires_at

    extended = manager.extend_session(session.agent_id, "user-1", hours=6)

    assert extended.expires_at == original + timedelta(hours=6)
    with pytest.raises(ValueError):
        manager.extend_session(session.agent_id, "user-1", hours=0)


def test_active_sessions_and_cleanup(manager, clock):
    first = manager.start_session("user-1", "reference_coach")
    clock.advance(minutes=40)
    second = manager.start_session("user-1", "reference_coach")
    manager.start_session("user-2", "reference_coach")

    # first has been idle for 40 minutes: listed as gone before the sweep runs
    assert [s.id for s in manager.active_sessions("user-1")] == [second.id]

    assert manager.cleanup_expired_sessions() == 1
    assert [s.id for s in manager.active_sessions("user-1")] == [second.id]


def test_active_sessions_hide_idle_sessions(db, catalog, clock, reference_prompt):
    manager = SessionManager(db, catalog, idle_timeout_seconds=60, max_hours=24, clock=clock)
    manager.start_session("user-1", "reference_coach")

    clock.advance(hours=2)

    assert manager.active_sessions("user-1") == []


def test_sweeper_expires_idle_sessions(db, engine, manager, clock):
    session = manager.start_session("user-1", "reference_coach")
    clock.advance(hours=1)

    sweeper = SessionSweeper(get_session_factory(engine), interval_seconds=3600, clock=clock)

    assert sweeper.sweep_once() == 1
    db.expire_all()
    row = db.query(AISession).filter(AISession.id == session.id).one()
    assert row.status == SessionStatus.EXPIRED
    assert row.termination_reason == "expired"
    assert sweeper.sweep_once() == 0


@pytest.mark.asyncio
async def test_sweeper_runs_in_background(db, engine, manager, clock):
    session = manager.start_session("user-1", "reference_coach")
    clock.advance(hours=1)

    sweeper = SessionSweeper(get_session_factory(engine), interval_seconds=0.01, clock=clock)
    await sweeper.start()
    assert sweeper.is_running()
    await asyncio.sleep(0.1)
    await sweeper.stop()

    assert not sweeper.is_running()
    db.expire_all()
    assert db.query(AISession).filter(AISession.id == session.id).one().status == SessionStatus.EXPIRED
