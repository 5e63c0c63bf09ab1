"""
Session Manager

Creates and authorizes chat sessions. A session belongs to exactly one
owner; agent_id is its only public identifier.

A session stops being usable when it is ended, when it has been idle for
longer than idle_timeout_seconds, or when expires_at has passed.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

import settings
from exceptions import SessionExpired, SessionNotFound, UnauthorizedAccess
from models import AISession, SessionStatus, new_agent_id, utcnow
from services.log_redaction import mask_token
from services.prompt_catalog import PromptCatalog

logger = logging.getLogger(__name__)


class SessionManager:

    def __init__(
        self,
        db: Session,
        catalog: Optional[PromptCatalog],
        idle_timeout_seconds: Optional[int] = None,
        max_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog
        self.idle_timeout_seconds = idle_timeout_seconds or settings.SESSION_IDLE_TIMEOUT_SECONDS
        self.max_hours = max_hours or settings.SESSION_MAX_HOURS
        self._clock = clock

    def start_session(self, owner_id: str, session_type: str, metadata: Optional[Dict[str, Any]] = None) -> AISession:
        """Open a session bound to the currently active prompt. Raises PromptNotFound."""
        if not owner_id:
            raise UnauthorizedAccess("Owner is required")

        prompt = self.catalog.get_active(session_type)
        now = self._clock()

        session = AISession(
            agent_id=new_agent_id(),
            owner_id=owner_id,
            session_type=session_type,
            prompt_id=prompt.id,
            status=SessionStatus.ACTIVE,
            meta_data=metadata or {},
            interaction_count=0,
            total_tokens=0,
            total_cost=0.0,
            started_at=now,
            last_activity_at=now,
            idle_timeout_seconds=self.idle_timeout_seconds,
            expires_at=now + timedelta(hours=self.max_hours),
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)

        logger.info(
            f"Started new {session_type} session for owner {mask_token(owner_id)}: {mask_token(session.agent_id)}"
        )
        return session

    def _find(self, agent_id: str) -> AISession:
        session = self.db.query(AISession).filter(AISession.agent_id == agent_id).first()
        if not session:
            raise SessionNotFound(agent_id)
        return session

    def _find_owned(self, agent_id: str, owner_id: str) -> AISession:
        session = self._find(agent_id)
        if session.owner_id != owner_id:
            logger.warning(
                f"Unauthorized access attempt to session {mask_token(agent_id)} by owner {mask_token(owner_id or '')}"
            )
            raise UnauthorizedAccess()
        return session

    def is_expired(self, session: AISession, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if session.expires_at and now > session.expires_at:
            return True
        if session.last_activity_at:
            idle = now - session.last_activity_at
            if idle > timedelta(seconds=session.idle_timeout_seconds or self.idle_timeout_seconds):
                return True
        return False

    def get_authorized(self, agent_id: str, owner_id: str) -> AISession:
        """
        Session by agent_id, checked for ownership and liveness.

        Raises:
            SessionNotFound: unknown agent_id
            UnauthorizedAccess: owner mismatch
            SessionExpired: ended, idle too long, or past expires_at
        """
        session = self._find_owned(agent_id, owner_id)

        if session.status == SessionStatus.ACTIVE and self.is_expired(session):
            session.status = SessionStatus.EXPIRED
            session.ended_at = self._clock()
            session.termination_reason = "expired"
            self.db.commit()
            logger.info(f"Session {mask_token(agent_id)} expired")

        if session.status != SessionStatus.ACTIVE:
            raise SessionExpired(session.status)

        return session

    def record_interaction(self, session_id: str, tokens: int, cost: float):
        """Bump counters with SQL-side increments so concurrent updates are not lost."""
        self.db.query(AISession).filter(AISession.id == session_id).update(
            {
                AISession.interaction_count: AISession.interaction_count + 1,
                AISession.total_tokens: AISession.total_tokens + int(tokens or 0),
                AISession.total_cost: AISession.total_cost + float(cost or 0.0),
                AISession.last_activity_at: self._clock(),
            },
            synchronize_session="fetch",
        )
        self.db.commit()

    def end_session(self, agent_id: str, owner_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        session = self._find_owned(agent_id, owner_id)
        ended_at = self._clock()

        if session.status == SessionStatus.ACTIVE:
            session.status = SessionStatus.ENDED
            session.ended_at = ended_at
            session.termination_reason = reason
            self.db.commit()

        started = session.started_at or ended_at
        duration_minutes = int((ended_at - started).total_seconds() // 60)

        logger.info(f"Ended session {mask_token(agent_id)} after {duration_minutes} minutes")
        return {
            "success": True,
            "status": session.status,
            "duration_minutes": duration_minutes,
        }

    def extend_session(self, agent_id: str, owner_id: str, hours: int = 24) -> AISession:
        if hours <= 0:
            raise ValueError("hours must be positive")
        session = self.get_authorized(agent_id, owner_id)
        session.expires_at = (session.expires_at or self._clock()) + timedelta(hours=hours)
        self.db.commit()
        logger.info(f"Extended session {mask_token(agent_id)} by {hours} hours")
        return session

    def active_sessions(self, owner_id: str) -> List[AISession]:
        """Usable sessions of owner_id. Idle or past-deadline rows the sweep has not reached yet are left out."""
        now = self._clock()
        sessions = self.db.query(AISession).filter(
            AISession.owner_id == owner_id,
            AISession.status == SessionStatus.ACTIVE
        ).order_by(AISession.started_at.desc()).all()
        return [s for s in sessions if not self.is_expired(s, now)]

    def cleanup_expired_sessions(self) -> int:
        """Mark idle or past-deadline sessions as expired. Returns how many."""
        now = self._clock()
        active = self.db.query(AISession).filter(AISession.status == SessionStatus.ACTIVE).all()

        expired = 0
        for session in active:
            if self.is_expired(session, now):
                session.status = SessionStatus.EXPIRED
                session.ended_at = now
                session.termination_reason = "expired"
                expired += 1

        if expired:
            self.db.commit()
            logger.info(f"Cleaned up {expired} expired sessions")
        return expired


class SessionSweeper:
    """Background task that periodically expires idle or past-deadline sessions."""

    def __init__(
        self,
        get_db_session: Callable[[], Session],
        interval_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[int] = None,
        max_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.get_db_session = get_db_session
        self.interval_seconds = interval_seconds or settings.SESSION_SWEEP_INTERVAL_SECONDS
        self.idle_timeout_seconds = idle_timeout_seconds
        self.max_hours = max_hours
        self._clock = clock

        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            logger.warning("SessionSweeper is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"SessionSweeper started (every {self.interval_seconds}s)")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("SessionSweeper stopped")

    def is_running(self) -> bool:
        return self._running

    def sweep_once(self) -> int:
        db = self.get_db_session()
        try:
            manager = SessionManager(
                db,
                catalog=None,
                idle_timeout_seconds=self.idle_timeout_seconds,
                max_hours=self.max_hours,
                clock=self._clock,
            )
            return manager.cleanup_expired_sessions()
        finally:
            db.close()

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Error in session sweep: {e}", exc_info=True)
