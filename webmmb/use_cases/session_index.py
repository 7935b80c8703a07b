"""Session-to-job ownership index.

This is the only access-control boundary: every status, result and cancel
request is checked here before the job record is touched.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final
from uuid import uuid4

from webmmb.config.logging_config import get_logger
from webmmb.domain.exceptions import NotFoundError, ValidationError
from webmmb.domain.models import SessionInfo, utc_now

logger = get_logger(__name__)

_PRINCIPAL_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9A-Za-z_\-]+$")


@dataclass
class _Session:
    session_id: str
    principal: str
    created_at: datetime
    expires_at: datetime
    job_ids: set[str] = field(default_factory=set)

    def info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            principal=self.principal,
            created_at=self.created_at,
            expires_at=self.expires_at,
            job_ids=sorted(self.job_ids),
        )


class SessionJobIndex:
    """Maps sessions to the jobs they own.

    Jobs outlive their session: when a session closes or expires, its jobs
    are parked under the session's principal and handed to the next session
    opened for that principal.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, _Session] = {}
        self._owners: dict[str, str] = {}
        self._parked: dict[str, set[str]] = {}

    def open_session(self, principal: str, *, session_id: str | None = None) -> SessionInfo:
        """Register an authenticated session and adopt its principal's jobs.

        Every session belongs to a principal so that its jobs can be handed
        on when the session closes or expires.
        """
        if not principal or not _PRINCIPAL_PATTERN.match(principal):
            raise ValidationError("Invalid username")

        now = self._clock()
        new_id = session_id or str(uuid4())
        with self._lock:
            if new_id in self._sessions:
                raise ValidationError("Session id already in use")
            session = _Session(
                session_id=new_id,
                principal=principal,
                created_at=now,
                expires_at=now + self._ttl,
            )
            adopted = self._parked.pop(principal, set())
            for job_id in adopted:
                self._owners[job_id] = new_id
            session.job_ids.update(adopted)
            self._sessions[new_id] = session
            info = session.info()

        logger.info(
            "session_opened",
            session_id=new_id,
            principal=principal,
            adopted_jobs=len(info.job_ids),
        )
        return info

    def close_session(self, session_id: str) -> None:
        """Log out; owned jobs stay alive and are parked for renewal."""

        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                raise NotFoundError("Unknown session")
            self._park_jobs(session)
        logger.info("session_closed", session_id=session_id)

    def require_session(self, session_id: str) -> SessionInfo:
        """Return a live session and push its expiry forward.

        Raises:
            NotFoundError: If the session is unknown or expired.
        """
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.expires_at <= now:
                raise NotFoundError("Unknown session")
            session.expires_at = now + self._ttl
            return session.info()

    def bind(self, session_id: str, job_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Unknown session")
            owner = self._owners.get(job_id)
            if owner is not None and owner != session_id:
                raise ValueError(f"Job {job_id} is already owned by another session")
            self._owners[job_id] = session_id
            session.job_ids.add(job_id)

    def list(self, session_id: str) -> frozenset[str]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return frozenset()
            return frozenset(session.job_ids)

    def authorize(self, session_id: str, job_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.expires_at <= self._clock():
                return False
            return job_id in session.job_ids

    def unbind(self, job_id: str) -> None:
        """Forget a reclaimed job."""

        with self._lock:
            session_id = self._owners.pop(job_id, None)
            if session_id is not None and session_id in self._sessions:
                self._sessions[session_id].job_ids.discard(job_id)
            for parked in self._parked.values():
                parked.discard(job_id)

    def park(self, principal: str, job_id: str) -> None:
        """Register a job without a live session (used after a restart)."""

        with self._lock:
            if job_id in self._owners:
                return
            self._parked.setdefault(principal, set()).add(job_id)

    def expire_sessions(self) -> list[str]:
        """Drop sessions past their expiry; returns their ids."""

        now = self._clock()
        with self._lock:
            expired = [
                session
                for session in self._sessions.values()
                if session.expires_at <= now
            ]
            for session in expired:
                del self._sessions[session.session_id]
                self._park_jobs(session)

        for session in expired:
            logger.info("session_expired", session_id=session.session_id)
        return [session.session_id for session in expired]

    def _park_jobs(self, session: _Session) -> None:
        for job_id in session.job_ids:
            self._owners.pop(job_id, None)
        if session.job_ids:
            self._parked.setdefault(session.principal, set()).update(session.job_ids)


__all__ = ["SessionJobIndex"]
