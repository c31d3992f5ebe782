from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sessionward.config import Settings
from sessionward.logging import get_logger, log_security_event, redact
from sessionward.service.errors import SessionNotFound
from sessionward.storage.common import AuthRecordStore, Clock
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Identity, Session, utcnow

logger = get_logger(__name__)

_ID_ATTEMPTS = 3


class SessionManager:
    """Server-side sessions addressed by an opaque cookie value.

    A session dies at whichever comes first: ``session_idle_timeout_minutes``
    after its last activity or ``session_absolute_timeout_minutes`` after
    creation. Reads from a client whose fingerprint differs from the one
    recorded at creation destroy the session.
    """

    def __init__(
        self,
        store: AuthRecordStore,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._idle = timedelta(minutes=settings.session_idle_timeout_minutes)
        self._absolute = timedelta(minutes=settings.session_absolute_timeout_minutes)

    def fingerprint(self, user_agent: Optional[str], ip_addr: Optional[str]) -> str:
        material = user_agent or ""
        if self.settings.session_bind_ip:
            material = f"{material}|{ip_addr or ''}"
        # Keyed so stored fingerprints cannot be matched against known agents offline
        return hmac.new(
            (self.settings.jwt_secret or "").encode(), material.encode(), hashlib.sha256
        ).hexdigest()

    def _deadline(self, session: Session) -> datetime:
        return min(session.last_activity + self._idle, session.created_at + self._absolute)

    async def create(
        self,
        identity: Identity,
        *,
        suggested_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        if suggested_id:
            # A pre-authentication id is never promoted; a live one is discarded
            if await self.store.delete_session(suggested_id):
                log_security_event(
                    "session_fixation_guard",
                    session_id_prefix=redact(suggested_id),
                    subject=identity.subject,
                )

        now = self._clock()
        for attempt in range(_ID_ATTEMPTS):
            session_id = secrets.token_urlsafe(32)
            if session_id == suggested_id:
                continue
            session = Session(
                id=session_id,
                subject=identity.subject,
                created_at=now,
                last_activity=now,
                user_agent=user_agent,
                ip_addr=ip_addr,
                fingerprint=self.fingerprint(user_agent, ip_addr),
                claims=dict(identity.claims),
            )
            try:
                await self.store.put_session(session, self._deadline(session))
            except ConstraintViolation:
                logger.warning("session_id_collision", attempt=attempt)
                continue
            logger.info(
                "session_created",
                subject=identity.subject,
                session_id_prefix=redact(session_id),
            )
            return session
        raise RuntimeError("could not allocate a unique session id")

    async def get(
        self,
        session_id: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        check_fingerprint: bool = True,
    ) -> Session:
        if not session_id:
            raise SessionNotFound("missing_session_id")
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound("unknown_session")

        now = self._clock()
        if now >= session.last_activity + self._idle:
            await self.store.delete_session(session_id)
            logger.info("session_expired", reason="idle", session_id_prefix=redact(session_id))
            raise SessionNotFound("idle_timeout")
        if now >= session.created_at + self._absolute:
            await self.store.delete_session(session_id)
            logger.info(
                "session_expired", reason="absolute", session_id_prefix=redact(session_id)
            )
            raise SessionNotFound("absolute_timeout")

        if check_fingerprint and session.fingerprint:
            presented = self.fingerprint(user_agent, ip_addr)
            if not hmac.compare_digest(presented, session.fingerprint):
                await self.store.delete_session(session_id)
                log_security_event(
                    "session_fingerprint_mismatch",
                    subject=session.subject,
                    session_id_prefix=redact(session_id),
                )
                raise SessionNotFound("fingerprint_mismatch")
        return session

    async def touch(self, session_id: str) -> Session:
        """Record activity, extending the idle deadline up to the absolute cap."""
        session = await self.get(session_id, check_fingerprint=False)
        now = self._clock()
        session.last_activity = max(session.last_activity, now)
        updated = await self.store.update_session_activity(
            session_id, session.last_activity, self._deadline(session)
        )
        if updated is None:
            raise SessionNotFound("unknown_session")
        return updated

    async def destroy(self, session_id: str) -> bool:
        removed = await self.store.delete_session(session_id)
        if removed:
            logger.info("session_destroyed", session_id_prefix=redact(session_id))
        return removed

    async def destroy_all(self, subject: str) -> int:
        destroyed = 0
        for session_id in await self.store.list_subject_sessions(subject):
            if await self.store.delete_session(session_id):
                destroyed += 1
        logger.info("subject_sessions_destroyed", subject=subject, count=destroyed)
        return destroyed
