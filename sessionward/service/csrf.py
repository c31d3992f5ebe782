from __future__ import annotations

import hmac
import secrets
from datetime import timedelta
from typing import Optional

from sessionward.config import Settings
from sessionward.logging import get_logger, log_security_event, redact
from sessionward.service.errors import CsrfMismatch, SessionNotFound
from sessionward.storage.common import AuthRecordStore, Clock
from sessionward.storage.models import CsrfToken, utcnow

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfGuard:
    """Synchronizer tokens bound to a server-side session.

    Each session keeps a small window of recently issued tokens so several
    open forms stay valid; issuing past the window evicts the oldest. Tokens
    are deleted together with their session.
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
        self._ttl = timedelta(minutes=settings.csrf_token_ttl_minutes)

    async def issue(self, session_id: str) -> CsrfToken:
        if not session_id or await self.store.get_session(session_id) is None:
            raise SessionNotFound("csrf_for_unknown_session")
        now = self._clock()
        token = CsrfToken(
            value=secrets.token_urlsafe(32), session_id=session_id, created_at=now
        )
        await self.store.push_csrf(
            token,
            limit=self.settings.csrf_tokens_per_session,
            expires_at=now + self._ttl,
        )
        return token

    async def verify(self, session_id: Optional[str], presented: Optional[str]) -> bool:
        if not session_id or not presented:
            return False
        if await self.store.get_session(session_id) is None:
            return False
        now = self._clock()
        matched = False
        for token in await self.store.get_csrf(session_id):
            if token.created_at + self._ttl <= now:
                continue
            # Compare against every live token so timing does not reveal the position
            if hmac.compare_digest(token.value.encode(), presented.encode()):
                matched = True
        return matched

    async def require(
        self, method: str, session_id: Optional[str], presented: Optional[str]
    ) -> None:
        if method.upper() in SAFE_METHODS:
            return
        if not await self.verify(session_id, presented):
            log_security_event(
                "csrf_rejected",
                method=method.upper(),
                session_id_prefix=redact(session_id),
                token_present=bool(presented),
            )
            raise CsrfMismatch("token_not_issued_for_session" if presented else "token_missing")
