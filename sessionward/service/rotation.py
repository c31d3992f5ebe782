from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from sessionward.config import Settings
from sessionward.logging import log_security_event
from sessionward.service.errors import InvalidToken, ReuseDetected
from sessionward.service.revocation import RevocationRegistry
from sessionward.service.sessions import SessionManager
from sessionward.service.tokens import TokenIssuer, TokenVerifier
from sessionward.storage.common import AuthRecordStore, Clock
from sessionward.storage.models import AccessClaims, Identity, TokenPair, utcnow


class RefreshRotator:
    """Exchanges a refresh token for a new pair, at most once per token.

    Redeeming a token that was already redeemed (or never existed) is treated
    as evidence of theft: every outstanding token and session of the subject
    is revoked.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthRecordStore,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        registry: RevocationRegistry,
        *,
        sessions: Optional[SessionManager] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.issuer = issuer
        self.verifier = verifier
        self.registry = registry
        self._clock = clock
        self.sessions = sessions or SessionManager(store, settings, clock=clock)

    async def rotate(self, refresh_token: str) -> TokenPair:
        claims = self.verifier.decode(refresh_token, token_type="refresh")
        # Consume and replace must not be split by caller cancellation
        return await asyncio.shield(self._redeem(claims))

    async def _redeem(self, claims: AccessClaims) -> TokenPair:
        record, was_unused = await self.store.consume_refresh(claims.token_id)
        if record is None or not was_unused or record.subject != claims.subject:
            await self._revoke_chain(claims)
            raise ReuseDetected("refresh_reuse")

        # Subject cut-offs burn refresh records, so only explicit token or
        # family revocation (logout) can still apply to an unused record
        if await self.registry.is_token_revoked(record.token_id, family_id=record.family_id):
            raise InvalidToken("revoked")

        identity = Identity(subject=record.subject, claims=dict(record.claims))
        pair = await self.issuer.issue_pair(identity, family_id=record.family_id)
        await self.store.link_successor(record.token_id, pair.refresh_token_id)
        return pair

    async def _revoke_chain(self, claims: AccessClaims) -> None:
        now = self._clock()
        skew = timedelta(seconds=self.settings.clock_skew_seconds)
        # Outstanding access tokens live at most one access TTL past now
        await self.registry.revoke_subject(
            claims.subject,
            now + timedelta(minutes=self.settings.access_token_ttl_minutes) + skew,
        )
        burned = await self.store.burn_subject_refresh(claims.subject)
        sessions = await self.sessions.destroy_all(claims.subject)
        log_security_event(
            "refresh_reuse_detected",
            subject=claims.subject,
            token_id=claims.token_id,
            family_id=claims.family_id,
            burned_refresh_tokens=burned,
            destroyed_sessions=sessions,
        )
