from __future__ import annotations

from datetime import datetime
from typing import Optional

from sessionward.logging import get_logger
from sessionward.storage.common import REVOCATION_KINDS, AuthRecordStore, Clock
from sessionward.storage.models import RevocationEntry, utcnow

logger = get_logger(__name__)


class RevocationRegistry:
    """Records tokens, rotation families and subjects that must stop verifying.

    A ``token`` or ``family`` entry rejects anything carrying that id. A
    ``subject`` entry is a cut-off: tokens for the subject issued at or before
    ``revoked_at`` are rejected, tokens minted afterwards verify normally.
    Entries are only kept until ``until``, which callers set to the latest
    expiry of anything the entry could still reject.
    """

    def __init__(self, store: AuthRecordStore, *, clock: Clock = utcnow) -> None:
        self.store = store
        self._clock = clock

    async def revoke(
        self, token_id_or_subject: str, until: datetime, *, kind: str = "token"
    ) -> RevocationEntry:
        if kind not in REVOCATION_KINDS:
            raise ValueError(f"unknown revocation kind: {kind}")
        now = self._clock()
        entry = await self.store.add_revocation(
            RevocationEntry(
                key=token_id_or_subject,
                kind=kind,
                revoked_at=now,
                expires_at=max(until, now),
            )
        )
        logger.info(
            "revocation_recorded",
            kind=kind,
            key_prefix=token_id_or_subject[:8],
            until=entry.expires_at.isoformat(),
        )
        return entry

    async def revoke_token(self, token_id: str, until: datetime) -> RevocationEntry:
        return await self.revoke(token_id, until, kind="token")

    async def revoke_family(self, family_id: str, until: datetime) -> RevocationEntry:
        return await self.revoke(family_id, until, kind="family")

    async def revoke_subject(self, subject: str, until: datetime) -> RevocationEntry:
        return await self.revoke(subject, until, kind="subject")

    async def _active(self, kind: str, key: Optional[str]) -> Optional[RevocationEntry]:
        if not key:
            return None
        entry = await self.store.get_revocation(kind, key)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    async def is_token_revoked(
        self, token_id: str, *, family_id: Optional[str] = None
    ) -> bool:
        """Token or family entries only; subject cut-offs are not consulted."""
        if await self._active("token", token_id):
            return True
        return await self._active("family", family_id) is not None

    async def is_revoked(
        self,
        token_id: str,
        subject: str,
        *,
        issued_at: Optional[datetime] = None,
        family_id: Optional[str] = None,
    ) -> bool:
        if await self.is_token_revoked(token_id, family_id=family_id):
            return True
        entry = await self._active("subject", subject)
        if entry is None:
            return False
        # No issue time: the cut-off cannot be evaluated, fail closed
        if issued_at is None:
            return True
        return issued_at <= entry.revoked_at

    async def prune(self) -> int:
        """Drop expired entries and return how many revocations were removed."""
        counts = await self.store.cleanup_expired(self._clock())
        return counts.get("revocations", 0)
