from __future__ import annotations

import asyncio
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import InvalidCredential, UpstreamTimeout
from sessionward.storage.common import CredentialStore
from sessionward.storage.models import Identity

logger = get_logger(__name__)


class CredentialVerifier:
    """Checks a presented secret against the argon2id hash on record.

    Unknown logins are verified against a throwaway hash so they cost the
    same and fail the same way as a wrong secret.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def hash_secret(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def set_secret(self, user_id: str, secret: str) -> None:
        """Hash and save a new secret for a user."""
        self.store.save_password(user_id, self.hash_secret(secret))

    def _verify_sync(self, stored_hash: str, presented: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, presented)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify(self, presented: str, stored_hash: str) -> bool:
        """Constant-time verify off the event loop, bounded by ``hash_timeout_seconds``."""
        timeout = self.settings.hash_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._verify_sync, stored_hash, presented),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error("password_hash_timeout", timeout=timeout)
            raise UpstreamTimeout("password_hasher", timeout)

    async def authenticate(self, login: str, secret: str) -> Identity:
        user = self.store.get_user_by_login(login) if login else None
        stored_hash = self.store.get_password_hash(user.id) if user else None

        verified = await self.verify(secret or "", stored_hash or self._dummy_hash)
        if not user or not stored_hash or not verified:
            logger.warning(
                "credential_rejected",
                reason="unknown_login" if not user else "bad_secret",
            )
            raise InvalidCredential("invalid_credential")
        if not user.is_active:
            logger.warning("credential_rejected", reason="inactive", subject=user.id)
            raise InvalidCredential("inactive_user")

        if self._pwd_hasher.check_needs_rehash(stored_hash):
            try:
                self.set_secret(user.id, secret)
                logger.info("password_rehashed", subject=user.id)
            except Exception as exc:
                # Login still succeeds on the old parameters
                logger.warning("password_rehash_failed", subject=user.id, error=str(exc))
        return user.identity()
