"""Store interfaces shared by the in-memory and Redis backends.

Every refresh, revocation, session, CSRF and OAuth record lives behind
``AuthRecordStore`` so the same services run against a process-local store
or a shared cache without changing call sites. Mutations that must be atomic
with respect to concurrent callers on the same key are single store calls
(``consume_refresh``, ``pop_oauth_state``, ``add_revocation``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from sessionward.storage.models import (
    CsrfToken,
    OAuthFlowState,
    RefreshRecord,
    RevocationEntry,
    Session,
    User,
)

Clock = Callable[[], datetime]

REVOCATION_KINDS = ("token", "family", "subject")


def ttl_seconds(expires_at: datetime, now: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least one second."""
    return max(1, int((expires_at - now).total_seconds()))


class AuthRecordStore(Protocol):
    # refresh tokens
    async def put_refresh(self, record: RefreshRecord) -> None: ...

    async def get_refresh(self, token_id: str) -> Optional[RefreshRecord]: ...

    async def consume_refresh(
        self, token_id: str
    ) -> Tuple[Optional[RefreshRecord], bool]: ...

    async def link_successor(self, token_id: str, successor_id: str) -> None: ...

    async def burn_subject_refresh(self, subject: str) -> int: ...

    # revocation
    async def add_revocation(self, entry: RevocationEntry) -> RevocationEntry: ...

    async def get_revocation(
        self, kind: str, key: str
    ) -> Optional[RevocationEntry]: ...

    # sessions
    async def put_session(self, session: Session, expires_at: datetime) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def update_session_activity(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> Optional[Session]: ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def list_subject_sessions(self, subject: str) -> List[str]: ...

    # csrf
    async def push_csrf(
        self, token: CsrfToken, *, limit: int, expires_at: datetime
    ) -> None: ...

    async def get_csrf(self, session_id: str) -> List[CsrfToken]: ...

    async def delete_csrf(self, session_id: str) -> None: ...

    # oauth
    async def put_oauth_state(self, flow: OAuthFlowState) -> None: ...

    async def pop_oauth_state(self, state: str) -> Optional[OAuthFlowState]: ...

    # housekeeping
    async def cleanup_expired(self, now: datetime) -> Dict[str, int]: ...

    async def close(self) -> None: ...


class CredentialStore(Protocol):
    """User lookup and derived-hash storage owned by the profile service."""

    def create_user(
        self, login: str, *, role: str = "user", tenant_id: str = "public"
    ) -> User: ...

    def get_user_by_login(self, login: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...
