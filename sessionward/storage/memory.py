from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import (
    CsrfToken,
    OAuthFlowState,
    RefreshRecord,
    RevocationEntry,
    Session,
    User,
)


class MemoryStore:
    """Process-local backing store for tokens, sessions and OAuth state.

    One ``RLock`` guards every read-modify-write so check-then-act sequences
    (refresh consumption, OAuth state pop) are atomic across threads and event
    loops. Records are returned as copies; callers never mutate shared state.
    Expiry is enforced by the services at read time; ``cleanup_expired``
    drops records whose storage deadline has passed.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data_lock = threading.RLock()
        # credentials
        self.users: Dict[str, User] = {}
        self._users_by_login: Dict[str, str] = {}
        self.credentials: Dict[str, str] = {}
        # auth records
        self.refresh_tokens: Dict[str, RefreshRecord] = {}
        self._refresh_by_subject: Dict[str, set[str]] = {}
        self.revocations: Dict[Tuple[str, str], RevocationEntry] = {}
        self.sessions: Dict[str, Session] = {}
        self._session_expiry: Dict[str, datetime] = {}
        self._sessions_by_subject: Dict[str, set[str]] = {}
        self.csrf_tokens: Dict[str, List[CsrfToken]] = {}
        self._csrf_expiry: Dict[str, datetime] = {}
        self.oauth_states: Dict[str, OAuthFlowState] = {}

    # credentials
    def create_user(
        self, login: str, *, role: str = "user", tenant_id: str = "public"
    ) -> User:
        normalized = login.strip().lower()
        with self._data_lock:
            if normalized in self._users_by_login:
                raise ConstraintViolation("login already exists", {"login": normalized})
            user = User(id=str(uuid.uuid4()), login=normalized, role=role, tenant_id=tenant_id)
            self.users[user.id] = user
            self._users_by_login[normalized] = user.id
            return user

    def get_user_by_login(self, login: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_login.get(login.strip().lower())
            return self.users.get(user_id) if user_id else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.credentials[user_id] = password_hash

    # refresh tokens
    async def put_refresh(self, record: RefreshRecord) -> None:
        with self._data_lock:
            if record.token_id in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token id already exists", {"token_id": record.token_id}
                )
            self.refresh_tokens[record.token_id] = replace(record)
            self._refresh_by_subject.setdefault(record.subject, set()).add(record.token_id)

    async def get_refresh(self, token_id: str) -> Optional[RefreshRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    async def consume_refresh(
        self, token_id: str
    ) -> Tuple[Optional[RefreshRecord], bool]:
        """Mark a refresh record used; report whether it was unused before."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None:
                return None, False
            was_unused = not record.used
            record.used = True
            return replace(record), was_unused

    async def link_successor(self, token_id: str, successor_id: str) -> None:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is not None:
                record.successor_id = successor_id

    async def burn_subject_refresh(self, subject: str) -> int:
        burned = 0
        with self._data_lock:
            for token_id in self._refresh_by_subject.get(subject, set()):
                record = self.refresh_tokens.get(token_id)
                if record is not None and not record.used:
                    record.used = True
                    burned += 1
        return burned

    # revocation
    async def add_revocation(self, entry: RevocationEntry) -> RevocationEntry:
        key = (entry.kind, entry.key)
        with self._data_lock:
            current = self.revocations.get(key)
            if current is not None:
                entry = RevocationEntry(
                    key=entry.key,
                    kind=entry.kind,
                    revoked_at=max(current.revoked_at, entry.revoked_at),
                    expires_at=max(current.expires_at, entry.expires_at),
                )
            self.revocations[key] = entry
            return replace(entry)

    async def get_revocation(self, kind: str, key: str) -> Optional[RevocationEntry]:
        # Plain dict read: the verification hot path takes no lock
        entry = self.revocations.get((kind, key))
        return replace(entry) if entry else None

    # sessions
    async def put_session(self, session: Session, expires_at: datetime) -> None:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session, claims=dict(session.claims), meta=dict(session.meta))
            self._session_expiry[session.id] = expires_at
            self._sessions_by_subject.setdefault(session.subject, set()).add(session.id)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess, claims=dict(sess.claims), meta=dict(sess.meta)) if sess else None

    async def update_session_activity(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            if last_activity > sess.last_activity:
                sess.last_activity = last_activity
            self._session_expiry[session_id] = expires_at
            return replace(sess, claims=dict(sess.claims), meta=dict(sess.meta))

    def _drop_session_locked(self, session_id: str) -> bool:
        sess = self.sessions.pop(session_id, None)
        self._session_expiry.pop(session_id, None)
        self.csrf_tokens.pop(session_id, None)
        self._csrf_expiry.pop(session_id, None)
        if sess is None:
            return False
        owned = self._sessions_by_subject.get(sess.subject)
        if owned is not None:
            owned.discard(session_id)
            if not owned:
                self._sessions_by_subject.pop(sess.subject, None)
        return True

    async def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self._drop_session_locked(session_id)

    async def list_subject_sessions(self, subject: str) -> List[str]:
        with self._data_lock:
            return sorted(self._sessions_by_subject.get(subject, set()))

    # csrf
    async def push_csrf(
        self, token: CsrfToken, *, limit: int, expires_at: datetime
    ) -> None:
        with self._data_lock:
            window = self.csrf_tokens.setdefault(token.session_id, [])
            window.insert(0, token)
            del window[limit:]
            self._csrf_expiry[token.session_id] = expires_at

    async def get_csrf(self, session_id: str) -> List[CsrfToken]:
        with self._data_lock:
            return list(self.csrf_tokens.get(session_id, []))

    async def delete_csrf(self, session_id: str) -> None:
        with self._data_lock:
            self.csrf_tokens.pop(session_id, None)
            self._csrf_expiry.pop(session_id, None)

    # oauth
    async def put_oauth_state(self, flow: OAuthFlowState) -> None:
        with self._data_lock:
            if flow.state in self.oauth_states:
                raise ConstraintViolation("oauth state already exists")
            self.oauth_states[flow.state] = replace(flow)

    async def pop_oauth_state(self, state: str) -> Optional[OAuthFlowState]:
        with self._data_lock:
            return self.oauth_states.pop(state, None)

    # housekeeping
    async def cleanup_expired(self, now: datetime) -> Dict[str, int]:
        """Drop every record past its natural expiry."""
        counts = {"refresh": 0, "revocations": 0, "sessions": 0, "csrf": 0, "oauth": 0}
        with self._data_lock:
            for token_id, record in list(self.refresh_tokens.items()):
                if record.expires_at <= now:
                    self.refresh_tokens.pop(token_id, None)
                    owned = self._refresh_by_subject.get(record.subject)
                    if owned is not None:
                        owned.discard(token_id)
                        if not owned:
                            self._refresh_by_subject.pop(record.subject, None)
                    counts["refresh"] += 1
            for key, entry in list(self.revocations.items()):
                if entry.expires_at <= now:
                    self.revocations.pop(key, None)
                    counts["revocations"] += 1
            for session_id, expires_at in list(self._session_expiry.items()):
                if expires_at <= now:
                    # CSRF tokens go with their session and count as swept too
                    if session_id in self.csrf_tokens:
                        counts["csrf"] += 1
                    self._drop_session_locked(session_id)
                    counts["sessions"] += 1
            for session_id, expires_at in list(self._csrf_expiry.items()):
                if expires_at <= now:
                    self.csrf_tokens.pop(session_id, None)
                    self._csrf_expiry.pop(session_id, None)
                    counts["csrf"] += 1
            for state, flow in list(self.oauth_states.items()):
                if flow.expires_at <= now:
                    self.oauth_states.pop(state, None)
                    counts["oauth"] += 1
        if any(counts.values()):
            self.logger.debug("memory_store_cleanup", **counts)
        return counts

    async def close(self) -> None:
        return None
