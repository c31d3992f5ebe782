from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from sessionward.config import Settings
from sessionward.logging import get_logger, redact
from sessionward.service.credentials import CredentialVerifier
from sessionward.service.csrf import CsrfGuard
from sessionward.service.errors import (
    AuthenticationFailed,
    InvalidToken,
    ValidationError,
)
from sessionward.service.oauth import OAuthCoordinator
from sessionward.service.revocation import RevocationRegistry
from sessionward.service.rotation import RefreshRotator
from sessionward.service.sessions import SessionManager
from sessionward.service.tokens import TokenIssuer, TokenVerifier
from sessionward.storage.common import AuthRecordStore, Clock, CredentialStore
from sessionward.storage.models import (
    AuthorizationRequest,
    Identity,
    Session,
    TokenPair,
    utcnow,
)

logger = get_logger(__name__)

LOGIN_MODES = ("token", "session")


@dataclass
class LoginResult:
    identity: Identity
    tokens: Optional[TokenPair] = None
    session: Optional[Session] = None
    csrf_token: Optional[str] = None


@dataclass
class AuthContext:
    subject: str
    via: str  # "token" | "session"
    claims: Dict[str, Any] = field(default_factory=dict)
    token_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def role(self) -> Optional[str]:
        return self.claims.get("role")


class AuthService:
    """Login, refresh, logout and request authentication over both flows.

    The stateless flow hands out access/refresh pairs; the stateful flow
    hands out a session id plus a CSRF token. Both share one record store,
    one revocation registry and one clock.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthRecordStore,
        credential_store: CredentialStore,
        *,
        clock: Clock = utcnow,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        self.registry = RevocationRegistry(store, clock=clock)
        self.issuer = TokenIssuer(settings, store, clock=clock)
        self.verifier = TokenVerifier(settings, self.registry, clock=clock)
        self.sessions = SessionManager(store, settings, clock=clock)
        self.rotator = RefreshRotator(
            settings,
            store,
            self.issuer,
            self.verifier,
            self.registry,
            clock=clock,
            sessions=self.sessions,
        )
        self.csrf = CsrfGuard(store, settings, clock=clock)
        self.oauth = OAuthCoordinator(store, settings, clock=clock, transport=oauth_transport)
        self.credentials = CredentialVerifier(credential_store, settings)
        self.logger = logger
        self._last_cleanup = clock()

    def _skew(self) -> timedelta:
        return timedelta(seconds=self.settings.clock_skew_seconds)

    async def establish(
        self,
        identity: Identity,
        *,
        mode: str = "token",
        suggested_session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        """Hand an authenticated identity its token pair or session."""
        if mode == "token":
            tokens = await self.issuer.issue_pair(identity)
            self.logger.info("login_succeeded", subject=identity.subject, mode=mode)
            return LoginResult(identity=identity, tokens=tokens)
        if mode == "session":
            session = await self.sessions.create(
                identity,
                suggested_id=suggested_session_id,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            csrf = await self.csrf.issue(session.id)
            self.logger.info("login_succeeded", subject=identity.subject, mode=mode)
            return LoginResult(identity=identity, session=session, csrf_token=csrf.value)
        raise ValidationError("unsupported login mode", detail={"mode": mode})

    async def login(
        self,
        login: str,
        secret: str,
        *,
        mode: str = "token",
        suggested_session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        if mode not in LOGIN_MODES:
            raise ValidationError("unsupported login mode", detail={"mode": mode})
        identity = await self.credentials.authenticate(login, secret)
        return await self.establish(
            identity,
            mode=mode,
            suggested_session_id=suggested_session_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self.rotator.rotate(refresh_token)

    async def logout(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Revoke whatever credentials the caller presented.

        Tokens that no longer verify are already unusable and are skipped.
        """
        if access_token:
            try:
                claims = self.verifier.decode(access_token, token_type="access")
            except InvalidToken:
                claims = None
            if claims is not None:
                await self.registry.revoke_token(
                    claims.token_id, claims.expires_at + self._skew()
                )
        if refresh_token:
            try:
                claims = self.verifier.decode(refresh_token, token_type="refresh")
            except InvalidToken:
                claims = None
            if claims is not None:
                await self.store.consume_refresh(claims.token_id)
                if claims.family_id:
                    until = self._clock() + timedelta(days=self.settings.refresh_token_ttl_days)
                    await self.registry.revoke_family(claims.family_id, until + self._skew())
        if session_id:
            await self.sessions.destroy(session_id)
        self.logger.info(
            "logout_completed",
            access=bool(access_token),
            refresh=bool(refresh_token),
            session_id_prefix=redact(session_id),
        )

    async def logout_everywhere(self, subject: str) -> Dict[str, int]:
        """Revoke every outstanding token and session of ``subject``."""
        until = (
            self._clock()
            + timedelta(minutes=self.settings.access_token_ttl_minutes)
            + self._skew()
        )
        await self.registry.revoke_subject(subject, until)
        burned = await self.store.burn_subject_refresh(subject)
        sessions = await self.sessions.destroy_all(subject)
        self.logger.info(
            "logout_everywhere", subject=subject, refresh_burned=burned, sessions=sessions
        )
        return {"refresh": burned, "sessions": sessions}

    async def authenticate(
        self,
        *,
        authorization: Optional[str] = None,
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthContext:
        """Resolve the principal from a Bearer header or a session cookie."""
        if authorization:
            scheme, _, token = authorization.partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                raise InvalidToken("bad_authorization_header")
            claims = await self.verifier.verify(token.strip(), token_type="access")
            return AuthContext(
                subject=claims.subject,
                via="token",
                claims=claims.claims,
                token_id=claims.token_id,
            )
        if session_id:
            session = await self.sessions.get(
                session_id, user_agent=user_agent, ip_addr=ip_addr
            )
            session = await self.sessions.touch(session.id)
            return AuthContext(
                subject=session.subject,
                via="session",
                claims=dict(session.claims),
                session_id=session.id,
            )
        raise AuthenticationFailed("missing_credentials")

    async def start_oauth(
        self, provider: str, *, redirect_uri: Optional[str] = None
    ) -> AuthorizationRequest:
        await self.maybe_cleanup()
        return await self.oauth.initiate(provider, redirect_uri=redirect_uri)

    async def complete_oauth(
        self,
        provider: str,
        state: Optional[str],
        code: Optional[str],
        *,
        mode: str = "token",
        suggested_session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        identity = await self.oauth.handle_callback(state, code, provider=provider)
        return await self.establish(
            identity,
            mode=mode,
            suggested_session_id=suggested_session_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    async def cleanup_expired(self) -> Dict[str, int]:
        """Purge expired refresh, revocation, session, CSRF and OAuth records."""
        now = self._clock()
        counts = await self.store.cleanup_expired(now)
        self._last_cleanup = now
        if any(counts.values()):
            self.logger.debug("auth_state_cleanup", cleaned=sum(counts.values()), **counts)
        return counts

    async def maybe_cleanup(self, interval_seconds: Optional[int] = None) -> Dict[str, int]:
        """Run cleanup if the interval has elapsed since the last sweep."""
        interval = interval_seconds or self.settings.reaper_interval_seconds
        now: datetime = self._clock()
        if (now - self._last_cleanup).total_seconds() >= interval:
            return await self.cleanup_expired()
        return {}
