from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlparse

import httpx

from sessionward.config import OAuthProviderConfig, Settings
from sessionward.logging import get_logger, log_security_event, redact
from sessionward.service.errors import (
    AuthenticationFailed,
    OAuthStateMismatch,
    UpstreamTimeout,
    ValidationError,
)
from sessionward.storage.common import AuthRecordStore, Clock
from sessionward.storage.models import (
    AuthorizationRequest,
    Identity,
    OAuthFlowState,
    utcnow,
)

logger = get_logger(__name__)


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge: unpadded base64url of SHA-256(verifier)."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def validate_redirect_uri(redirect_uri: str) -> str:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"https", "http"}:
        raise ValidationError("OAuth redirect URI must be http(s)")
    if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ValidationError("Insecure redirect URI not allowed outside localhost")
    if not parsed.netloc:
        raise ValidationError("OAuth redirect URI must include host")
    if parsed.fragment:
        raise ValidationError("OAuth redirect URI must not carry a fragment")
    return redirect_uri


def parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize provider userinfo into ``provider_uid`` / ``email``."""
    if provider == "google":
        return {
            "provider_uid": userinfo.get("sub") or userinfo.get("id"),
            "email": userinfo.get("email"),
        }
    if provider == "github":
        uid = userinfo.get("id")
        return {
            "provider_uid": str(uid) if uid is not None else None,
            "email": userinfo.get("email"),
        }
    if provider == "microsoft":
        return {
            "provider_uid": userinfo.get("sub") or userinfo.get("id"),
            "email": userinfo.get("email")
            or userinfo.get("mail")
            or userinfo.get("userPrincipalName"),
        }
    uid = userinfo.get("sub") or userinfo.get("id")
    return {
        "provider_uid": str(uid) if uid is not None else None,
        "email": userinfo.get("email"),
    }


class OAuthCoordinator:
    """Authorization-code flow with PKCE against configured identity providers.

    ``initiate`` records a single-use state bound to the provider, the PKCE
    verifier and the redirect URI. ``handle_callback`` consumes that state
    exactly once, so a replayed callback fails even if the first attempt
    failed at the provider.
    """

    def __init__(
        self,
        store: AuthRecordStore,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._transport = transport

    def _provider(self, provider: str) -> OAuthProviderConfig:
        config = self.settings.oauth_providers.get(provider)
        if config is None or not config.client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        return config

    async def initiate(
        self, provider: str, *, redirect_uri: Optional[str] = None
    ) -> AuthorizationRequest:
        config = self._provider(provider)
        callback_uri = redirect_uri or config.redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = validate_redirect_uri(callback_uri)

        now = self._clock()
        state = secrets.token_urlsafe(32)
        verifier = secrets.token_urlsafe(64)
        challenge = pkce_challenge(verifier)
        await self.store.put_oauth_state(
            OAuthFlowState(
                state=state,
                provider=provider,
                code_verifier=verifier,
                redirect_uri=callback_uri,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.oauth_state_ttl_minutes),
            )
        )

        params = {
            "client_id": config.client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config.scope,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        logger.info("oauth_initiated", provider=provider, state=redact(state))
        return AuthorizationRequest(
            authorization_url=f"{config.authorize_url}?{urlencode(params)}",
            state=state,
            provider=provider,
            code_challenge=challenge,
        )

    async def handle_callback(
        self, state: Optional[str], code: Optional[str], *, provider: Optional[str] = None
    ) -> Identity:
        if not state:
            raise OAuthStateMismatch("missing_state")
        # Consumed even if the caller goes away mid-request
        flow = await asyncio.shield(self.store.pop_oauth_state(state))
        if flow is None:
            log_security_event("oauth_state_rejected", reason="unknown_or_replayed", state=redact(state))
            raise OAuthStateMismatch("unknown_state")
        if flow.expires_at <= self._clock():
            log_security_event("oauth_state_rejected", reason="expired", state=redact(state))
            raise OAuthStateMismatch("expired_state")
        if provider is not None and provider != flow.provider:
            log_security_event(
                "oauth_state_rejected",
                reason="provider_mismatch",
                expected=flow.provider,
                provider=provider,
            )
            raise OAuthStateMismatch("provider_mismatch")
        if not code:
            raise AuthenticationFailed("missing_code")

        timeout = self.settings.upstream_timeout_seconds
        try:
            identity = await asyncio.wait_for(self._exchange(flow, code), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("oauth_exchange_timeout", provider=flow.provider, timeout=timeout)
            raise UpstreamTimeout(flow.provider, timeout)
        logger.info("oauth_completed", provider=flow.provider, subject=identity.subject)
        return identity

    async def _exchange(self, flow: OAuthFlowState, code: str) -> Identity:
        config = self._provider(flow.provider)
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": flow.redirect_uri,
            "client_id": config.client_id,
            "code_verifier": flow.code_verifier,
        }
        if config.client_secret:
            token_data["client_secret"] = config.client_secret

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.upstream_timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    config.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=flow.provider)
                    raise AuthenticationFailed("no_access_token")
                if not config.userinfo_url:
                    logger.error("oauth_userinfo_url_missing", provider=flow.provider)
                    raise AuthenticationFailed("no_userinfo_endpoint")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if flow.provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config.userinfo_url, headers=userinfo_headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=flow.provider)
                    raise AuthenticationFailed("userinfo_not_object")

                profile = parse_userinfo(flow.provider, userinfo)
                if flow.provider == "github" and not profile.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        if not isinstance(emails, list):
                            emails = []
                        profile["email"] = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.TimeoutException as exc:
            logger.warning("oauth_exchange_timeout", provider=flow.provider, error=str(exc))
            raise UpstreamTimeout(flow.provider, self.settings.upstream_timeout_seconds)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_failed",
                provider=flow.provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationFailed("provider_http_error")
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_failed", provider=flow.provider, error=str(exc))
            raise AuthenticationFailed("provider_transport_error")
        except ValueError as exc:
            logger.error("oauth_exchange_failed", provider=flow.provider, error=str(exc))
            raise AuthenticationFailed("provider_response_not_json")

        provider_uid = profile.get("provider_uid")
        if not provider_uid:
            logger.error("oauth_identity_missing_uid", provider=flow.provider)
            raise AuthenticationFailed("missing_provider_uid")
        claims: Dict[str, Any] = {"role": "user"}
        if profile.get("email"):
            claims["email"] = profile["email"]
        return Identity(subject=f"{flow.provider}:{provider_uid}", claims=claims)
