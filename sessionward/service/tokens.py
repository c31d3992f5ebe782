from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from sessionward.config import Settings, SigningAlgorithm
from sessionward.logging import get_logger
from sessionward.service.errors import InvalidToken
from sessionward.storage.common import AuthRecordStore, Clock
from sessionward.storage.models import (
    AccessClaims,
    Identity,
    IssuedToken,
    RefreshRecord,
    TokenPair,
    from_timestamp,
    utcnow,
)

if TYPE_CHECKING:
    from sessionward.service.revocation import RevocationRegistry

logger = get_logger(__name__)

TOKEN_TYPES = ("access", "refresh")

# Claims owned by the issuer; identity claims can never override them
REGISTERED_CLAIMS = frozenset(
    {"iss", "aud", "sub", "iat", "exp", "nbf", "jti", "fam", "token_type"}
)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(key: str, signing_input: str, algorithm: SigningAlgorithm) -> bytes:
    return hmac.new(key.encode(), signing_input.encode(), _DIGESTS[algorithm]).digest()


def filter_claims(claims: Dict[str, Any], allowed: list[str]) -> Dict[str, Any]:
    """Copy only allow-listed, non-registered, JSON-scalar claims."""
    permitted = set(allowed) - REGISTERED_CLAIMS
    filtered: Dict[str, Any] = {}
    for key, value in (claims or {}).items():
        if key not in permitted:
            continue
        if value is None or isinstance(value, (str, int, float, bool)):
            filtered[key] = value
        elif isinstance(value, (list, tuple)) and all(
            isinstance(item, (str, int, float, bool)) for item in value
        ):
            filtered[key] = list(value)
    return filtered


class TokenIssuer:
    """Mints signed access and refresh tokens bound to an identity."""

    def __init__(
        self,
        settings: Settings,
        store: AuthRecordStore,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock

    def _ttl(self, token_type: str) -> timedelta:
        if token_type == "access":
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {
            "alg": self.settings.jwt_algorithm.value,
            "typ": "JWT",
            "kid": self.settings.jwt_key_id,
        }
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = _sign(self.settings.jwt_secret or "", signing_input, self.settings.jwt_algorithm)
        return f"{signing_input}.{encode_segment(signature)}"

    def issue(
        self,
        identity: Identity,
        token_type: str = "access",
        *,
        family_id: Optional[str] = None,
    ) -> IssuedToken:
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"unknown token type: {token_type}")
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(self._ttl(token_type).total_seconds())
        token_id = str(uuid.uuid4())
        family = family_id or uuid.uuid4().hex
        payload = filter_claims(identity.claims, self.settings.allowed_claims)
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": identity.subject,
                "iat": issued_at,
                "exp": expires_at,
                "jti": token_id,
                "fam": family,
                "token_type": token_type,
            }
        )
        return IssuedToken(
            token=self.encode(payload),
            token_id=token_id,
            token_type=token_type,
            issued_at=from_timestamp(issued_at),
            expires_at=from_timestamp(expires_at),
            family_id=family,
        )

    async def issue_pair(
        self, identity: Identity, *, family_id: Optional[str] = None
    ) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh record."""
        family = family_id or uuid.uuid4().hex
        access = self.issue(identity, "access", family_id=family)
        refresh = self.issue(identity, "refresh", family_id=family)
        await self.store.put_refresh(
            RefreshRecord(
                token_id=refresh.token_id,
                subject=identity.subject,
                family_id=family,
                issued_at=refresh.issued_at,
                expires_at=refresh.expires_at,
                claims=filter_claims(identity.claims, self.settings.allowed_claims),
            )
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            access_token_id=access.token_id,
            refresh_token_id=refresh.token_id,
            family_id=family,
        )


class TokenVerifier:
    """Validates presented tokens.

    Any failure surfaces as a single ``InvalidToken``; the precise reason is
    logged under ``token_rejected``. Holds no mutable state, so one instance
    serves any number of concurrent requests.
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional["RevocationRegistry"] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._clock = clock
        self._keys = settings.signing_keys()

    def _reject(self, reason: str, **fields: Any) -> InvalidToken:
        logger.warning("token_rejected", reason=reason, **fields)
        return InvalidToken(reason)

    def decode(self, token: str, *, token_type: str = "access") -> AccessClaims:
        """Check structure, signature and claims without consulting revocation."""
        if not isinstance(token, str) or token.count(".") != 2:
            raise self._reject("malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError):
            raise self._reject("header_decode_failed")
        if not isinstance(header, dict):
            raise self._reject("header_decode_failed")
        # Pinned algorithm: "none" and any algorithm swap are rejected here
        if header.get("alg") != self.settings.jwt_algorithm.value:
            raise self._reject("algorithm_mismatch", alg=str(header.get("alg"))[:16])
        kid = header.get("kid", self.settings.jwt_key_id)
        key = self._keys.get(kid) if isinstance(kid, str) else None
        if not key:
            raise self._reject("unknown_key")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = encode_segment(_sign(key, signing_input, self.settings.jwt_algorithm))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise self._reject("bad_signature")

        try:
            payload = json.loads(decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError, RecursionError):
            raise self._reject("payload_decode_failed")
        if not isinstance(payload, dict):
            raise self._reject("payload_decode_failed")
        return self._check_claims(payload, token_type)

    def _check_claims(self, payload: Dict[str, Any], token_type: str) -> AccessClaims:
        if payload.get("iss") != self.settings.jwt_issuer:
            raise self._reject("issuer_mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise self._reject("audience_mismatch")
        if payload.get("token_type") != token_type:
            raise self._reject("token_type_mismatch", expected=token_type)

        subject = payload.get("sub")
        token_id = payload.get("jti")
        if not isinstance(subject, str) or not subject:
            raise self._reject("missing_subject")
        if not isinstance(token_id, str) or not token_id:
            raise self._reject("missing_token_id")

        try:
            exp = float(payload["exp"])
            iat = float(payload.get("iat", exp))
            nbf = float(payload["nbf"]) if "nbf" in payload else None
        except (KeyError, TypeError, ValueError):
            raise self._reject("bad_timestamps", token_id=token_id)

        now = self._clock().timestamp()
        skew = self.settings.clock_skew_seconds
        if now >= exp + skew:
            raise self._reject("expired", token_id=token_id)
        if iat > now + skew or (nbf is not None and nbf > now + skew):
            raise self._reject("not_yet_valid", token_id=token_id)

        claims = {k: v for k, v in payload.items() if k not in REGISTERED_CLAIMS}
        family = payload.get("fam")
        return AccessClaims(
            subject=subject,
            token_id=token_id,
            issued_at=from_timestamp(iat),
            expires_at=from_timestamp(exp),
            issuer=payload["iss"],
            audience=aud,
            token_type=token_type,
            family_id=family if isinstance(family, str) else None,
            claims=claims,
        )

    async def verify(self, token: str, *, token_type: str = "access") -> AccessClaims:
        """Full verification, including the revocation lookup."""
        claims = self.decode(token, token_type=token_type)
        if self.registry is not None and await self.registry.is_revoked(
            claims.token_id,
            claims.subject,
            issued_at=claims.issued_at,
            family_id=claims.family_id,
        ):
            raise self._reject("revoked", token_id=claims.token_id)
        return claims
