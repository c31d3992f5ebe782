from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


@dataclass(frozen=True)
class Identity:
    subject: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def role(self) -> Optional[str]:
        return self.claims.get("role")

    @property
    def email(self) -> Optional[str]:
        return self.claims.get("email")


@dataclass
class User:
    """Development-only credential record; profiles live elsewhere."""

    id: str
    login: str
    role: str = "user"
    tenant_id: str = "public"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True

    def identity(self) -> Identity:
        return Identity(
            subject=self.id,
            claims={"role": self.role, "email": self.login, "tenant_id": self.tenant_id},
        )


@dataclass
class AccessClaims:
    subject: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str | List[str]
    token_type: str = "access"
    family_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    def identity(self) -> Identity:
        return Identity(subject=self.subject, claims=dict(self.claims))


@dataclass
class IssuedToken:
    token: str
    token_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    family_id: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_token_id: str
    refresh_token_id: str
    family_id: str
    token_type: str = "bearer"

    def as_response(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


@dataclass
class RefreshRecord:
    token_id: str
    subject: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    successor_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["issued_at"] = to_timestamp(self.issued_at)
        data["expires_at"] = to_timestamp(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshRecord":
        return cls(
            token_id=data["token_id"],
            subject=data["subject"],
            family_id=data["family_id"],
            issued_at=from_timestamp(data["issued_at"]),
            expires_at=from_timestamp(data["expires_at"]),
            used=bool(data.get("used")),
            successor_id=data.get("successor_id"),
            claims=dict(data.get("claims") or {}),
        )


@dataclass
class Session:
    id: str
    subject: str
    created_at: datetime
    last_activity: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    fingerprint: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    def identity(self) -> Identity:
        return Identity(subject=self.subject, claims=dict(self.claims))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = to_timestamp(self.created_at)
        data["last_activity"] = to_timestamp(self.last_activity)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            subject=data["subject"],
            created_at=from_timestamp(data["created_at"]),
            last_activity=from_timestamp(data["last_activity"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            fingerprint=data.get("fingerprint"),
            claims=dict(data.get("claims") or {}),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class CsrfToken:
    value: str
    session_id: str
    created_at: datetime


@dataclass
class OAuthFlowState:
    state: str
    provider: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = to_timestamp(self.created_at)
        data["expires_at"] = to_timestamp(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthFlowState":
        return cls(
            state=data["state"],
            provider=data["provider"],
            code_verifier=data["code_verifier"],
            redirect_uri=data["redirect_uri"],
            created_at=from_timestamp(data["created_at"]),
            expires_at=from_timestamp(data["expires_at"]),
        )


@dataclass
class RevocationEntry:
    key: str
    kind: str  # "token" | "family" | "subject"
    revoked_at: datetime
    expires_at: datetime


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str
    provider: str
    code_challenge: str
    code_challenge_method: str = "S256"
