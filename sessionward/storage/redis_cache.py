from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from sessionward.storage.common import ttl_seconds
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import (
    CsrfToken,
    OAuthFlowState,
    RefreshRecord,
    RevocationEntry,
    Session,
    from_timestamp,
    to_timestamp,
    utcnow,
)


class RedisStore:
    """Redis-backed record store shared by every worker process.

    Records carry Redis TTLs equal to their natural expiry, so the cache never
    holds revocation or refresh state longer than the token it describes.
    Check-then-act mutations run as Lua scripts (or ``GETDEL``) and are
    therefore atomic across processes.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Marks a refresh record used; returns {previous_json, was_unused}
    _CONSUME_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return nil
end
local rec = cjson.decode(raw)
local was_unused = 1
if rec['used'] then
  was_unused = 0
end
rec['used'] = true
redis.call('SET', KEYS[1], cjson.encode(rec), 'KEEPTTL')
return {raw, was_unused}
"""

    _LINK_SUCCESSOR_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local rec = cjson.decode(raw)
rec['successor_id'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(rec), 'KEEPTTL')
return 1
"""

    _BURN_REFRESH_SCRIPT = """
local burned = 0
for _, key in ipairs(KEYS) do
  local raw = redis.call('GET', key)
  if raw then
    local rec = cjson.decode(raw)
    if not rec['used'] then
      rec['used'] = true
      redis.call('SET', key, cjson.encode(rec), 'KEEPTTL')
      burned = burned + 1
    end
  end
end
return burned
"""

    # Merge keeps the latest cut-off and the longest expiry
    _ADD_REVOCATION_SCRIPT = """
local revoked_at = tonumber(ARGV[1])
local expires_at = tonumber(ARGV[2])
local ttl_ms = tonumber(ARGV[3])
local raw = redis.call('GET', KEYS[1])
if raw then
  local cur = cjson.decode(raw)
  if cur['revoked_at'] > revoked_at then
    revoked_at = cur['revoked_at']
  end
  if cur['expires_at'] > expires_at then
    expires_at = cur['expires_at']
    local pttl = redis.call('PTTL', KEYS[1])
    if pttl > ttl_ms then
      ttl_ms = pttl
    end
  end
end
redis.call('SET', KEYS[1], cjson.encode({revoked_at=revoked_at, expires_at=expires_at}), 'PX', ttl_ms)
return {tostring(revoked_at), tostring(expires_at)}
"""

    _TOUCH_SESSION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return nil
end
local sess = cjson.decode(raw)
local last = tonumber(ARGV[1])
if last > sess['last_activity'] then
  sess['last_activity'] = last
end
local encoded = cjson.encode(sess)
redis.call('SET', KEYS[1], encoded, 'EX', tonumber(ARGV[2]))
return encoded
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_refresh = self.client.register_script(self._CONSUME_REFRESH_SCRIPT)
        self._link_successor = self.client.register_script(self._LINK_SUCCESSOR_SCRIPT)
        self._burn_refresh = self.client.register_script(self._BURN_REFRESH_SCRIPT)
        self._add_revocation = self.client.register_script(self._ADD_REVOCATION_SCRIPT)
        self._touch_session = self.client.register_script(self._TOUCH_SESSION_SCRIPT)

    @staticmethod
    def _ttl(expires_at: datetime) -> int:
        """Whole seconds until ``expires_at`` against wall time, at least 1."""
        return ttl_seconds(expires_at, utcnow())

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # refresh tokens
    async def put_refresh(self, record: RefreshRecord) -> None:
        ttl = self._ttl(record.expires_at)
        created = await self.client.set(
            f"auth:refresh:{record.token_id}", json.dumps(record.to_dict()), ex=ttl, nx=True
        )
        if not created:
            raise ConstraintViolation(
                "refresh token id already exists", {"token_id": record.token_id}
            )
        subject_key = f"auth:refresh_subject:{record.subject}"
        pipe = self.client.pipeline()
        pipe.sadd(subject_key, record.token_id)
        pipe.expire(subject_key, ttl)
        await pipe.execute()

    async def get_refresh(self, token_id: str) -> Optional[RefreshRecord]:
        raw = await self.client.get(f"auth:refresh:{token_id}")
        return RefreshRecord.from_dict(json.loads(raw)) if raw else None

    async def consume_refresh(
        self, token_id: str
    ) -> Tuple[Optional[RefreshRecord], bool]:
        result = await self._consume_refresh(keys=[f"auth:refresh:{token_id}"])
        if not result:
            return None, False
        raw, was_unused = result
        record = RefreshRecord.from_dict(json.loads(raw))
        record.used = True
        return record, bool(int(was_unused))

    async def link_successor(self, token_id: str, successor_id: str) -> None:
        await self._link_successor(keys=[f"auth:refresh:{token_id}"], args=[successor_id])

    async def burn_subject_refresh(self, subject: str) -> int:
        token_ids = await self.client.smembers(f"auth:refresh_subject:{subject}")
        if not token_ids:
            return 0
        keys = [f"auth:refresh:{token_id}" for token_id in sorted(token_ids)]
        return int(await self._burn_refresh(keys=keys))

    # revocation
    async def add_revocation(self, entry: RevocationEntry) -> RevocationEntry:
        ttl_ms = self._ttl(entry.expires_at) * 1000
        revoked_at, expires_at = await self._add_revocation(
            keys=[f"auth:revoked:{entry.kind}:{entry.key}"],
            args=[to_timestamp(entry.revoked_at), to_timestamp(entry.expires_at), ttl_ms],
        )
        return RevocationEntry(
            key=entry.key,
            kind=entry.kind,
            revoked_at=from_timestamp(float(revoked_at)),
            expires_at=from_timestamp(float(expires_at)),
        )

    async def get_revocation(self, kind: str, key: str) -> Optional[RevocationEntry]:
        raw = await self.client.get(f"auth:revoked:{kind}:{key}")
        if not raw:
            return None
        data = json.loads(raw)
        return RevocationEntry(
            key=key,
            kind=kind,
            revoked_at=from_timestamp(data["revoked_at"]),
            expires_at=from_timestamp(data["expires_at"]),
        )

    # sessions
    async def put_session(self, session: Session, expires_at: datetime) -> None:
        ttl = self._ttl(expires_at)
        created = await self.client.set(
            f"auth:session:{session.id}", json.dumps(session.to_dict()), ex=ttl, nx=True
        )
        if not created:
            raise ConstraintViolation("session id already exists", {"session_id": session.id})
        subject_key = f"auth:subject_sessions:{session.subject}"
        pipe = self.client.pipeline()
        pipe.sadd(subject_key, session.id)
        pipe.expire(subject_key, ttl)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(f"auth:session:{session_id}")
        return Session.from_dict(json.loads(raw)) if raw else None

    async def update_session_activity(
        self, session_id: str, last_activity: datetime, expires_at: datetime
    ) -> Optional[Session]:
        raw = await self._touch_session(
            keys=[f"auth:session:{session_id}"],
            args=[to_timestamp(last_activity), self._ttl(expires_at)],
        )
        return Session.from_dict(json.loads(raw)) if raw else None

    async def delete_session(self, session_id: str) -> bool:
        raw = await self.client.getdel(f"auth:session:{session_id}")
        await self.client.delete(f"auth:csrf:{session_id}")
        if raw is None:
            return False
        subject = json.loads(raw).get("subject")
        if subject:
            await self.client.srem(f"auth:subject_sessions:{subject}", session_id)
        return True

    async def list_subject_sessions(self, subject: str) -> List[str]:
        members = await self.client.smembers(f"auth:subject_sessions:{subject}")
        return sorted(members or [])

    # csrf
    async def push_csrf(
        self, token: CsrfToken, *, limit: int, expires_at: datetime
    ) -> None:
        key = f"auth:csrf:{token.session_id}"
        payload = json.dumps(
            {"value": token.value, "created_at": to_timestamp(token.created_at)}
        )
        pipe = self.client.pipeline(transaction=True)
        pipe.lpush(key, payload)
        pipe.ltrim(key, 0, limit - 1)
        pipe.expire(key, self._ttl(expires_at))
        await pipe.execute()

    async def get_csrf(self, session_id: str) -> List[CsrfToken]:
        raw_items = await self.client.lrange(f"auth:csrf:{session_id}", 0, -1)
        tokens: List[CsrfToken] = []
        for raw in raw_items or []:
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                continue
            tokens.append(
                CsrfToken(
                    value=data["value"],
                    session_id=session_id,
                    created_at=from_timestamp(data["created_at"]),
                )
            )
        return tokens

    async def delete_csrf(self, session_id: str) -> None:
        await self.client.delete(f"auth:csrf:{session_id}")

    # oauth
    async def put_oauth_state(self, flow: OAuthFlowState) -> None:
        created = await self.client.set(
            f"auth:oauth:{flow.state}",
            json.dumps(flow.to_dict()),
            ex=self._ttl(flow.expires_at),
            nx=True,
        )
        if not created:
            raise ConstraintViolation("oauth state already exists")

    async def pop_oauth_state(self, state: str) -> Optional[OAuthFlowState]:
        """Atomically get and delete OAuth state so it is consumed exactly once."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            return OAuthFlowState.from_dict(json.loads(cached))
        except (json.JSONDecodeError, KeyError, TypeError):
            # Corrupted entry is already deleted; treat as absent
            return None

    # housekeeping
    async def cleanup_expired(self, now: datetime) -> Dict[str, int]:
        # Key TTLs expire records; nothing to sweep
        return {"refresh": 0, "revocations": 0, "sessions": 0, "csrf": 0, "oauth": 0}

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
