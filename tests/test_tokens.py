"""Unit tests for token issuance and verification.

Tests for:
- Issue/verify round trip and claim allow-listing
- Algorithm pinning and signature checks
- Expiry boundary with clock skew
- Issuer, audience and token type checks
- Key rotation by ``kid``
"""

import json

import pytest

from sessionward.config import Settings
from sessionward.service.errors import InvalidToken
from sessionward.service.revocation import RevocationRegistry
from sessionward.service.tokens import (
    TokenIssuer,
    TokenVerifier,
    _sign,
    decode_segment,
    encode_segment,
)
from sessionward.storage.models import Identity

OTHER_SECRET = "Another-Secret-Key_for-Automation-Only-123456789!"


@pytest.fixture
def identity():
    return Identity(
        subject="user-123",
        claims={"role": "admin", "email": "alice@example.com", "tenant_id": "acme"},
    )


@pytest.fixture
def registry(memory_store, clock):
    return RevocationRegistry(memory_store, clock=clock)


@pytest.fixture
def issuer(settings, memory_store, clock):
    return TokenIssuer(settings, memory_store, clock=clock)


@pytest.fixture
def verifier(settings, registry, clock):
    return TokenVerifier(settings, registry, clock=clock)


def _segments(token):
    header_b64, payload_b64, sig_b64 = token.split(".")
    return (
        json.loads(decode_segment(header_b64)),
        json.loads(decode_segment(payload_b64)),
        sig_b64,
    )


def _reencode(header, payload, signature):
    return ".".join(
        [
            encode_segment(json.dumps(header).encode()),
            encode_segment(json.dumps(payload).encode()),
            signature,
        ]
    )


class TestRoundTrip:
    async def test_verify_returns_subject_and_claims(self, issuer, verifier, identity):
        """A freshly issued access token verifies to the original identity."""
        issued = issuer.issue(identity, "access")
        claims = await verifier.verify(issued.token)

        assert claims.subject == "user-123"
        assert claims.token_id == issued.token_id
        assert claims.claims == identity.claims
        assert claims.identity() == identity

    def test_wire_format_has_three_segments(self, issuer, identity):
        issued = issuer.issue(identity, "access")
        header, payload, signature = _segments(issued.token)

        assert header == {"alg": "HS256", "typ": "JWT", "kid": "k1"}
        assert payload["iss"] == "sessionward"
        assert payload["aud"] == "sessionward-clients"
        assert payload["exp"] - payload["iat"] == 15 * 60
        assert signature and "=" not in signature

    def test_every_token_gets_a_unique_id(self, issuer, identity):
        ids = {issuer.issue(identity, "access").token_id for _ in range(20)}
        assert len(ids) == 20

    def test_unlisted_and_registered_claims_are_dropped(self, issuer, verifier, identity):
        """Identity claims cannot smuggle extra keys or override registered claims."""
        noisy = Identity(
            subject="user-123",
            claims={
                "role": "user",
                "ssn": "000-00-0000",
                "sub": "someone-else",
                "exp": 9999999999,
                "__proto__": {"admin": True},
            },
        )
        _, payload, _ = _segments(issuer.issue(noisy, "access").token)

        assert payload["sub"] == "user-123"
        assert payload["exp"] != 9999999999
        assert payload["role"] == "user"
        assert "ssn" not in payload
        assert "__proto__" not in payload

    def test_rejects_unknown_token_type(self, issuer, identity):
        with pytest.raises(ValueError):
            issuer.issue(identity, "id_token")


class TestTamperResistance:
    async def test_alg_none_is_rejected(self, issuer, verifier, identity):
        header, payload, _ = _segments(issuer.issue(identity, "access").token)
        header["alg"] = "none"
        forged = _reencode(header, payload, "")

        with pytest.raises(InvalidToken):
            await verifier.verify(forged)

    async def test_algorithm_swap_is_rejected(self, issuer, verifier, identity):
        header, payload, signature = _segments(issuer.issue(identity, "access").token)
        header["alg"] = "HS512"

        with pytest.raises(InvalidToken):
            await verifier.verify(_reencode(header, payload, signature))

    async def test_modified_payload_fails_signature(self, issuer, verifier, identity):
        header, payload, signature = _segments(issuer.issue(identity, "access").token)
        payload["role"] = "superuser"

        with pytest.raises(InvalidToken):
            await verifier.verify(_reencode(header, payload, signature))

    async def test_token_signed_with_other_key_is_rejected(self, memory_store, verifier, clock, identity):
        rogue = TokenIssuer(
            Settings(jwt_secret=OTHER_SECRET, test_mode=True), memory_store, clock=clock
        )
        with pytest.raises(InvalidToken):
            await verifier.verify(rogue.issue(identity, "access").token)

    async def test_deeply_nested_header_is_rejected(self, verifier):
        nested = encode_segment(b"[" * 5000)
        token = f"{nested}.{encode_segment(b'{}')}.sig"

        with pytest.raises(InvalidToken):
            await verifier.verify(token)

    async def test_deeply_nested_signed_payload_is_rejected(self, settings, verifier):
        header = encode_segment(
            json.dumps({"alg": settings.jwt_algorithm.value, "kid": settings.jwt_key_id}).encode()
        )
        payload = encode_segment(b"[" * 5000)
        signing_input = f"{header}.{payload}"
        key = settings.signing_keys()[settings.jwt_key_id]
        signature = encode_segment(_sign(key, signing_input, settings.jwt_algorithm))

        with pytest.raises(InvalidToken):
            await verifier.verify(f"{signing_input}.{signature}")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###"])
    async def test_malformed_tokens_are_rejected(self, verifier, garbage):
        with pytest.raises(InvalidToken):
            await verifier.verify(garbage)

    async def test_failures_share_one_public_message(self, issuer, verifier, identity):
        """Callers cannot tell which check failed."""
        header, payload, signature = _segments(issuer.issue(identity, "access").token)
        header["alg"] = "none"
        with pytest.raises(InvalidToken) as alg_exc:
            await verifier.verify(_reencode(header, payload, ""))
        with pytest.raises(InvalidToken) as shape_exc:
            await verifier.verify("not-a-token")

        assert str(alg_exc.value) == str(shape_exc.value) == "authentication failed"
        assert alg_exc.value.reason != shape_exc.value.reason


class TestExpiry:
    async def test_accepted_within_skew_after_expiry(self, issuer, verifier, clock, identity):
        issued = issuer.issue(identity, "access")
        clock.advance(minutes=15, seconds=29)

        claims = await verifier.verify(issued.token)
        assert claims.subject == identity.subject

    async def test_rejected_once_skew_is_exhausted(self, issuer, verifier, clock, identity):
        issued = issuer.issue(identity, "access")
        clock.advance(minutes=15, seconds=30)

        with pytest.raises(InvalidToken):
            await verifier.verify(issued.token)

    async def test_token_from_the_future_is_rejected(self, issuer, verifier, clock, identity):
        issued = issuer.issue(identity, "access")
        clock.advance(minutes=-5)

        with pytest.raises(InvalidToken):
            await verifier.verify(issued.token)

    async def test_issue_time_within_skew_is_tolerated(self, issuer, verifier, clock, identity):
        issued = issuer.issue(identity, "access")
        clock.advance(seconds=-20)

        claims = await verifier.verify(issued.token)
        assert claims.token_id == issued.token_id


class TestClaimChecks:
    async def test_issuer_mismatch(self, issuer, registry, clock, identity):
        other = TokenVerifier(
            Settings(jwt_secret=issuer.settings.jwt_secret, jwt_issuer="elsewhere", test_mode=True),
            registry,
            clock=clock,
        )
        with pytest.raises(InvalidToken):
            await other.verify(issuer.issue(identity, "access").token)

    async def test_audience_mismatch(self, issuer, registry, clock, identity):
        other = TokenVerifier(
            Settings(jwt_secret=issuer.settings.jwt_secret, jwt_audience="billing", test_mode=True),
            registry,
            clock=clock,
        )
        with pytest.raises(InvalidToken):
            await other.verify(issuer.issue(identity, "access").token)

    async def test_refresh_token_is_not_an_access_token(self, issuer, verifier, identity):
        refresh = issuer.issue(identity, "refresh")

        with pytest.raises(InvalidToken):
            await verifier.verify(refresh.token)
        claims = await verifier.verify(refresh.token, token_type="refresh")
        assert claims.token_type == "refresh"

    async def test_revoked_token_is_rejected(self, issuer, verifier, registry, identity):
        issued = issuer.issue(identity, "access")
        await registry.revoke_token(issued.token_id, issued.expires_at)

        with pytest.raises(InvalidToken):
            await verifier.verify(issued.token)

    async def test_decode_skips_revocation(self, issuer, verifier, registry, identity):
        issued = issuer.issue(identity, "access")
        await registry.revoke_token(issued.token_id, issued.expires_at)

        assert verifier.decode(issued.token).token_id == issued.token_id


class TestKeyRotation:
    async def test_previous_key_still_verifies(self, memory_store, clock, identity):
        old = Settings(jwt_secret=OTHER_SECRET, jwt_key_id="k1", test_mode=True)
        new = Settings(
            jwt_secret=issuer_secret(),
            jwt_key_id="k2",
            jwt_previous_secrets={"k1": OTHER_SECRET},
            test_mode=True,
        )
        token = TokenIssuer(old, memory_store, clock=clock).issue(identity, "access").token

        claims = await TokenVerifier(new, clock=clock).verify(token)
        assert claims.subject == identity.subject

    async def test_retired_key_is_rejected(self, memory_store, clock, identity):
        old = Settings(jwt_secret=OTHER_SECRET, jwt_key_id="k1", test_mode=True)
        new = Settings(jwt_secret=issuer_secret(), jwt_key_id="k2", test_mode=True)
        token = TokenIssuer(old, memory_store, clock=clock).issue(identity, "access").token

        with pytest.raises(InvalidToken):
            await TokenVerifier(new, clock=clock).verify(token)

    def test_new_tokens_carry_current_kid(self, memory_store, clock, identity):
        new = Settings(
            jwt_secret=issuer_secret(),
            jwt_key_id="k2",
            jwt_previous_secrets={"k1": OTHER_SECRET},
            test_mode=True,
        )
        header, _, _ = _segments(TokenIssuer(new, memory_store, clock=clock).issue(identity).token)
        assert header["kid"] == "k2"


class TestIssuePair:
    async def test_pair_shares_family_and_persists_refresh(self, issuer, verifier, memory_store, identity):
        pair = await issuer.issue_pair(identity)
        access = await verifier.verify(pair.access_token)
        refresh = await verifier.verify(pair.refresh_token, token_type="refresh")

        assert access.family_id == refresh.family_id == pair.family_id
        record = await memory_store.get_refresh(pair.refresh_token_id)
        assert record is not None
        assert record.subject == identity.subject
        assert record.used is False
        assert record.claims == identity.claims

    async def test_response_shape(self, issuer, identity):
        pair = await issuer.issue_pair(identity)
        body = pair.as_response()

        assert body["token_type"] == "bearer"
        assert body["access_token"] == pair.access_token
        assert body["refresh_token"] == pair.refresh_token


def issuer_secret():
    return "Rotated-Secret-Key_for-Automation-Only-555555555!"
