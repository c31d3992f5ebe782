"""Refresh rotation tests: single use, reuse detection and concurrency."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from sessionward.service.errors import InvalidToken, ReuseDetected, SessionNotFound
from sessionward.service.revocation import RevocationRegistry
from sessionward.service.rotation import RefreshRotator
from sessionward.service.tokens import TokenIssuer, TokenVerifier
from sessionward.storage.models import Identity


@pytest.fixture
def identity():
    return Identity(subject="user-42", claims={"role": "user", "email": "bob@example.com"})


@pytest.fixture
def components(settings, memory_store, clock):
    registry = RevocationRegistry(memory_store, clock=clock)
    issuer = TokenIssuer(settings, memory_store, clock=clock)
    verifier = TokenVerifier(settings, registry, clock=clock)
    rotator = RefreshRotator(settings, memory_store, issuer, verifier, registry, clock=clock)
    return issuer, verifier, rotator


class TestSingleUse:
    async def test_rotation_mints_successor_in_same_family(self, components, memory_store, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)

        successor = await rotator.rotate(pair.refresh_token)

        assert successor.family_id == pair.family_id
        assert successor.refresh_token_id != pair.refresh_token_id
        claims = await verifier.verify(successor.access_token)
        assert claims.subject == identity.subject
        assert claims.claims == identity.claims
        original = await memory_store.get_refresh(pair.refresh_token_id)
        assert original.used is True
        assert original.successor_id == successor.refresh_token_id

    async def test_second_rotation_is_reuse(self, components, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)
        await rotator.rotate(pair.refresh_token)

        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)

    async def test_every_later_rotation_is_reuse(self, components, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)
        await rotator.rotate(pair.refresh_token)

        for _ in range(3):
            with pytest.raises(ReuseDetected):
                await rotator.rotate(pair.refresh_token)

    async def test_reuse_revokes_the_whole_chain(self, components, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)
        successor = await rotator.rotate(pair.refresh_token)
        other_device = await issuer.issue_pair(identity)

        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)

        with pytest.raises(InvalidToken):
            await verifier.verify(successor.access_token)
        with pytest.raises(InvalidToken):
            await verifier.verify(other_device.access_token)
        with pytest.raises(ReuseDetected):
            await rotator.rotate(successor.refresh_token)
        with pytest.raises(ReuseDetected):
            await rotator.rotate(other_device.refresh_token)

    async def test_reuse_destroys_cookie_sessions(self, components, memory_store, identity):
        issuer, _, rotator = components
        session = await rotator.sessions.create(identity, user_agent="browser/1.0")
        bystander = await rotator.sessions.create(
            Identity(subject="user-7", claims={"role": "user"}), user_agent="browser/1.0"
        )
        pair = await issuer.issue_pair(identity)
        await rotator.rotate(pair.refresh_token)

        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)

        with pytest.raises(SessionNotFound):
            await rotator.sessions.get(session.id, user_agent="browser/1.0")
        assert await memory_store.list_subject_sessions(identity.subject) == []
        assert (await rotator.sessions.get(bystander.id, user_agent="browser/1.0")).subject == "user-7"

    async def test_reuse_leaves_other_subjects_alone(self, components, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)
        bystander = await issuer.issue_pair(Identity(subject="user-7", claims={"role": "user"}))
        await rotator.rotate(pair.refresh_token)

        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)

        assert (await verifier.verify(bystander.access_token)).subject == "user-7"
        assert (await rotator.rotate(bystander.refresh_token)).family_id == bystander.family_id

    async def test_login_after_revocation_works(self, components, clock, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)
        await rotator.rotate(pair.refresh_token)
        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)

        clock.advance(seconds=2)
        fresh = await issuer.issue_pair(identity)

        assert (await verifier.verify(fresh.access_token)).subject == identity.subject
        assert (await rotator.rotate(fresh.refresh_token)).family_id == fresh.family_id

    async def test_unknown_refresh_token_is_reuse(self, components, identity):
        """A validly signed refresh token with no server record is a theft signal."""
        issuer, _, rotator = components
        orphan = issuer.issue(identity, "refresh")

        with pytest.raises(ReuseDetected):
            await rotator.rotate(orphan.token)

    async def test_expired_refresh_token_is_invalid_not_reuse(self, components, clock, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)
        clock.advance(days=15)

        with pytest.raises(InvalidToken) as exc_info:
            await rotator.rotate(pair.refresh_token)
        assert not isinstance(exc_info.value, ReuseDetected)

    async def test_access_token_cannot_be_rotated(self, components, memory_store, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)

        with pytest.raises(InvalidToken):
            await rotator.rotate(pair.access_token)
        record = await memory_store.get_refresh(pair.refresh_token_id)
        assert record.used is False

    async def test_family_revocation_blocks_rotation(self, components, memory_store, clock, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)
        await verifier.registry.revoke_family(pair.family_id, pair.refresh_expires_at)

        with pytest.raises(InvalidToken):
            await rotator.rotate(pair.refresh_token)


class TestConcurrentRotation:
    async def test_gathered_rotations_yield_one_success(self, components, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)

        results = await asyncio.gather(
            *(rotator.rotate(pair.refresh_token) for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, BaseException)]
        reuses = [r for r in results if isinstance(r, ReuseDetected)]
        assert len(successes) == 1
        assert len(reuses) == 9

    def test_threaded_rotations_yield_one_success(self, components, identity):
        issuer, _, rotator = components
        pair = asyncio.run(issuer.issue_pair(identity))

        def attempt():
            try:
                return asyncio.run(rotator.rotate(pair.refresh_token))
            except ReuseDetected as exc:
                return exc

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: attempt(), range(16)))

        successes = [r for r in results if not isinstance(r, ReuseDetected)]
        assert len(successes) == 1
        assert sum(isinstance(r, ReuseDetected) for r in results) == 15

    async def test_cancelled_caller_still_completes_rotation(self, components, memory_store, identity):
        issuer, _, rotator = components
        pair = await issuer.issue_pair(identity)

        task = asyncio.create_task(rotator.rotate(pair.refresh_token))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises((asyncio.CancelledError, Exception)):
            await task
        # Let the shielded redemption finish
        for _ in range(5):
            await asyncio.sleep(0)

        record = await memory_store.get_refresh(pair.refresh_token_id)
        assert record.used is True
        assert record.successor_id is not None


class TestExampleScenario:
    async def test_expiry_then_rotation_then_reuse(self, components, clock, identity):
        issuer, verifier, rotator = components
        pair = await issuer.issue_pair(identity)

        assert (await verifier.verify(pair.access_token)).subject == identity.subject

        clock.advance(minutes=16)
        with pytest.raises(InvalidToken):
            await verifier.verify(pair.access_token)

        successor = await rotator.rotate(pair.refresh_token)
        assert (await verifier.verify(successor.access_token)).subject == identity.subject

        with pytest.raises(ReuseDetected):
            await rotator.rotate(pair.refresh_token)
        with pytest.raises(InvalidToken):
            await verifier.verify(successor.access_token)
