"""Tests for access-token signing and refresh-session rotation.

Covers:
- TokenCodec signature, algorithm, issuer, audience and expiry checks
- Refresh rotation is single-use, including under concurrent redemption
- Rotation refuses sessions of disabled orgs and stale epochs
- Org purge leaves no redeemable refresh token
- Cache-miss epoch lookups fall back to the primary store
- Revocation-store outages surface as infrastructure errors
"""

import asyncio
import json

import pytest

from tenantgate.service.errors import (
    ExpiredOrUnknownTokenError,
    InfrastructureError,
    OrgRevokedError,
)
from tenantgate.service.tokens import TokenCodec, TokenPair, TokenService
from tenantgate.storage.errors import CacheUnavailable
from tenantgate.storage.memory_cache import MemoryCache

SECRET = "unit-test-secret-that-is-long-enough-123"


@pytest.fixture
def codec():
    return TokenCodec(SECRET, issuer="tenantgate", audience="tenantgate-clients")


def make_service(cache=None, epoch_source=None):
    codec = TokenCodec(SECRET, issuer="tenantgate", audience="tenantgate-clients")
    return TokenService(
        cache if cache is not None else MemoryCache(),
        codec,
        access_ttl_seconds=60,
        refresh_ttl_seconds=3600,
        epoch_source=epoch_source,
    )


class TestTokenCodec:
    """Tests for the HS256 JWT codec."""

    def test_round_trip_adds_registered_claims(self, codec):
        """Encoded tokens decode with iss, aud, jti and exp set."""
        token = codec.encode({"sub": "u1", "org_id": "o1"}, 60)
        claims = codec.decode(token)
        assert claims["sub"] == "u1"
        assert claims["org_id"] == "o1"
        assert claims["iss"] == "tenantgate"
        assert claims["aud"] == "tenantgate-clients"
        assert claims["jti"]
        assert claims["exp"] > 0

    def test_each_token_gets_a_unique_jti(self, codec):
        first = codec.decode(codec.encode({"sub": "u1"}, 60))
        second = codec.decode(codec.encode({"sub": "u1"}, 60))
        assert first["jti"] != second["jti"]

    def test_tampered_payload_rejected(self, codec):
        """Changing the payload without re-signing fails verification."""
        header, _, signature = codec.encode({"sub": "u1"}, 60).split(".")
        forged = codec._encode_segment(
            json.dumps(
                {"sub": "admin", "iss": "tenantgate", "aud": "tenantgate-clients", "exp": 2**40}
            ).encode()
        )
        assert codec.decode(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self, codec):
        other = TokenCodec("another-secret-that-is-long-enough-456", issuer="tenantgate", audience="tenantgate-clients")
        assert codec.decode(other.encode({"sub": "u1"}, 60)) is None

    def test_non_hs256_header_rejected(self, codec):
        """Tokens declaring a different algorithm are refused outright."""
        _, payload, signature = codec.encode({"sub": "u1"}, 60).split(".")
        header = codec._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        assert codec.decode(f"{header}.{payload}.{signature}") is None

    def test_wrong_issuer_rejected(self, codec):
        other = TokenCodec(SECRET, issuer="someone-else", audience="tenantgate-clients")
        assert codec.decode(other.encode({"sub": "u1"}, 60)) is None

    def test_wrong_audience_rejected(self, codec):
        other = TokenCodec(SECRET, issuer="tenantgate", audience="other-clients")
        assert codec.decode(other.encode({"sub": "u1"}, 60)) is None

    def test_expired_beyond_leeway_rejected(self, codec):
        assert codec.decode(codec.encode({"sub": "u1"}, -120)) is None

    def test_expired_within_leeway_accepted(self, codec):
        """A few seconds of clock skew is tolerated."""
        assert codec.decode(codec.encode({"sub": "u1"}, -5)) is not None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens_rejected(self, codec, garbage):
        assert codec.decode(garbage) is None


class TestTokenIssue:
    """Tests for issuing token pairs."""

    @pytest.mark.asyncio
    async def test_issue_stores_session_and_indexes_org(self):
        service = make_service()
        pair = await service.issue("u1", "o1", 7)

        assert isinstance(pair, TokenPair)
        session = await service.session(pair.refresh_token)
        assert session.user_id == "u1"
        assert session.org_id == "o1"
        assert session.org_epoch == 7
        assert await service.cache.org_session_count("o1") == 1

        claims = service.verify_access(pair.access_token)
        assert claims["sub"] == "u1"
        assert claims["org_epoch"] == 7
        assert claims["token_type"] == "access"

    @pytest.mark.asyncio
    async def test_super_session_has_no_org(self):
        """Super-admin sessions never carry an org or epoch."""
        service = make_service()
        pair = await service.issue("root", "o1", 3, is_super=True)

        session = await service.session(pair.refresh_token)
        assert session.is_super is True
        assert session.org_id is None
        assert session.org_epoch is None
        assert await service.cache.org_session_count("o1") == 0

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self):
        service = make_service()
        pair = await service.issue("u1", "o1", 1)
        assert service.verify_access(pair.refresh_token) is None


class TestTokenRotation:
    """Tests for single-use refresh rotation."""

    @pytest.mark.asyncio
    async def test_rotation_issues_new_pair_and_consumes_old(self):
        service = make_service()
        await service.set_org_epoch("o1", 1)
        first = await service.issue("u1", "o1", 1)

        second = await service.rotate(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        assert second.user_id == "u1"
        assert second.org_id == "o1"

        with pytest.raises(ExpiredOrUnknownTokenError):
            await service.rotate(first.refresh_token)
        assert await service.cache.org_session_count("o1") == 1

    @pytest.mark.asyncio
    async def test_concurrent_redemption_has_one_winner(self):
        """Two simultaneous redemptions of one token yield exactly one pair."""
        service = make_service()
        await service.set_org_epoch("o1", 1)
        pair = await service.issue("u1", "o1", 1)

        results = await asyncio.gather(
            service.rotate(pair.refresh_token),
            service.rotate(pair.refresh_token),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, TokenPair)]
        losers = [r for r in results if isinstance(r, ExpiredOrUnknownTokenError)]
        assert len(winners) == 1
        assert len(losers) == 1

    @pytest.mark.asyncio
    async def test_unknown_and_missing_tokens_rejected(self):
        service = make_service()
        with pytest.raises(ExpiredOrUnknownTokenError):
            await service.rotate("not-a-real-token")
        with pytest.raises(ExpiredOrUnknownTokenError):
            await service.rotate(None)

    @pytest.mark.asyncio
    async def test_disabled_org_rejects_and_drops_session(self):
        service = make_service()
        await service.set_org_epoch("o1", 1)
        pair = await service.issue("u1", "o1", 1)
        await service.mark_org_disabled("o1")

        with pytest.raises(OrgRevokedError):
            await service.rotate(pair.refresh_token)
        assert await service.session(pair.refresh_token) is None

    @pytest.mark.asyncio
    async def test_stale_epoch_rejected(self):
        service = make_service()
        await service.set_org_epoch("o1", 1)
        pair = await service.issue("u1", "o1", 1)
        await service.set_org_epoch("o1", 2)

        with pytest.raises(OrgRevokedError):
            await service.rotate(pair.refresh_token)
        assert await service.session(pair.refresh_token) is None

    @pytest.mark.asyncio
    async def test_unknown_epoch_rejected(self):
        """With no cached epoch and no fallback the session cannot be validated."""
        service = make_service()
        pair = await service.issue("u1", "o1", 1)
        with pytest.raises(OrgRevokedError):
            await service.rotate(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_super_rotation_skips_org_checks(self):
        service = make_service()
        pair = await service.issue("root", is_super=True)
        rotated = await service.rotate(pair.refresh_token)
        assert rotated.is_super is True
        assert rotated.org_id is None

    @pytest.mark.asyncio
    async def test_cache_miss_falls_back_to_epoch_source(self):
        """A missing cached epoch is read from the primary store and republished."""
        lookups = []

        def epoch_source(org_id):
            lookups.append(org_id)
            return 4

        service = make_service(epoch_source=epoch_source)
        pair = await service.issue("u1", "o1", 4)

        rotated = await service.rotate(pair.refresh_token)
        assert rotated.org_id == "o1"
        assert lookups == ["o1"]
        assert await service.get_org_epoch("o1") == 4


class TestOrgRevocation:
    """Tests for revoking every session of an org."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 1, 5, 25])
    async def test_purge_leaves_nothing_redeemable(self, count):
        service = make_service()
        await service.set_org_epoch("o1", 1)
        pairs = [await service.issue(f"u{i}", "o1", 1) for i in range(count)]
        other = await service.issue("outsider", "o2", 1)
        await service.set_org_epoch("o2", 1)

        removed = await service.revoke_all_for_org("o1")

        assert removed == count
        assert await service.cache.org_session_count("o1") == 0
        for pair in pairs:
            with pytest.raises(ExpiredOrUnknownTokenError):
                await service.rotate(pair.refresh_token)
        assert (await service.rotate(other.refresh_token)).org_id == "o2"

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self):
        service = make_service()
        pair = await service.issue("u1", "o1", 1)
        assert await service.revoke(pair.refresh_token) is True
        assert await service.revoke(pair.refresh_token) is False
        assert await service.revoke(None) is False


class _DownCache:
    """Revocation store whose every call fails."""

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            raise CacheUnavailable("revocation store unavailable", operation=name)

        return _fail


class TestBackendFailures:
    """Revocation-store outages become retryable infrastructure errors."""

    @pytest.mark.asyncio
    async def test_issue_fails_with_infrastructure_error(self):
        service = make_service(cache=_DownCache())
        with pytest.raises(InfrastructureError) as excinfo:
            await service.issue("u1", "o1", 1)
        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "infrastructure_error"
        assert excinfo.value.detail["retryable"] is True
        assert excinfo.value.detail["backend"] == "cache"

    @pytest.mark.asyncio
    async def test_rotate_fails_closed(self):
        service = make_service(cache=_DownCache())
        with pytest.raises(InfrastructureError):
            await service.rotate("anything")
