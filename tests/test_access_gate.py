"""
Tests for _access_gate.py and _member_cache.py

Ban precedence, positive-only membership caching, admin and free-mode
overrides, and lookup failure classification.
"""

import pytest

from _access_gate import AccessGate, AccessReason, normalize_status
from _member_cache import MembershipCache


class FakeLookup:
    def __init__(self, status="member", exc=None):
        self.status = status
        self.exc = exc
        self.calls = []

    async def __call__(self, channel, user_id):
        self.calls.append((channel, user_id))
        if self.exc is not None:
            raise self.exc
        return type("ChatMember", (), {"status": self.status})()


def make_gate(ledger, clock, lookup, admins=(1,), free_mode=False, ttl=300):
    cache = MembershipCache(ttl_seconds=ttl, max_size=500, clock=clock)
    return AccessGate(ledger, cache, lookup, admin_ids=admins, free_mode=free_mode)


# =============================================================================
# MembershipCache
# =============================================================================

class TestMembershipCache:

    def test_entry_expires_after_ttl(self, clock):
        cache = MembershipCache(ttl_seconds=300, clock=clock)
        cache.put(5, True)
        clock.advance(299)
        assert cache.get(5) is True
        clock.advance(1)
        assert cache.get(5) is None
        assert len(cache) == 0

    def test_lru_eviction(self, clock):
        cache = MembershipCache(ttl_seconds=300, max_size=2, clock=clock)
        cache.put(1)
        cache.put(2)
        assert cache.get(1) is True  # 2 is now least recently used
        cache.put(3)
        assert 2 not in cache
        assert 1 in cache and 3 in cache

    def test_invalidate_and_clear(self, clock):
        cache = MembershipCache(clock=clock)
        cache.put(1)
        cache.put(2)
        cache.invalidate(1)
        assert cache.get(1) is None
        cache.clear()
        assert len(cache) == 0


# =============================================================================
# AccessGate
# =============================================================================

class TestBanPrecedence:

    @pytest.mark.asyncio
    async def test_banned_member_is_denied_without_lookup(self, ledger, clock):
        lookup = FakeLookup("member")
        gate = make_gate(ledger, clock, lookup)
        ledger.ban(55)
        verdict = await gate.check(55)
        assert not verdict.admitted
        assert verdict.reason is AccessReason.BANNED
        assert lookup.calls == []

    @pytest.mark.asyncio
    async def test_ban_beats_cached_admission(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup("member"))
        assert (await gate.check(55)).admitted
        ledger.ban(55)
        verdict = await gate.check(55)
        assert verdict.banned

    @pytest.mark.asyncio
    async def test_ban_beats_free_mode(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup("member"), free_mode=True)
        ledger.ban(55)
        assert (await gate.check(55)).reason is AccessReason.BANNED

    @pytest.mark.asyncio
    async def test_admin_bypasses_everything(self, ledger, clock):
        lookup = FakeLookup("left")
        gate = make_gate(ledger, clock, lookup, admins=(1,))
        verdict = await gate.check(1)
        assert verdict.admitted and verdict.reason is AccessReason.ADMIN
        assert lookup.calls == []


class TestMembershipCaching:

    @pytest.mark.asyncio
    async def test_admitted_is_cached_for_ttl(self, ledger, clock):
        lookup = FakeLookup("administrator")
        gate = make_gate(ledger, clock, lookup, ttl=300)
        admitted_at = clock()
        assert (await gate.check(7)).reason is AccessReason.MEMBER
        assert gate.cache.expires_at(7) <= admitted_at + 300
        assert (await gate.check(7)).reason is AccessReason.CACHED
        assert len(lookup.calls) == 1
        assert lookup.calls[0] == ("mychannel", 7)

    @pytest.mark.asyncio
    async def test_denial_is_not_cached(self, ledger, clock):
        lookup = FakeLookup("left")
        gate = make_gate(ledger, clock, lookup)
        verdict = await gate.check(7)
        assert verdict.reason is AccessReason.NOT_SUBSCRIBED
        assert 7 not in gate.cache
        # user joins right after
        lookup.status = "member"
        assert (await gate.check(7)).admitted

    @pytest.mark.asyncio
    async def test_recheck_after_ttl(self, ledger, clock):
        lookup = FakeLookup("creator")
        gate = make_gate(ledger, clock, lookup, ttl=300)
        await gate.check(7)
        clock.advance(301)
        lookup.status = "kicked"
        assert not (await gate.check(7)).admitted
        assert len(lookup.calls) == 2

    @pytest.mark.asyncio
    async def test_lookup_failure_is_denied_and_flagged(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup(exc=RuntimeError("chat not found")))
        verdict = await gate.check(7)
        assert not verdict.admitted
        assert verdict.reason is AccessReason.LOOKUP_FAILED
        assert 7 not in gate.cache

    @pytest.mark.asyncio
    async def test_restricted_is_not_admitted(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup("restricted"))
        assert not (await gate.check(7)).admitted


class TestOverrides:

    @pytest.mark.asyncio
    async def test_free_mode_skips_lookup(self, ledger, clock):
        lookup = FakeLookup("left")
        gate = make_gate(ledger, clock, lookup, free_mode=True)
        assert (await gate.check(7)).reason is AccessReason.FREE_MODE
        assert lookup.calls == []

    @pytest.mark.asyncio
    async def test_recovery_grant_admits(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup("left"))
        token = ledger.create_token(7, 3)
        ledger.redeem_token(token, 7)
        assert (await gate.check(7)).reason is AccessReason.GRANT
        clock.advance(3 * 24 * 3600 + 1)
        assert not (await gate.check(7)).admitted

    @pytest.mark.asyncio
    async def test_channel_change_clears_cache(self, ledger, clock):
        gate = make_gate(ledger, clock, FakeLookup("member"))
        await gate.check(7)
        gate.channel_changed()
        assert len(gate.cache) == 0


def test_normalize_status_handles_enums_and_strings():
    class Status:
        value = "MEMBER"
    assert normalize_status(Status()) == "member"
    assert normalize_status("Creator") == "creator"
    assert normalize_status(None) == "unknown"
