import hashlib

from hyreauth.service.revocation import RevocationRegistry, revocation_key
from hyreauth.storage.memory import MemoryCache
from hyreauth.storage.models import Principal, Role


async def test_revoke_uses_remaining_lifetime(revocations, cache, clock):
    token = "header.payload.signature"

    written = await revocations.revoke(token, clock.now + 300)

    assert written is True
    assert await revocations.is_revoked(token) is True
    assert await cache.ttl_remaining(revocation_key(token)) == 300


async def test_revoke_issued_token_after_partial_lifetime(revocations, token_service, cache, clock):
    principal = Principal.register("driver@example.com", Role.CUSTOMER)
    token = token_service.issue(principal).access_token
    clock.advance(100)

    await revocations.revoke(token, token_service.natural_expiry(token))

    assert await cache.ttl_remaining(revocation_key(token)) == 15 * 60 - 100


async def test_revoking_expired_token_is_noop(revocations, clock):
    token = "already.expired.token"

    written = await revocations.revoke(token, clock.now - 1)

    assert written is False
    assert await revocations.is_revoked(token) is False
    assert await revocations.count() == 0


async def test_registry_never_stores_raw_token(revocations, cache, clock):
    token = "very.secret.bearer"
    await revocations.revoke(token, clock.now + 60)

    keys = await cache.keys_matching("*")

    assert keys == ["blacklist:token:" + hashlib.sha256(token.encode()).hexdigest()]
    assert all(token not in key for key in keys)
    assert await cache.get(keys[0]) == "revoked"


async def test_entry_disappears_with_token_lifetime(revocations, clock):
    token = "short.lived.token"
    await revocations.revoke(token, clock.now + 30)

    clock.advance(31)

    assert await revocations.is_revoked(token) is False


async def test_unrevoke_and_count(revocations, clock):
    await revocations.revoke("one.token.here", clock.now + 60)
    await revocations.revoke("two.token.here", clock.now + 60)
    assert await revocations.count() == 2

    assert await revocations.unrevoke("one.token.here") is True
    assert await revocations.unrevoke("one.token.here") is False
    assert await revocations.count() == 1


async def test_sweep_removes_entries_without_ttl(clock):
    lagging = MemoryCache(clock=clock, honor_ttl=False)
    registry = RevocationRegistry(lagging, clock=clock)
    await registry.revoke("live.token.value", clock.now + 600)
    await registry.revoke("stale.token.value", clock.now + 10)
    await lagging.set(revocation_key("no.ttl.value"), "revoked")
    clock.advance(20)

    removed = await registry.sweep_stale()

    assert removed == 2
    assert await registry.is_revoked("live.token.value") is True
    assert await registry.count() == 1


async def test_fractional_remaining_lifetime_is_still_revoked(revocations, token_service, cache, clock):
    principal = Principal.register("driver@example.com", Role.CUSTOMER)
    token = token_service.issue(principal).access_token
    clock.now = token_service.natural_expiry(token) - 0.5

    written = await revocations.revoke(token, token_service.natural_expiry(token))

    assert written is True
    assert await revocations.is_revoked(token) is True
    assert await cache.ttl_remaining(revocation_key(token)) == 1


async def test_sweep_dry_run_only_counts(clock):
    lagging = MemoryCache(clock=clock, honor_ttl=False)
    registry = RevocationRegistry(lagging, clock=clock)
    await lagging.set(revocation_key("no.ttl.value"), "revoked")

    assert await registry.sweep_stale(dry_run=True) == 1
    assert await registry.count() == 1
