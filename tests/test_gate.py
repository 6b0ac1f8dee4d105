"""Tests for the connection gate."""
import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from chefstudio.connection.errors import (
    ExpiredError,
    InvalidCredentialError,
    MalformedRecordError,
    NotConnectedError,
    ProviderUnreachableError,
    UnknownAdAccountError,
)
from chefstudio.connection.gate import ConnectionGate
from chefstudio.connection.state import assert_coherent
from chefstudio.connection.store.memory import InMemoryConnectionStore
from chefstudio.connection.verifier.base import Invalid, Unreachable, Valid
from chefstudio.models import ConnectionStatus

from conftest import ACCOUNTS, TENANT, TOKEN, ConflictingStore, FakeVerifier


# =============================================================================
# ensure_connected
# =============================================================================

class TestEnsureConnected:

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_not_connected(self, gate, store, verifier):
        with pytest.raises(NotConnectedError):
            await gate.ensure_connected("never-seen")

        assert verifier.calls == 0
        assert store.writes == 0
        record = await store.read("never-seen")
        assert record.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_fresh_record_served_from_cache(self, gate, seed, verifier, clock):
        await seed()
        clock.advance(seconds=299)

        credential = await gate.ensure_connected(TENANT)

        assert verifier.calls == 0
        assert credential.access_token == TOKEN
        assert credential.linked_accounts == ACCOUNTS

    @pytest.mark.asyncio
    async def test_stale_record_is_reverified(self, gate, seed, store, verifier, clock):
        seeded = await seed()
        clock.advance(minutes=10)

        credential = await gate.ensure_connected(TENANT)

        assert verifier.calls == 1
        assert verifier.tokens == [TOKEN]
        assert credential.verified_at == clock.now
        record = await store.read(TENANT)
        assert record.version == seeded.version + 1
        assert record.last_verified_at == clock.now

    @pytest.mark.asyncio
    async def test_past_expiry_returns_expired_without_verifier(self, gate, seed, store, verifier, clock):
        seeded = await seed(expires_at=clock.now + timedelta(seconds=30))
        clock.advance(seconds=31)

        with pytest.raises(ExpiredError):
            await gate.ensure_connected(TENANT)

        assert verifier.calls == 0
        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.EXPIRED
        assert record.access_token == TOKEN
        assert record.version == seeded.version + 1

    @pytest.mark.asyncio
    async def test_already_expired_is_not_rewritten(self, gate, seed, store, verifier, clock):
        seeded = await seed(status=ConnectionStatus.EXPIRED, expires_at=clock.now - timedelta(days=1))

        with pytest.raises(ExpiredError):
            await gate.ensure_connected(TENANT)

        assert verifier.calls == 0
        assert (await store.read(TENANT)).version == seeded.version

    @pytest.mark.asyncio
    async def test_expired_record_recovers_on_valid(self, gate, seed, store, verifier, clock):
        await seed(status=ConnectionStatus.EXPIRED, last_verified_at=clock.now - timedelta(days=2))
        verifier.default = Valid(linked_accounts=("act_333", "act_111"), primary_account_id="act_333")

        credential = await gate.ensure_connected(TENANT)

        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.CONNECTED
        assert record.linked_accounts == ("act_333", "act_111")
        assert record.primary_account_id == "act_111"
        assert record.last_verified_at == clock.now
        assert credential.linked_accounts == ("act_333", "act_111")

    @pytest.mark.asyncio
    async def test_invalid_outcome_persists_invalid_and_keeps_token(self, gate, seed, store, verifier, clock):
        await seed()
        clock.advance(minutes=10)
        verifier.outcomes.append(Invalid(reason="Session has been invalidated", error_code=190))

        with pytest.raises(InvalidCredentialError):
            await gate.ensure_connected(TENANT)

        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.INVALID
        assert record.access_token == TOKEN

    @pytest.mark.asyncio
    async def test_invalid_record_is_never_reprobed(self, gate, seed, verifier):
        await seed(status=ConnectionStatus.INVALID)

        with pytest.raises(InvalidCredentialError):
            await gate.ensure_connected(TENANT)

        assert verifier.calls == 0

    @pytest.mark.asyncio
    async def test_unreachable_leaves_version_unchanged(self, gate, seed, store, verifier, clock):
        seeded = await seed()
        clock.advance(minutes=10)
        verifier.outcomes.append(Unreachable(reason="Graph API returned 503"))

        with pytest.raises(ProviderUnreachableError) as exc_info:
            await gate.ensure_connected(TENANT)

        assert exc_info.value.retryable is True
        record = await store.read(TENANT)
        assert record.version == seeded.version
        assert record.status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_verifier_timeout_is_unreachable(self, seed, store, clock):
        slow = FakeVerifier(delay=0.5)
        gate = ConnectionGate(store, slow, timedelta(seconds=300), verify_timeout=0.05, clock=clock)
        seeded = await seed()
        clock.advance(minutes=10)

        with pytest.raises(ProviderUnreachableError):
            await gate.ensure_connected(TENANT)

        assert (await store.read(TENANT)).version == seeded.version

    @pytest.mark.asyncio
    async def test_concurrent_callers_settle_on_one_record(self, store, seed, clock):
        verifier = FakeVerifier(delay=0.05)
        gate = ConnectionGate(store, verifier, timedelta(seconds=300), verify_timeout=1.0, clock=clock)
        seeded = await seed()
        clock.advance(minutes=10)

        credentials = await asyncio.gather(*(gate.ensure_connected(TENANT) for _ in range(5)))

        record = await store.read(TENANT)
        assert_coherent(record)
        assert record.status == ConnectionStatus.CONNECTED
        assert record.version == seeded.version + 1
        assert {c.verified_at for c in credentials} == {clock.now}

    @pytest.mark.asyncio
    async def test_second_conflict_is_reported_as_unreachable(self, clock):
        store = ConflictingStore()
        verifier = FakeVerifier()
        gate = ConnectionGate(store, verifier, timedelta(seconds=300), verify_timeout=1.0, clock=clock)

        with pytest.raises(ProviderUnreachableError):
            await gate.connect(TENANT, TOKEN)

        assert store.attempts == ConnectionGate.max_attempts
        assert verifier.calls == 1


# =============================================================================
# Malformed records
# =============================================================================

class MalformedOnceStore(InMemoryConnectionStore):
    """Reports the stored record as malformed until it is overwritten."""

    def __init__(self, version: int):
        super().__init__()
        self.malformed_version = version

    async def read(self, tenant_id):
        if self.malformed_version is not None:
            raise MalformedRecordError(tenant_id, self.malformed_version, "unknown status 'paused'")
        return await super().read(tenant_id)

    async def compare_and_swap(self, tenant_id, expected_version, record) -> bool:
        if self.malformed_version is not None:
            if expected_version != self.malformed_version:
                return False
            self.malformed_version = None
            self._records[tenant_id] = replace(record, version=expected_version + 1)
            return True
        return await super().compare_and_swap(tenant_id, expected_version, record)


class TestMalformedRecords:

    @pytest.mark.asyncio
    async def test_malformed_record_is_reset_and_reported(self, clock):
        store = MalformedOnceStore(version=4)
        verifier = FakeVerifier()
        gate = ConnectionGate(store, verifier, timedelta(seconds=300), verify_timeout=1.0, clock=clock)

        with pytest.raises(NotConnectedError):
            await gate.ensure_connected(TENANT)

        assert verifier.calls == 0
        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.DISCONNECTED
        assert record.access_token is None


# =============================================================================
# connect / disconnect / primary account
# =============================================================================

class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_new_tenant(self, gate, store, verifier, clock):
        expires_at = clock.now + timedelta(days=60)

        credential = await gate.connect(TENANT, TOKEN, expires_at=expires_at)

        assert verifier.tokens == [TOKEN]
        assert credential.primary_account_id == ACCOUNTS[0]
        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.CONNECTED
        assert record.expires_at == expires_at
        assert record.version == 1

    @pytest.mark.asyncio
    async def test_connect_with_chosen_primary(self, gate):
        credential = await gate.connect(TENANT, TOKEN, primary_account_id=ACCOUNTS[1])
        assert credential.primary_account_id == ACCOUNTS[1]

    @pytest.mark.asyncio
    async def test_connect_with_unlinked_primary(self, gate, store):
        with pytest.raises(UnknownAdAccountError):
            await gate.connect(TENANT, TOKEN, primary_account_id="act_999")
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_reauthenticate_after_invalid(self, gate, seed, store, verifier):
        await seed(status=ConnectionStatus.INVALID, access_token="revoked-token")

        await gate.connect(TENANT, "fresh-token")

        record = await store.read(TENANT)
        assert record.status == ConnectionStatus.CONNECTED
        assert record.access_token == "fresh-token"

    @pytest.mark.asyncio
    async def test_rejected_token_writes_nothing(self, gate, store, verifier):
        verifier.outcomes.append(Invalid(reason="Malformed access token", error_code=190))

        with pytest.raises(InvalidCredentialError):
            await gate.connect(TENANT, "garbage")

        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_unreachable_during_connect_writes_nothing(self, gate, store, verifier):
        verifier.outcomes.append(Unreachable(reason="timeout"))

        with pytest.raises(ProviderUnreachableError):
            await gate.connect(TENANT, TOKEN)

        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_already_expired_token_rejected(self, gate, verifier, clock):
        with pytest.raises(ExpiredError):
            await gate.connect(TENANT, TOKEN, expires_at=clock.now - timedelta(seconds=1))
        assert verifier.calls == 0


class TestDisconnect:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [ConnectionStatus.CONNECTED, ConnectionStatus.EXPIRED, ConnectionStatus.INVALID]
    )
    async def test_disconnect_from_any_status(self, gate, seed, store, status):
        await seed(status=status)

        record = await gate.disconnect(TENANT)

        assert record.status == ConnectionStatus.DISCONNECTED
        assert record.access_token is None
        stored = await store.read(TENANT)
        assert stored.status == ConnectionStatus.DISCONNECTED
        assert stored.access_token is None

    @pytest.mark.asyncio
    async def test_disconnect_unknown_tenant_writes_nothing(self, gate, store):
        record = await gate.disconnect("never-seen")
        assert record.version == 0
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_disconnected_tenant_needs_reconnect(self, gate, seed, verifier):
        await seed()
        await gate.disconnect(TENANT)

        with pytest.raises(NotConnectedError):
            await gate.ensure_connected(TENANT)
        assert verifier.calls == 0


class TestPrimaryAccount:

    @pytest.mark.asyncio
    async def test_select_primary(self, gate, seed, store):
        await seed()

        credential = await gate.select_primary_account(TENANT, ACCOUNTS[1])

        assert credential.primary_account_id == ACCOUNTS[1]
        assert (await store.read(TENANT)).primary_account_id == ACCOUNTS[1]

    @pytest.mark.asyncio
    async def test_select_unknown_account(self, gate, seed):
        await seed()
        with pytest.raises(UnknownAdAccountError):
            await gate.select_primary_account(TENANT, "act_999")

    @pytest.mark.asyncio
    async def test_select_requires_connection(self, gate):
        with pytest.raises(NotConnectedError):
            await gate.select_primary_account(TENANT, ACCOUNTS[0])


# =============================================================================
# get_status / sweep
# =============================================================================

class TestStatusAndSweep:

    @pytest.mark.asyncio
    async def test_get_status_never_calls_verifier(self, gate, seed, verifier, clock):
        await seed()
        clock.advance(days=1)

        record = await gate.get_status(TENANT)

        assert record.status == ConnectionStatus.CONNECTED
        assert verifier.calls == 0

    @pytest.mark.asyncio
    async def test_sweep_reports_each_connected_tenant(self, gate, seed, store, verifier, clock):
        await seed("tenant-a")
        await seed("tenant-b", expires_at=clock.now + timedelta(minutes=1))
        await seed("tenant-c")
        await seed("tenant-d", status=ConnectionStatus.INVALID)
        clock.advance(minutes=10)
        verifier.outcomes.extend([Valid(linked_accounts=ACCOUNTS), Invalid(reason="revoked")])

        results = await gate.sweep()

        assert results == {"tenant-a": "connected", "tenant-b": "expired", "tenant-c": "invalid"}
        assert verifier.calls == 2
        assert (await store.read("tenant-b")).status == ConnectionStatus.EXPIRED
        assert (await store.read("tenant-c")).status == ConnectionStatus.INVALID
