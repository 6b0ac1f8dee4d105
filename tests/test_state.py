"""Tests for the pure connection state machine."""
from dataclasses import replace
from datetime import timedelta

import pytest

from chefstudio.connection import state
from chefstudio.connection.errors import IncoherentRecordError, UnknownAdAccountError
from chefstudio.connection.state import ConnectionRecord
from chefstudio.connection.verifier.base import Invalid, Unreachable, Valid
from chefstudio.models import ConnectionStatus

from conftest import ACCOUNTS, START, TENANT, TOKEN


def connected_record(**fields) -> ConnectionRecord:
    defaults = dict(
        tenant_id=TENANT,
        status=ConnectionStatus.CONNECTED,
        access_token=TOKEN,
        linked_accounts=ACCOUNTS,
        primary_account_id=ACCOUNTS[0],
        last_verified_at=START,
        version=3,
    )
    defaults.update(fields)
    return ConnectionRecord(**defaults)


class TestCoherence:

    def test_empty_record_is_coherent(self):
        state.assert_coherent(state.empty_record(TENANT))

    def test_connected_requires_token(self):
        with pytest.raises(IncoherentRecordError):
            state.assert_coherent(connected_record(access_token=None))

    def test_connected_requires_verification_time(self):
        with pytest.raises(IncoherentRecordError):
            state.assert_coherent(connected_record(last_verified_at=None))

    def test_disconnected_must_not_hold_token(self):
        with pytest.raises(IncoherentRecordError):
            state.assert_coherent(ConnectionRecord(tenant_id=TENANT, access_token=TOKEN))

    def test_primary_must_be_linked(self):
        with pytest.raises(IncoherentRecordError):
            state.assert_coherent(connected_record(primary_account_id="act_999"))

    def test_duplicate_accounts_rejected(self):
        with pytest.raises(IncoherentRecordError):
            state.assert_coherent(connected_record(linked_accounts=("act_111", "act_111")))

    def test_repr_hides_token(self):
        assert TOKEN not in repr(connected_record())


class TestQueries:

    def test_fresh_within_ttl(self):
        record = connected_record()
        assert state.is_fresh(record, START + timedelta(seconds=300), timedelta(seconds=300))

    def test_stale_after_ttl(self):
        record = connected_record()
        assert not state.is_fresh(record, START + timedelta(seconds=301), timedelta(seconds=300))

    def test_not_fresh_past_expiry(self):
        record = connected_record(expires_at=START + timedelta(seconds=10))
        assert not state.is_fresh(record, START + timedelta(seconds=11), timedelta(hours=1))

    def test_expired_status_is_never_fresh(self):
        record = connected_record(status=ConnectionStatus.EXPIRED)
        assert not state.is_fresh(record, START, timedelta(hours=1))

    def test_credential_only_from_connected(self):
        with pytest.raises(IncoherentRecordError):
            state.to_credential(connected_record(status=ConnectionStatus.INVALID))

    def test_credential_carries_accounts(self):
        credential = state.to_credential(connected_record())
        assert credential.access_token == TOKEN
        assert credential.linked_accounts == ACCOUNTS
        assert credential.verified_at == START


class TestConnect:

    @pytest.mark.parametrize("status", list(ConnectionStatus))
    def test_connect_from_any_status(self, status):
        record = ConnectionRecord(tenant_id=TENANT, status=status, version=2)
        if status != ConnectionStatus.DISCONNECTED:
            record = replace(record, access_token="old-token")

        result = state.connect(record, START, TOKEN, Valid(linked_accounts=ACCOUNTS))

        assert result.status == ConnectionStatus.CONNECTED
        assert result.access_token == TOKEN
        assert result.last_verified_at == START
        assert result.primary_account_id == ACCOUNTS[0]
        assert result.version == 2
        state.assert_coherent(result)

    def test_preferred_primary_wins_when_linked(self):
        result = state.connect(
            state.empty_record(TENANT), START, TOKEN,
            Valid(linked_accounts=ACCOUNTS, primary_account_id=ACCOUNTS[0]),
            preferred_primary=ACCOUNTS[1],
        )
        assert result.primary_account_id == ACCOUNTS[1]

    def test_duplicate_provider_accounts_collapsed(self):
        result = state.connect(
            state.empty_record(TENANT), START, TOKEN,
            Valid(linked_accounts=("act_1", "act_2", "act_1")),
        )
        assert result.linked_accounts == ("act_1", "act_2")

    def test_connect_without_accounts(self):
        result = state.connect(state.empty_record(TENANT), START, TOKEN, Valid())
        assert result.linked_accounts == ()
        assert result.primary_account_id is None

    def test_connect_requires_valid_outcome(self):
        with pytest.raises(IncoherentRecordError):
            state.connect(state.empty_record(TENANT), START, TOKEN, Invalid(reason="bad"))


class TestVerificationTransitions:

    def test_expire_keeps_token(self):
        result = state.expire(connected_record())
        assert result.status == ConnectionStatus.EXPIRED
        assert result.access_token == TOKEN

    def test_expire_leaves_invalid_alone(self):
        record = connected_record(status=ConnectionStatus.INVALID)
        assert state.expire(record) is record

    def test_valid_refreshes_expired_record(self):
        record = connected_record(status=ConnectionStatus.EXPIRED)
        later = START + timedelta(hours=1)

        result = state.apply_verification(record, later, Valid(linked_accounts=("act_333", "act_111")))

        assert result.status == ConnectionStatus.CONNECTED
        assert result.linked_accounts == ("act_333", "act_111")
        assert result.primary_account_id == "act_111"
        assert result.last_verified_at == later

    def test_primary_replaced_when_no_longer_linked(self):
        record = connected_record(primary_account_id="act_222")
        result = state.apply_verification(
            record, START, Valid(linked_accounts=("act_333",), primary_account_id="act_333")
        )
        assert result.primary_account_id == "act_333"

    def test_invalid_keeps_token(self):
        result = state.apply_verification(connected_record(), START, Invalid(reason="revoked", error_code=190))
        assert result.status == ConnectionStatus.INVALID
        assert result.access_token == TOKEN

    def test_unreachable_changes_nothing(self):
        record = connected_record()
        assert state.apply_verification(record, START, Unreachable(reason="down")) == record

    def test_invalid_is_not_healed_by_verification(self):
        record = connected_record(status=ConnectionStatus.INVALID)
        assert state.apply_verification(record, START, Valid(linked_accounts=ACCOUNTS)) is record


class TestDisconnectAndSelection:

    @pytest.mark.parametrize(
        "status", [ConnectionStatus.CONNECTED, ConnectionStatus.EXPIRED, ConnectionStatus.INVALID]
    )
    def test_disconnect_erases_credential(self, status):
        record = connected_record(status=status, expires_at=START)
        result = state.disconnect(record)

        assert result.status == ConnectionStatus.DISCONNECTED
        assert result.access_token is None
        assert result.expires_at is None
        assert result.linked_accounts == ()
        assert result.version == record.version

    def test_select_linked_account(self):
        result = state.select_primary(connected_record(), ACCOUNTS[1])
        assert result.primary_account_id == ACCOUNTS[1]

    def test_select_unknown_account(self):
        with pytest.raises(UnknownAdAccountError):
            state.select_primary(connected_record(), "act_999")
