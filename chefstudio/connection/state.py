"""
Connection State Machine

Pure functions over ConnectionRecord. Nothing here performs I/O or
reads the clock: callers pass ``now`` and the verification outcome.

States:
    disconnected  initial; no usable credential
    connected     credential usable, verified within the TTL
    expired       locally known to be past expires_at
    invalid       the provider rejected the credential

Transitions:
    any          --connect(Valid)-->        connected
    connected    --now > expires_at-->      expired
    expired|connected --Valid-->            connected
    expired|connected --Invalid-->          invalid (token kept)
    any          --disconnect-->            disconnected (token erased)

An Unreachable outcome never changes a record.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from chefstudio.connection.errors import IncoherentRecordError, UnknownAdAccountError
from chefstudio.connection.verifier.base import Invalid, Valid, VerificationOutcome
from chefstudio.models import ConnectionStatus


@dataclass(frozen=True)
class ConnectionRecord:
    """
    Snapshot of a tenant's Meta connection.

    ``version`` is assigned by the store on every write; transition
    functions carry it over unchanged.
    """
    tenant_id: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    linked_accounts: tuple[str, ...] = ()
    primary_account_id: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    version: int = 0

    def __repr__(self) -> str:
        # Keep the token out of logs and tracebacks
        token = "set" if self.access_token else None
        return (
            f"ConnectionRecord(tenant_id={self.tenant_id!r}, status={self.status.value}, "
            f"access_token={token}, version={self.version})"
        )


@dataclass(frozen=True)
class ValidatedCredential:
    """What an advertising operation receives from the gate."""
    tenant_id: str
    access_token: str
    linked_accounts: tuple[str, ...]
    primary_account_id: Optional[str]
    verified_at: datetime

    def __repr__(self) -> str:
        return (
            f"ValidatedCredential(tenant_id={self.tenant_id!r}, "
            f"accounts={len(self.linked_accounts)}, verified_at={self.verified_at.isoformat()})"
        )


def empty_record(tenant_id: str, version: int = 0) -> ConnectionRecord:
    """The clean ``disconnected`` record every tenant starts with."""
    return ConnectionRecord(tenant_id=tenant_id, version=version)


# =============================================================================
# INVARIANTS
# =============================================================================

def assert_coherent(record: ConnectionRecord) -> None:
    """
    Raise IncoherentRecordError if ``record`` breaks an invariant.

    The TTL part of the connected invariant depends on the clock and
    is enforced by the gate, not here.
    """
    if not isinstance(record.status, ConnectionStatus):
        raise IncoherentRecordError(f"unknown status {record.status!r}")

    if record.status == ConnectionStatus.CONNECTED:
        if not record.access_token:
            raise IncoherentRecordError("connected without an access token")
        if record.last_verified_at is None:
            raise IncoherentRecordError("connected without a verification timestamp")

    if record.status == ConnectionStatus.DISCONNECTED and record.access_token is not None:
        raise IncoherentRecordError("disconnected record still holds an access token")

    if record.primary_account_id is not None and record.primary_account_id not in record.linked_accounts:
        raise IncoherentRecordError("primary account is not among the linked accounts")

    if len(set(record.linked_accounts)) != len(record.linked_accounts):
        raise IncoherentRecordError("duplicate linked accounts")


# =============================================================================
# QUERIES
# =============================================================================

def is_past_expiry(record: ConnectionRecord, now: datetime) -> bool:
    return record.expires_at is not None and now > record.expires_at


def is_fresh(record: ConnectionRecord, now: datetime, ttl: timedelta) -> bool:
    """True when the record can be served without a remote call."""
    return (
        record.status == ConnectionStatus.CONNECTED
        and record.access_token is not None
        and record.last_verified_at is not None
        and now - record.last_verified_at <= ttl
        and not is_past_expiry(record, now)
    )


def to_credential(record: ConnectionRecord) -> ValidatedCredential:
    """Build the caller-facing credential from a connected record."""
    if record.status != ConnectionStatus.CONNECTED:
        raise IncoherentRecordError(f"cannot issue a credential from a {record.status.value} record")
    assert_coherent(record)
    return ValidatedCredential(
        tenant_id=record.tenant_id,
        access_token=record.access_token,
        linked_accounts=record.linked_accounts,
        primary_account_id=record.primary_account_id,
        verified_at=record.last_verified_at,
    )


# =============================================================================
# TRANSITIONS
# =============================================================================

def _pick_primary(
    accounts: tuple[str, ...],
    *candidates: Optional[str],
) -> Optional[str]:
    """First candidate that is still linked, else the first account."""
    for candidate in candidates:
        if candidate is not None and candidate in accounts:
            return candidate
    return accounts[0] if accounts else None


def connect(
    record: ConnectionRecord,
    now: datetime,
    access_token: str,
    outcome: Valid,
    expires_at: Optional[datetime] = None,
    preferred_primary: Optional[str] = None,
) -> ConnectionRecord:
    """
    Install a freshly supplied and verified credential.

    Valid from every state: this is both the first connection and
    re-authentication after expiry or rejection.
    """
    if not access_token:
        raise IncoherentRecordError("cannot connect without an access token")
    if not isinstance(outcome, Valid):
        raise IncoherentRecordError("a new credential is only installed after a Valid verification")

    accounts = tuple(dict.fromkeys(outcome.linked_accounts))
    return replace(
        record,
        status=ConnectionStatus.CONNECTED,
        access_token=access_token,
        expires_at=expires_at,
        linked_accounts=accounts,
        primary_account_id=_pick_primary(accounts, preferred_primary, outcome.primary_account_id),
        last_verified_at=now,
    )


def expire(record: ConnectionRecord) -> ConnectionRecord:
    """Mark a credential as locally expired. The token is kept."""
    if record.status not in (ConnectionStatus.CONNECTED, ConnectionStatus.EXPIRED):
        return record
    return replace(record, status=ConnectionStatus.EXPIRED)


def apply_verification(
    record: ConnectionRecord,
    now: datetime,
    outcome: VerificationOutcome,
) -> ConnectionRecord:
    """
    Fold a verifier outcome into a connected or expired record.

    Records in other states, and Unreachable outcomes, come back
    unchanged.
    """
    if record.status not in (ConnectionStatus.CONNECTED, ConnectionStatus.EXPIRED):
        return record

    if isinstance(outcome, Valid):
        accounts = tuple(dict.fromkeys(outcome.linked_accounts))
        return replace(
            record,
            status=ConnectionStatus.CONNECTED,
            linked_accounts=accounts,
            primary_account_id=_pick_primary(
                accounts, record.primary_account_id, outcome.primary_account_id
            ),
            last_verified_at=now,
        )

    if isinstance(outcome, Invalid):
        return replace(record, status=ConnectionStatus.INVALID)

    return record


def disconnect(record: ConnectionRecord) -> ConnectionRecord:
    """Erase the credential. Reachable from every state."""
    return empty_record(record.tenant_id, version=record.version)


def select_primary(record: ConnectionRecord, account_id: str) -> ConnectionRecord:
    """Choose which linked ad account campaigns run against."""
    if account_id not in record.linked_accounts:
        raise UnknownAdAccountError(record.tenant_id, account_id)
    return replace(record, primary_account_id=account_id)
