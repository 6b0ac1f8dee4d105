"""
Meta Connection Gate

The single entry point for reading and changing a tenant's Meta
connection. Advertising code calls ``ensure_connected`` before every
operation and receives either a ValidatedCredential or a typed
ConnectionGateError.

ensure_connected:
    1. Read the record
    2. Connected, verified within the TTL, not past expiry -> serve it
    3. No token -> NotConnected; rejected token -> Invalid
    4. Past expires_at -> persist "expired", return Expired (no remote call)
    5. Verify once (bounded by a timeout):
         Unreachable -> no write, return Unreachable
         Invalid     -> persist "invalid", return Invalid
         Valid       -> persist "connected", return the credential
    6. Writes are compare-and-swap on the version read in step 1. A lost
       race re-runs the sequence once; a second loss is reported as
       Unreachable.

Stored records that cannot be decoded are reset to a clean
"disconnected" record and reported as NotConnected.

Version: 1.0.0
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from chefstudio.connection import state
from chefstudio.connection.errors import (
    ConnectionGateError,
    ExpiredError,
    InvalidCredentialError,
    MalformedRecordError,
    NotConnectedError,
    ProviderUnreachableError,
    UnknownAdAccountError,
)
from chefstudio.connection.state import ConnectionRecord, ValidatedCredential
from chefstudio.connection.store.base import BaseConnectionStore
from chefstudio.connection.verifier.base import (
    BaseMetaVerifier,
    Invalid,
    Unreachable,
    Valid,
    VerificationOutcome,
)
from chefstudio.models import ConnectionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WriteConflict(Exception):
    """Another writer changed the record between our read and write."""


class ConnectionGate:
    """
    Orchestrates store, verifier and state machine for each tenant.

    Attributes:
        ttl: How long a successful verification is trusted
        verify_timeout: Upper bound in seconds for one verification
        max_attempts: Runs of an operation before a write conflict is
            surfaced as ProviderUnreachableError (initial run + one retry)

    Example:
        >>> gate = get_connection_gate()
        >>> credential = await gate.ensure_connected("tenant-42")
        >>> credential.primary_account_id
        'act_1234567890'
    """

    max_attempts = 2

    def __init__(
        self,
        store: BaseConnectionStore,
        verifier: BaseMetaVerifier,
        ttl: timedelta,
        verify_timeout: float,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._verifier = verifier
        self.ttl = ttl
        self.verify_timeout = verify_timeout
        self._clock = clock

    @property
    def store(self) -> BaseConnectionStore:
        return self._store

    @property
    def verifier(self) -> BaseMetaVerifier:
        return self._verifier

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _with_retry(
        self,
        tenant_id: str,
        operation: str,
        attempt: Callable[..., Awaitable[T]],
        *args,
    ) -> T:
        for attempt_no in range(1, self.max_attempts + 1):
            try:
                return await attempt(tenant_id, *args)
            except _WriteConflict:
                logger.info(
                    f"{operation}: write conflict for tenant {tenant_id} "
                    f"(attempt {attempt_no}/{self.max_attempts})"
                )

        raise ProviderUnreachableError(
            tenant_id,
            "Meta connection was being updated concurrently. Please try again.",
        )

    async def _write(
        self,
        tenant_id: str,
        expected_version: int,
        record: ConnectionRecord,
    ) -> ConnectionRecord:
        """CAS a coherent record; returns it with its new version."""
        state.assert_coherent(record)

        if not await self._store.compare_and_swap(tenant_id, expected_version, record):
            raise _WriteConflict()

        logger.debug(f"Tenant {tenant_id}: stored {record.status.value} v{expected_version + 1}")
        return replace(record, version=expected_version + 1)

    async def _read(self, tenant_id: str) -> ConnectionRecord:
        """Read a record, resetting malformed ones to disconnected."""
        try:
            return await self._store.read(tenant_id)
        except MalformedRecordError as e:
            logger.error(f"Tenant {tenant_id}: {e.reason}; resetting to disconnected")
            return await self._write(tenant_id, e.version, state.empty_record(tenant_id))

    async def _verify(self, access_token: str) -> VerificationOutcome:
        try:
            return await asyncio.wait_for(
                self._verifier.verify(access_token),
                timeout=self.verify_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Verification exceeded {self.verify_timeout}s")
            return Unreachable(reason=f"Verification timed out after {self.verify_timeout}s")

    # =========================================================================
    # ENSURE CONNECTED
    # =========================================================================

    async def ensure_connected(self, tenant_id: str) -> ValidatedCredential:
        """
        Return a credential that was verified within the TTL.

        Raises:
            NotConnectedError: No credential was ever supplied (or erased)
            ExpiredError: The credential is past its known expiry
            InvalidCredentialError: Meta rejected the credential
            ProviderUnreachableError: Transient failure; retry later
        """
        record = await self._with_retry(tenant_id, "ensure_connected", self._ensure_once)
        return state.to_credential(record)

    async def _ensure_once(self, tenant_id: str) -> ConnectionRecord:
        now = self._clock()
        record = await self._read(tenant_id)

        if state.is_fresh(record, now, self.ttl):
            return record

        if record.access_token is None:
            raise NotConnectedError(tenant_id)

        if record.status == ConnectionStatus.INVALID:
            raise InvalidCredentialError(tenant_id)

        if state.is_past_expiry(record, now):
            if record.status != ConnectionStatus.EXPIRED:
                await self._write(tenant_id, record.version, state.expire(record))
                logger.info(f"Tenant {tenant_id}: credential expired at {record.expires_at.isoformat()}")
            raise ExpiredError(tenant_id)

        outcome = await self._verify(record.access_token)

        if isinstance(outcome, Unreachable):
            logger.warning(f"Tenant {tenant_id}: verification unavailable - {outcome.reason}")
            raise ProviderUnreachableError(tenant_id)

        updated = state.apply_verification(record, self._clock(), outcome)
        stored = await self._write(tenant_id, record.version, updated)

        if isinstance(outcome, Invalid):
            logger.warning(f"Tenant {tenant_id}: credential rejected - {outcome.reason}")
            raise InvalidCredentialError(tenant_id)

        logger.info(f"Tenant {tenant_id}: credential verified ({len(stored.linked_accounts)} ad accounts)")
        return stored

    # =========================================================================
    # CONNECT / DISCONNECT
    # =========================================================================

    async def connect(
        self,
        tenant_id: str,
        access_token: str,
        expires_at: Optional[datetime] = None,
        primary_account_id: Optional[str] = None,
    ) -> ValidatedCredential:
        """
        Install a new credential handed over by the OAuth callback.

        The credential is verified first; nothing is written unless
        Meta accepts it.

        Raises:
            ExpiredError: ``expires_at`` is already in the past
            InvalidCredentialError: Meta rejected the new credential
            ProviderUnreachableError: Verification could not be completed
            UnknownAdAccountError: ``primary_account_id`` is not linked
        """
        if expires_at is not None and self._clock() > expires_at:
            raise ExpiredError(tenant_id, "The supplied Meta token has already expired.")

        outcome = await self._verify(access_token)

        if isinstance(outcome, Unreachable):
            logger.warning(f"Tenant {tenant_id}: connect verification unavailable - {outcome.reason}")
            raise ProviderUnreachableError(tenant_id)

        if isinstance(outcome, Invalid):
            logger.warning(f"Tenant {tenant_id}: new credential rejected - {outcome.reason}")
            raise InvalidCredentialError(tenant_id, f"Meta rejected the new credential: {outcome.reason}")

        if primary_account_id is not None and primary_account_id not in outcome.linked_accounts:
            raise UnknownAdAccountError(tenant_id, primary_account_id)

        record = await self._with_retry(
            tenant_id,
            "connect",
            self._connect_once,
            access_token,
            outcome,
            expires_at,
            primary_account_id,
            self._clock(),
        )
        logger.info(f"Tenant {tenant_id}: Meta account connected ({len(record.linked_accounts)} ad accounts)")
        return state.to_credential(record)

    async def _connect_once(
        self,
        tenant_id: str,
        access_token: str,
        outcome: Valid,
        expires_at: Optional[datetime],
        primary_account_id: Optional[str],
        verified_at: datetime,
    ) -> ConnectionRecord:
        record = await self._read(tenant_id)
        updated = state.connect(
            record,
            verified_at,
            access_token,
            outcome,
            expires_at=expires_at,
            preferred_primary=primary_account_id,
        )
        return await self._write(tenant_id, record.version, updated)

    async def disconnect(self, tenant_id: str) -> ConnectionRecord:
        """
        Erase the credential and mark the tenant disconnected.

        Works from every status. Nothing is written when the tenant is
        already cleanly disconnected.
        """
        record = await self._with_retry(tenant_id, "disconnect", self._disconnect_once)
        logger.info(f"Tenant {tenant_id}: Meta account disconnected")
        return record

    async def _disconnect_once(self, tenant_id: str) -> ConnectionRecord:
        record = await self._read(tenant_id)
        cleared = state.disconnect(record)
        if cleared == record:
            return record
        return await self._write(tenant_id, record.version, cleared)

    # =========================================================================
    # READ-ONLY VIEW & ACCOUNT SELECTION
    # =========================================================================

    async def get_status(self, tenant_id: str) -> ConnectionRecord:
        """Stored record without any remote call."""
        return await self._with_retry(tenant_id, "get_status", self._read)

    async def select_primary_account(self, tenant_id: str, account_id: str) -> ValidatedCredential:
        """
        Choose the ad account campaigns run against.

        Requires a validated connection, so the account list is current.
        """
        record = await self._with_retry(
            tenant_id, "select_primary_account", self._select_once, account_id
        )
        logger.info(f"Tenant {tenant_id}: primary ad account set to {account_id}")
        return state.to_credential(record)

    async def _select_once(self, tenant_id: str, account_id: str) -> ConnectionRecord:
        record = await self._ensure_once(tenant_id)
        if record.primary_account_id == account_id:
            return record
        updated = state.select_primary(record, account_id)
        return await self._write(tenant_id, record.version, updated)

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def sweep(self, status: ConnectionStatus = ConnectionStatus.CONNECTED) -> dict[str, str]:
        """
        Run ensure_connected for every tenant stored with ``status``.

        Fresh records are cache hits; stale ones are re-verified and
        lapsed ones move to expired or invalid.

        Returns:
            dict: tenant id -> "connected" or the gate error code
        """
        results: dict[str, str] = {}

        for tenant_id in await self._store.list_tenant_ids(status):
            try:
                await self.ensure_connected(tenant_id)
                results[tenant_id] = ConnectionStatus.CONNECTED.value
            except ConnectionGateError as e:
                results[tenant_id] = e.code

        healthy = sum(1 for code in results.values() if code == ConnectionStatus.CONNECTED.value)
        logger.info(f"Connection sweep: {healthy}/{len(results)} {status.value} tenants still connected")
        return results
