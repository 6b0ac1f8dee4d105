"""
SQL Connection Store

Persists connection records in the ``meta_connections`` table.

Compare-and-swap:
    - expected version 0  -> INSERT; a primary-key clash means another
      writer created the row first (conflict)
    - otherwise           -> UPDATE ... WHERE version = expected;
      zero rows touched means the version moved on (conflict)

Every call opens its own session, so a read after a successful write
always sees that write.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chefstudio.connection.errors import IncoherentRecordError, MalformedRecordError
from chefstudio.connection.state import ConnectionRecord, assert_coherent, empty_record
from chefstudio.connection.store.base import BaseConnectionStore
from chefstudio.models import ConnectionStatus, MetaConnection

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Some backends (SQLite) drop tzinfo; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlConnectionStore(BaseConnectionStore):
    """SQLAlchemy async implementation of the connection store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @property
    def backend_name(self) -> str:
        return "database"

    # =========================================================================
    # ROW MAPPING
    # =========================================================================

    @staticmethod
    def _to_record(row: MetaConnection) -> ConnectionRecord:
        version = row.version or 0

        try:
            status = ConnectionStatus(row.status)
        except ValueError:
            raise MalformedRecordError(row.tenant_id, version, f"unknown status {row.status!r}")

        try:
            accounts = json.loads(row.linked_accounts or "[]")
        except ValueError:
            raise MalformedRecordError(row.tenant_id, version, "linked_accounts is not JSON")

        if not isinstance(accounts, list) or not all(isinstance(a, str) for a in accounts):
            raise MalformedRecordError(row.tenant_id, version, "linked_accounts is not a list of ids")

        record = ConnectionRecord(
            tenant_id=row.tenant_id,
            status=status,
            access_token=row.access_token,
            expires_at=_as_utc(row.expires_at),
            linked_accounts=tuple(accounts),
            primary_account_id=row.primary_account_id,
            last_verified_at=_as_utc(row.last_verified_at),
            version=version,
        )

        try:
            assert_coherent(record)
        except IncoherentRecordError as e:
            raise MalformedRecordError(row.tenant_id, version, str(e))

        return record

    @staticmethod
    def _to_values(record: ConnectionRecord, version: int) -> dict:
        return {
            "access_token": record.access_token,
            "expires_at": record.expires_at,
            "status": record.status.value,
            "linked_accounts": json.dumps(list(record.linked_accounts)),
            "primary_account_id": record.primary_account_id,
            "last_verified_at": record.last_verified_at,
            "version": version,
        }

    # =========================================================================
    # STORE CONTRACT
    # =========================================================================

    async def read(self, tenant_id: str) -> ConnectionRecord:
        async with self._session_factory() as session:
            row = await session.get(MetaConnection, tenant_id)
            if row is None:
                return empty_record(tenant_id)
            return self._to_record(row)

    async def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        record: ConnectionRecord,
    ) -> bool:
        values = self._to_values(record, expected_version + 1)

        async with self._session_factory() as session:
            if expected_version == 0:
                session.add(MetaConnection(tenant_id=tenant_id, **values))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug(f"CAS conflict for {tenant_id}: row created concurrently")
                    return False
                return True

            result = await session.execute(
                update(MetaConnection)
                .where(
                    MetaConnection.tenant_id == tenant_id,
                    MetaConnection.version == expected_version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount != 1:
                logger.debug(f"CAS conflict for {tenant_id}: expected v{expected_version}")
                return False
            return True

    async def list_tenant_ids(self, status: ConnectionStatus) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MetaConnection.tenant_id)
                .where(MetaConnection.status == status.value)
                .order_by(MetaConnection.tenant_id)
            )
            return list(result.scalars().all())
