"""
In-Memory Connection Store

Keeps records in a dict owned by the store instance. Used in
development and tests; not shared between worker processes.
"""

import asyncio
import logging
from dataclasses import replace

from chefstudio.connection.state import ConnectionRecord, empty_record
from chefstudio.connection.store.base import BaseConnectionStore
from chefstudio.models import ConnectionStatus

logger = logging.getLogger(__name__)


class InMemoryConnectionStore(BaseConnectionStore):
    """Dict-backed store with CAS serialised by an asyncio lock."""

    def __init__(self):
        self._records: dict[str, ConnectionRecord] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    @property
    def backend_name(self) -> str:
        return "memory"

    async def read(self, tenant_id: str) -> ConnectionRecord:
        return self._records.get(tenant_id) or empty_record(tenant_id)

    async def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        record: ConnectionRecord,
    ) -> bool:
        async with self._lock:
            current = self._records.get(tenant_id)
            current_version = current.version if current else 0

            if current_version != expected_version:
                logger.debug(
                    f"CAS conflict for {tenant_id}: expected v{expected_version}, "
                    f"found v{current_version}"
                )
                return False

            self._records[tenant_id] = replace(
                record, tenant_id=tenant_id, version=expected_version + 1
            )
            self.writes += 1
            return True

    async def list_tenant_ids(self, status: ConnectionStatus) -> list[str]:
        return sorted(t for t, r in self._records.items() if r.status == status)
