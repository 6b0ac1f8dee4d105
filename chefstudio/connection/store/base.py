"""
Connection Store Abstract Base Class

Persistence contract for connection records. Compare-and-swap is
the only way to change a record:

    read(tenant_id)                          -> ConnectionRecord
    compare_and_swap(tenant_id, v, record)   -> True | False (conflict)

A tenant with nothing stored reads as a clean ``disconnected`` record
at version 0; "not found" is never an error.

Version: 1.0.0
"""

from abc import ABC, abstractmethod

from chefstudio.connection.state import ConnectionRecord
from chefstudio.models import ConnectionStatus


class BaseConnectionStore(ABC):
    """
    Abstract base class for connection record stores.

    Implementations must give read-your-writes: a read issued after a
    successful compare_and_swap returns that write (or a newer one).
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the store backend name (e.g., "memory", "database")."""
        pass

    @abstractmethod
    async def read(self, tenant_id: str) -> ConnectionRecord:
        """
        Load the current record for a tenant.

        Args:
            tenant_id: Tenant identifier

        Returns:
            ConnectionRecord: Stored record, or the default
            disconnected record (version 0) if none exists

        Raises:
            MalformedRecordError: If the stored data is incoherent
        """
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        tenant_id: str,
        expected_version: int,
        record: ConnectionRecord,
    ) -> bool:
        """
        Atomically replace the record if its version still matches.

        Args:
            tenant_id: Tenant identifier
            expected_version: Version read before computing ``record``
                (0 when nothing was stored)
            record: New record; stored with version expected_version + 1

        Returns:
            bool: True if written, False if another writer got there first
        """
        pass

    @abstractmethod
    async def list_tenant_ids(self, status: ConnectionStatus) -> list[str]:
        """Tenants whose stored status is ``status``."""
        pass
