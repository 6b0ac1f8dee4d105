"""
SQLAlchemy Database Models

One row per tenant holding the Meta Ads credential and its
connection status. Rows are written only by the connection store,
and only through compare-and-swap on the ``version`` column.

Version: 1.0.0
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.sql import func

from chefstudio.database import Base


class ConnectionStatus(str, enum.Enum):
    """Connection status of a tenant's advertising account."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    EXPIRED = "expired"
    INVALID = "invalid"


class MetaConnection(Base):
    """
    Persisted Meta Ads connection for a tenant.

    Never deleted while the tenant exists: disconnecting clears the
    credential and flips the status instead.
    """
    __tablename__ = "meta_connections"

    tenant_id = Column(String(64), primary_key=True)

    # =========================================================================
    # CREDENTIAL
    # =========================================================================
    access_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # STATUS
    # =========================================================================
    # Stored as plain text so an unknown value reads back as a malformed
    # record instead of failing inside the ORM.
    status = Column(
        String(20),
        default=ConnectionStatus.DISCONNECTED.value,
        nullable=False,
        index=True,
    )
    last_verified_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # AD ACCOUNTS
    # =========================================================================
    linked_accounts = Column(Text, nullable=False, default="[]")  # JSON list of ids
    primary_account_id = Column(String(64), nullable=True)

    # =========================================================================
    # CONCURRENCY
    # =========================================================================
    version = Column(Integer, nullable=False, default=1)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<MetaConnection {self.tenant_id} - {self.status} - v{self.version}>"
