"""
                        Meta Connection Module

Tracks whether each tenant's Meta Ads account is linked and whether
its credential is still usable.

Components:
    - state: pure connection state machine
    - store: record persistence (SQL or in-memory)
    - verifier: single-attempt Graph API probe (mock or real)
    - gate: the one entry point that reads, verifies and writes

Usage:
    from chefstudio.connection import get_connection_gate

    credential = await get_connection_gate().ensure_connected(tenant_id)
"""

import logging
from functools import lru_cache

from chefstudio.core.config import get_settings
from chefstudio.connection.errors import (
    ConnectionGateError,
    ExpiredError,
    InvalidCredentialError,
    NotConnectedError,
    ProviderUnreachableError,
    UnknownAdAccountError,
)
from chefstudio.connection.gate import ConnectionGate
from chefstudio.connection.state import ConnectionRecord, ValidatedCredential
from chefstudio.connection.store import get_connection_store, reset_connection_store
from chefstudio.connection.verifier import get_verifier, reset_verifier

logger = logging.getLogger(__name__)


@lru_cache()
def get_connection_gate() -> ConnectionGate:
    """
    Get the process-wide connection gate, wired from settings.

    Returns:
        ConnectionGate: Gate over the configured store and verifier
    """
    settings = get_settings()
    gate = ConnectionGate(
        store=get_connection_store(),
        verifier=get_verifier(),
        ttl=settings.verification_ttl,
        verify_timeout=settings.verifier_timeout_seconds,
    )
    logger.info(
        f"Connection Gate ready (store={gate.store.backend_name}, "
        f"verifier={gate.verifier.provider_name}, ttl={settings.verification_ttl_seconds}s)"
    )
    return gate


def reset_connection_gate() -> None:
    """Clear the cached gate together with its store and verifier."""
    get_connection_gate.cache_clear()
    reset_connection_store()
    reset_verifier()


__all__ = [
    "get_connection_gate",
    "reset_connection_gate",
    "ConnectionGate",
    "ConnectionRecord",
    "ValidatedCredential",
    "ConnectionGateError",
    "NotConnectedError",
    "ExpiredError",
    "InvalidCredentialError",
    "ProviderUnreachableError",
    "UnknownAdAccountError",
]
