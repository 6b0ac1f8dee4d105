"""
Meta Verifier Factory

Provides a single entry point for obtaining a verifier instance.
The rest of the application stays agnostic about which
implementation is active.

Usage:
    from chefstudio.connection.verifier import get_verifier

    verifier = get_verifier()
    outcome = await verifier.verify(access_token)

Environment Switching:
    - ENV_MODE=development → MockMetaVerifier (no API calls)
    - ENV_MODE=staging → GraphMetaVerifier
    - ENV_MODE=production → GraphMetaVerifier

Version: 1.0.0
"""

import logging
from functools import lru_cache

from chefstudio.core.config import get_settings
from chefstudio.connection.verifier.base import (
    BaseMetaVerifier,
    Invalid,
    Unreachable,
    Valid,
    VerificationOutcome,
)
from chefstudio.connection.verifier.graph import GraphMetaVerifier
from chefstudio.connection.verifier.mock import MockMetaVerifier

logger = logging.getLogger(__name__)


@lru_cache()
def get_verifier() -> BaseMetaVerifier:
    """
    Get the configured verifier instance.

    Returns MockMetaVerifier or GraphMetaVerifier based on ENV_MODE.
    The instance is cached for the life of the process.

    Returns:
        BaseMetaVerifier: Configured verifier instance
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Meta Verifier: Using MockMetaVerifier (development mode)")
        return MockMetaVerifier(failure_rate=settings.mock_verifier_failure_rate)

    logger.info(
        f"Meta Verifier: Using GraphMetaVerifier "
        f"({settings.env_mode.value} mode)"
    )
    return GraphMetaVerifier()


def reset_verifier() -> None:
    """
    Clear the cached verifier instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_verifier.cache_clear()
    logger.debug("Verifier cache cleared")


__all__ = [
    "get_verifier",
    "reset_verifier",
    "BaseMetaVerifier",
    "VerificationOutcome",
    "Valid",
    "Invalid",
    "Unreachable",
    "MockMetaVerifier",
    "GraphMetaVerifier",
]
