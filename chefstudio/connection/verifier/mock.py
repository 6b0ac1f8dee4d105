"""
Mock Meta Verifier Implementation

Simulates Graph API token verification without making real API calls.
Used in development mode (ENV_MODE=development) to:
    - Exercise the connect / verify / disconnect flow locally
    - Run the concurrency simulation without a Meta app
    - Develop without internet connectivity

Behavior:
    - Tokens starting with "invalid" or "revoked" are rejected
    - Tokens starting with "unreachable" simulate a provider outage
    - Any other token is valid, with ad accounts derived from the token
    - Randomly reports ~5% transient outages (configurable)

Version: 1.0.0
"""

import asyncio
import hashlib
import logging
import random
from datetime import datetime

from chefstudio.connection.verifier.base import (
    BaseMetaVerifier,
    Invalid,
    Unreachable,
    Valid,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)


class MockMetaVerifier(BaseMetaVerifier):
    """
    Mock implementation of the Meta verifier.

    Attributes:
        failure_rate: Probability of a simulated transient outage (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        accounts_per_token: Number of ad accounts a valid token links

    Example:
        >>> verifier = MockMetaVerifier(failure_rate=0.0)
        >>> outcome = await verifier.verify("EAAB-demo")
        >>> outcome.linked_accounts[0].startswith("act_")
        True
    """

    INVALID_PREFIXES = ("invalid", "revoked")
    UNREACHABLE_PREFIX = "unreachable"

    def __init__(
        self,
        failure_rate: float = 0.05,
        min_latency: float = 0.05,
        max_latency: float = 0.3,
        accounts_per_token: int = 2,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.accounts_per_token = accounts_per_token
        self.calls = 0

        logger.info(
            f"MockMetaVerifier initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        latency = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate an outage."""
        return random.random() < self.failure_rate

    def _accounts_for(self, access_token: str) -> tuple[str, ...]:
        """Derive stable act_ ids from the token."""
        digest = hashlib.sha256(access_token.encode("utf-8")).hexdigest()
        return tuple(
            f"act_{int(digest[i * 8:(i + 1) * 8], 16) % 10**15:015d}"
            for i in range(self.accounts_per_token)
        )

    async def verify(self, access_token: str) -> VerificationOutcome:
        """
        Simulate a call to /me/adaccounts.

        Behavior:
            - Rejects tokens by prefix (see class docstring)
            - Simulates network latency
            - Randomly reports transient outages based on failure_rate
        """
        self.calls += 1
        start_time = datetime.now()
        await self._simulate_latency()

        lowered = access_token.lower()

        if lowered.startswith(self.UNREACHABLE_PREFIX) or self._should_fail():
            logger.debug("Mock: Simulated Graph API outage")
            return Unreachable(reason="Simulated Graph API outage")

        if lowered.startswith(self.INVALID_PREFIXES):
            logger.debug("Mock: Token rejected")
            return Invalid(
                reason="Error validating access token: The session has been invalidated",
                error_code=190,
            )

        accounts = self._accounts_for(access_token)
        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000

        logger.debug(f"Mock: Token valid - {len(accounts)} ad accounts")

        return Valid(
            linked_accounts=accounts,
            primary_account_id=accounts[0] if accounts else None,
            response_time_ms=elapsed_ms,
        )

    async def health_check(self) -> bool:
        """
        Mock health check always returns True.

        In development, we assume the mock provider is always available.
        """
        logger.debug("Mock: Health check passed")
        return True
