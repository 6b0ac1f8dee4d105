"""
Meta Graph API Verifier Implementation

Production implementation that checks an access token by listing the
ad accounts it can act on. Used when ENV_MODE=production or staging.

Request:
    GET {graph}/{version}/me/adaccounts?fields=id,name,account_status
    access_token passed as a query parameter

Classification:
    - transport error, timeout, 5xx, empty or non-JSON body -> Unreachable
    - "error" object flagged transient or a throttling code  -> Unreachable
    - any other "error" object, or 401/403                    -> Invalid
    - well-formed "data" list                                 -> Valid

API Documentation:
    https://developers.facebook.com/docs/graph-api/guides/error-handling

Version: 1.0.0
"""

import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from chefstudio.core.config import get_settings
from chefstudio.connection.verifier.base import (
    BaseMetaVerifier,
    Invalid,
    Unreachable,
    Valid,
    VerificationOutcome,
)

logger = logging.getLogger(__name__)

# Graph error codes that signal throttling rather than a bad token
THROTTLING_ERROR_CODES = frozenset({4, 17, 32, 613})


class GraphMetaVerifier(BaseMetaVerifier):
    """
    Production verifier backed by the Meta Graph API.

    Example:
        >>> verifier = GraphMetaVerifier()
        >>> outcome = await verifier.verify(token)
        >>> isinstance(outcome, (Valid, Invalid, Unreachable))
        True
    """

    ACCOUNT_FIELDS = "id,name,account_status"

    def __init__(
        self,
        graph_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            graph_url: Versioned Graph root (defaults to settings)
            timeout: Per-request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        settings = get_settings()

        self._graph_url = (graph_url or settings.meta_graph_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.verifier_timeout_seconds
        self._transport = transport

        logger.info(f"GraphMetaVerifier initialized ({self._graph_url})")

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "meta-graph"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @staticmethod
    def _classify_error(error: Any, status_code: int) -> VerificationOutcome:
        """Map a Graph ``error`` object to Invalid or Unreachable."""
        if not isinstance(error, dict):
            return Invalid(reason=str(error))

        message = error.get("message") or "Unknown Graph API error"
        code = error.get("code")

        if error.get("is_transient") or code in THROTTLING_ERROR_CODES or status_code >= 500:
            return Unreachable(reason=f"Graph API transient error ({code}): {message}")

        return Invalid(reason=message, error_code=code if isinstance(code, int) else None)

    @staticmethod
    def _extract_accounts(payload: dict) -> Optional[tuple[str, ...]]:
        """Return account ids in provider order, or None if malformed."""
        data = payload.get("data")
        if not isinstance(data, list):
            return None

        accounts = []
        for entry in data:
            if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
                return None
            accounts.append(entry["id"])
        return tuple(accounts)

    async def verify(self, access_token: str) -> VerificationOutcome:
        """
        Verify a token with a single Graph API call.
        """
        start_time = datetime.now()
        url = f"{self._graph_url}/me/adaccounts"
        params = {"access_token": access_token, "fields": self.ACCOUNT_FIELDS}

        try:
            async with self._client() as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException:
            logger.error("Graph: Verification timed out")
            return Unreachable(reason="Graph API request timed out")
        except httpx.TransportError as e:
            # Never log the request URL: it carries the token
            logger.error(f"Graph: Transport error - {type(e).__name__}")
            return Unreachable(reason="Unable to reach the Graph API")

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = None

        if isinstance(payload, dict) and "error" in payload:
            outcome = self._classify_error(payload["error"], response.status_code)
            logger.warning(f"Graph: Verification failed - {type(outcome).__name__}: {outcome.reason}")
            return outcome

        if response.status_code >= 500:
            logger.error(f"Graph: Server error {response.status_code}")
            return Unreachable(reason=f"Graph API returned {response.status_code}")

        if response.status_code in (401, 403):
            return Invalid(reason=f"Graph API returned {response.status_code}")

        if not response.is_success or not isinstance(payload, dict):
            logger.error(f"Graph: Unusable response ({response.status_code})")
            return Unreachable(reason="Graph API returned an unusable response")

        accounts = self._extract_accounts(payload)
        if accounts is None:
            logger.error("Graph: Malformed ad account list")
            return Unreachable(reason="Graph API returned a malformed ad account list")

        logger.info(f"Graph: Token valid - {len(accounts)} ad accounts ({elapsed_ms:.0f}ms)")

        return Valid(
            linked_accounts=accounts,
            primary_account_id=accounts[0] if accounts else None,
            response_time_ms=elapsed_ms,
        )

    async def health_check(self) -> bool:
        """
        Verify Graph API connectivity.

        Any answer below 500 means the API is up, even an auth error.
        """
        try:
            async with self._client() as client:
                response = await client.get(f"{self._graph_url}/me")
            healthy = response.status_code < 500
            if healthy:
                logger.debug("Graph: Health check passed")
            return healthy

        except httpx.HTTPError as e:
            logger.error(f"Graph: Health check failed - {type(e).__name__}")
            return False
