"""
Meta Verifier Abstract Base Class

Defines the interface contract for every credential verifier.
A verifier performs exactly one authoritative check of an access
token against the provider and classifies the result:

    Valid        the token works; carries the ad accounts it can act on
    Invalid      the provider rejected the token (revoked, malformed)
    Unreachable  transport failure, timeout or provider outage

Verifiers never retry. Retry policy belongs to the connection gate,
which keeps each verifier a single-attempt probe.

Design Pattern: Strategy Pattern
    - MockMetaVerifier for local development
    - GraphMetaVerifier for staging and production

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class Valid:
    """
    Successful verification.

    Attributes:
        linked_accounts: Ad account ids the token can act on, in provider order
        primary_account_id: Suggested primary account (first linked one)
        response_time_ms: Time taken by the remote call
    """
    linked_accounts: tuple[str, ...] = ()
    primary_account_id: Optional[str] = None
    response_time_ms: float = field(default=0.0, compare=False)


@dataclass(frozen=True)
class Invalid:
    """The provider marked the credential as unusable."""
    reason: str
    error_code: Optional[int] = None


@dataclass(frozen=True)
class Unreachable:
    """The provider could not give an authoritative answer."""
    reason: str


VerificationOutcome = Union[Valid, Invalid, Unreachable]


class BaseMetaVerifier(ABC):
    """
    Abstract base class for Meta credential verifiers.

    Example:
        >>> verifier = get_verifier()  # Returns Mock or Graph
        >>> outcome = await verifier.verify(access_token)
        >>> if isinstance(outcome, Valid):
        ...     print(outcome.linked_accounts)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """
        Return the name of the verification provider.

        Returns:
            str: Provider name (e.g., "mock", "meta-graph")
        """
        pass

    @abstractmethod
    async def verify(self, access_token: str) -> VerificationOutcome:
        """
        Check a credential once against the provider.

        Args:
            access_token: Opaque Meta access token

        Returns:
            Valid, Invalid or Unreachable. Implementations must not
            raise for provider or network failures.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Verify connectivity to the provider.

        Returns:
            bool: True if the provider is reachable
        """
        pass
