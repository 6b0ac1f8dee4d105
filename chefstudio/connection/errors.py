"""
Connection Gate Errors

Typed failures raised by the connection gate. Each carries the
information an API layer needs to tell the restaurant owner what
to do next:

    - requires_auth: the owner must run the Meta login flow again
    - retryable: the same operation may simply be retried later
"""

from typing import Optional


class ConnectionGateError(Exception):
    """Base class for every failure the gate reports to callers."""

    code = "connection_error"
    requires_auth = False
    retryable = False
    default_message = "Meta connection is not usable."

    def __init__(self, tenant_id: str, message: Optional[str] = None):
        self.tenant_id = tenant_id
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "connection_status": self.connection_status,
            "requires_auth": self.requires_auth,
            "retryable": self.retryable,
        }

    @property
    def connection_status(self) -> Optional[str]:
        return None


class NotConnectedError(ConnectionGateError):
    """No credential has been supplied (or it was erased)."""

    code = "not_connected"
    requires_auth = True
    default_message = "Meta account is not connected. Please connect your account."

    @property
    def connection_status(self) -> str:
        return "disconnected"


class ExpiredError(ConnectionGateError):
    """The credential is known locally to be past its expiry."""

    code = "expired"
    requires_auth = True
    default_message = "Meta session expired. Please reconnect your account."

    @property
    def connection_status(self) -> str:
        return "expired"


class InvalidCredentialError(ConnectionGateError):
    """The provider rejected the credential. Never retried automatically."""

    code = "invalid"
    requires_auth = True
    default_message = "Meta rejected the stored credential. Please reconnect your account."

    @property
    def connection_status(self) -> str:
        return "invalid"


class ProviderUnreachableError(ConnectionGateError):
    """
    Transient infrastructure problem (network, provider outage,
    timeout or a lost write race). The stored status is unchanged
    and must not be shown to the owner as "disconnected".
    """

    code = "unreachable"
    retryable = True
    default_message = "Could not reach Meta right now. Please try again shortly."


class UnknownAdAccountError(ValueError):
    """Requested primary ad account is not linked to the credential."""

    def __init__(self, tenant_id: str, account_id: str):
        self.tenant_id = tenant_id
        self.account_id = account_id
        super().__init__(f"Ad account {account_id} is not linked to this Meta connection")


class IncoherentRecordError(ValueError):
    """A connection record violates one of its invariants."""


class MalformedRecordError(Exception):
    """
    A stored record could not be turned into a coherent
    ConnectionRecord. Carries the stored version so the gate can
    overwrite it with compare-and-swap.
    """

    def __init__(self, tenant_id: str, version: int, reason: str):
        self.tenant_id = tenant_id
        self.version = version
        self.reason = reason
        super().__init__(f"Malformed connection record for {tenant_id} (v{version}): {reason}")
