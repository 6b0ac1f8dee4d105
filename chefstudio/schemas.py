"""
Pydantic Schemas for Request/Response Validation

Access tokens are accepted in requests but never echoed back.

Version: 1.0.0
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chefstudio.connection.state import ConnectionRecord, ValidatedCredential
from chefstudio.models import ConnectionStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class ConnectRequest(BaseModel):
    """Credential hand-off from the Meta OAuth callback."""

    access_token: str = Field(..., min_length=1, max_length=4096)
    expires_in: Optional[int] = Field(
        None,
        ge=1,
        description="Token lifetime in seconds, as returned by /oauth/access_token",
        examples=[5183944],
    )
    expires_at: Optional[datetime] = Field(
        None,
        description="Absolute expiry; use instead of expires_in",
    )
    primary_account_id: Optional[str] = Field(None, max_length=64, examples=["act_1234567890"])

    @field_validator("access_token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("access_token must not be blank")
        return v

    @field_validator("expires_at")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("expires_at must include a timezone offset")
        return v

    @model_validator(mode="after")
    def one_expiry_form(self) -> "ConnectRequest":
        if self.expires_in is not None and self.expires_at is not None:
            raise ValueError("Provide expires_in or expires_at, not both")
        return self

    def resolve_expiry(self, now: datetime) -> Optional[datetime]:
        """Absolute expiry for the token, if one is known."""
        if self.expires_in is not None:
            return now + timedelta(seconds=self.expires_in)
        if self.expires_at is not None:
            return self.expires_at.astimezone(timezone.utc)
        return None


class PrimaryAccountRequest(BaseModel):
    """Select the ad account campaigns run against."""
    account_id: str = Field(..., min_length=1, max_length=64, examples=["act_1234567890"])


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class ConnectionStatusResponse(BaseModel):
    """Stored connection state (no remote call)."""

    model_config = ConfigDict(use_enum_values=True)

    tenant_id: str
    status: ConnectionStatus
    connected: bool
    requires_auth: bool
    linked_accounts: list[str] = []
    primary_account_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    last_verified_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_record(cls, record: ConnectionRecord) -> "ConnectionStatusResponse":
        return cls(
            tenant_id=record.tenant_id,
            status=record.status,
            connected=record.status == ConnectionStatus.CONNECTED,
            requires_auth=record.status != ConnectionStatus.CONNECTED,
            linked_accounts=list(record.linked_accounts),
            primary_account_id=record.primary_account_id,
            expires_at=record.expires_at,
            last_verified_at=record.last_verified_at,
            version=record.version,
        )


class VerifiedConnectionResponse(BaseModel):
    """Result of a successful gate check."""

    success: bool = True
    tenant_id: str
    status: str = ConnectionStatus.CONNECTED.value
    linked_accounts: list[str]
    primary_account_id: Optional[str] = None
    verified_at: datetime

    @classmethod
    def from_credential(cls, credential: ValidatedCredential) -> "VerifiedConnectionResponse":
        return cls(
            tenant_id=credential.tenant_id,
            linked_accounts=list(credential.linked_accounts),
            primary_account_id=credential.primary_account_id,
            verified_at=credential.verified_at,
        )


class AdAccount(BaseModel):
    id: str
    is_primary: bool


class AdAccountListResponse(BaseModel):
    tenant_id: str
    ad_accounts: list[AdAccount]


class GateErrorResponse(BaseModel):
    """Body returned for every connection gate failure."""
    success: bool = False
    error: str
    message: str
    connection_status: Optional[str] = None
    requires_auth: bool
    retryable: bool


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    verifier: str
    store_backend: str
    timestamp: datetime
