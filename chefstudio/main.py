"""
FastAPI Application Entry Point

ChefStudio Ads - Meta Connection Service
Supports both the mock verifier (development) and the Graph API (production).

Endpoints:
    - GET /api/meta/connection-status: Stored connection state
    - GET /api/meta/verify-connection: Gate check (may call Meta)
    - POST /api/meta/connect: Credential hand-off from the OAuth callback
    - POST /api/meta/disconnect: Erase the credential
    - PUT /api/meta/primary-account: Select the primary ad account
    - GET /api/meta/ad-accounts: Ad accounts of a validated connection
    - GET /health: System health check

Tenants are identified by the X-Tenant-ID header, set by the
authentication layer in front of this service.

Version: 1.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime

import redis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from chefstudio.core.config import StoreBackend, get_settings, setup_logging
from chefstudio.connection import (
    ConnectionGate,
    ConnectionGateError,
    ExpiredError,
    InvalidCredentialError,
    NotConnectedError,
    ProviderUnreachableError,
    UnknownAdAccountError,
    ValidatedCredential,
    get_connection_gate,
)
from chefstudio.connection.gate import utcnow
from chefstudio.database import engine, get_db, init_db
from chefstudio.schemas import (
    AdAccount,
    AdAccountListResponse,
    ConnectionStatusResponse,
    ConnectRequest,
    ErrorResponse,
    GateErrorResponse,
    HealthResponse,
    PrimaryAccountRequest,
    VerifiedConnectionResponse,
)
from chefstudio.tasks import verify_tenant_connection

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

GATE_ERROR_STATUS = {
    NotConnectedError: 400,
    ExpiredError: 401,
    InvalidCredentialError: 401,
    ProviderUnreachableError: 503,
}

GATE_ERROR_RESPONSES = {
    400: {"model": GateErrorResponse},
    401: {"model": GateErrorResponse},
    503: {"model": GateErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Store backend: {settings.connection_store_backend.value}")
    logger.info(f"   Verification TTL: {settings.verification_ttl_seconds}s")
    logger.info("=" * 60)

    if settings.connection_store_backend == StoreBackend.DATABASE:
        await init_db()
        logger.info("Database initialized")

    gate = get_connection_gate()
    logger.info(f"Meta Verifier: {gate.verifier.provider_name}")

    problems = settings.validate_production_config()
    if problems:
        logger.warning(f"Configuration problems: {problems}")

    logger.info("Application ready")

    yield  # Application runs

    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Tracks each restaurant's Meta Ads connection and gates advertising "
        "operations on a freshly verified credential."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1, max_length=64)) -> str:
    """Tenant resolved by the authentication layer."""
    return x_tenant_id


def get_gate() -> ConnectionGate:
    return get_connection_gate()


async def require_meta_connection(
    tenant_id: str = Depends(get_tenant_id),
    gate: ConnectionGate = Depends(get_gate),
) -> ValidatedCredential:
    """
    Dependency for advertising routes.

    Resolves to a validated credential or lets the gate error reach
    the exception handler below.
    """
    return await gate.ensure_connected(tenant_id)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def schedule_expiry_check(tenant_id: str, expires_at: datetime) -> None:
    """
    Queue a gate check for the moment the token lapses, so the stored
    status flips to expired without waiting for the next request.
    """
    try:
        verify_tenant_connection.apply_async((tenant_id,), eta=expires_at)
    except Exception as e:
        # The connection is already stored; the sweep will catch up
        logger.warning(f"Could not schedule expiry check for tenant {tenant_id}: {e}")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    gate: ConnectionGate = Depends(get_gate),
    db: AsyncSession = Depends(get_db),
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "not used"
    if gate.store.backend_name == StoreBackend.DATABASE.value:
        db_status = "healthy"
        try:
            await db.execute(select(func.now()))
        except Exception as e:
            db_status = f"unhealthy: {str(e)}"
            logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    verifier_status = "healthy" if await gate.verifier.health_check() else "unhealthy"

    overall = "operational" if all(
        s in ("healthy", "not used") for s in [db_status, redis_status, verifier_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        verifier=verifier_status,
        store_backend=gate.store.backend_name,
        timestamp=datetime.now(),
    )


# =============================================================================
# META CONNECTION ENDPOINTS
# =============================================================================

@app.get(
    "/api/meta/connection-status",
    response_model=ConnectionStatusResponse,
    tags=["Meta Connection"],
    summary="Stored Connection Status",
)
async def connection_status(
    tenant_id: str = Depends(get_tenant_id),
    gate: ConnectionGate = Depends(get_gate),
) -> ConnectionStatusResponse:
    """
    Return the stored status without calling Meta.

    Use /api/meta/verify-connection for an authoritative answer.
    """
    record = await gate.get_status(tenant_id)
    return ConnectionStatusResponse.from_record(record)


@app.get(
    "/api/meta/verify-connection",
    response_model=VerifiedConnectionResponse,
    responses=GATE_ERROR_RESPONSES,
    tags=["Meta Connection"],
    summary="Verify Connection",
)
async def verify_connection(
    credential: ValidatedCredential = Depends(require_meta_connection),
) -> VerifiedConnectionResponse:
    """Run the connection gate and report the validated accounts."""
    return VerifiedConnectionResponse.from_credential(credential)


@app.post(
    "/api/meta/connect",
    response_model=VerifiedConnectionResponse,
    responses={**GATE_ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    tags=["Meta Connection"],
    summary="Connect Meta Account",
)
async def connect_meta_account(
    payload: ConnectRequest,
    tenant_id: str = Depends(get_tenant_id),
    gate: ConnectionGate = Depends(get_gate),
) -> VerifiedConnectionResponse:
    """
    Store the access token obtained by the OAuth callback.

    The token is verified against Meta before it is saved.
    """
    logger.info(f"Connecting Meta account for tenant {tenant_id}")

    credential_expiry = payload.resolve_expiry(utcnow())
    credential = await gate.connect(
        tenant_id,
        payload.access_token,
        expires_at=credential_expiry,
        primary_account_id=payload.primary_account_id,
    )

    if credential_expiry is not None:
        schedule_expiry_check(tenant_id, credential_expiry)

    return VerifiedConnectionResponse.from_credential(credential)


@app.post(
    "/api/meta/disconnect",
    response_model=ConnectionStatusResponse,
    responses={503: {"model": GateErrorResponse}},
    tags=["Meta Connection"],
    summary="Disconnect Meta Account",
)
async def disconnect_meta_account(
    tenant_id: str = Depends(get_tenant_id),
    gate: ConnectionGate = Depends(get_gate),
) -> ConnectionStatusResponse:
    """Erase the stored credential."""
    record = await gate.disconnect(tenant_id)
    return ConnectionStatusResponse.from_record(record)


@app.put(
    "/api/meta/primary-account",
    response_model=VerifiedConnectionResponse,
    responses={**GATE_ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    tags=["Meta Connection"],
    summary="Select Primary Ad Account",
)
async def select_primary_account(
    payload: PrimaryAccountRequest,
    tenant_id: str = Depends(get_tenant_id),
    gate: ConnectionGate = Depends(get_gate),
) -> VerifiedConnectionResponse:
    """Choose the ad account new campaigns are created in."""
    credential = await gate.select_primary_account(tenant_id, payload.account_id)
    return VerifiedConnectionResponse.from_credential(credential)


@app.get(
    "/api/meta/ad-accounts",
    response_model=AdAccountListResponse,
    responses=GATE_ERROR_RESPONSES,
    tags=["Meta Ads"],
    summary="List Ad Accounts",
)
async def list_ad_accounts(
    credential: ValidatedCredential = Depends(require_meta_connection),
) -> AdAccountListResponse:
    """Ad accounts the tenant's verified credential can act on."""
    return AdAccountListResponse(
        tenant_id=credential.tenant_id,
        ad_accounts=[
            AdAccount(id=account_id, is_primary=account_id == credential.primary_account_id)
            for account_id in credential.linked_accounts
        ],
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(ConnectionGateError)
async def gate_exception_handler(request: Request, exc: ConnectionGateError) -> JSONResponse:
    """Translate gate failures into re-authenticate / retry responses."""
    status_code = GATE_ERROR_STATUS.get(type(exc), 503)
    logger.info(f"Gate refused tenant {exc.tenant_id}: {exc.code}")

    headers = {"Retry-After": "30"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(UnknownAdAccountError)
async def unknown_account_handler(request: Request, exc: UnknownAdAccountError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "unknown_ad_account", "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("chefstudio.main:app", host=settings.api_host, port=settings.api_port)
