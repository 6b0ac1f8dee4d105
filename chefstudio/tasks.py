"""
Celery Tasks
Background re-verification of Meta connections.

Both tasks go through the connection gate, so they follow the same
TTL, expiry and compare-and-swap rules as request handling.
"""

import asyncio
import logging
import time
from datetime import datetime

from chefstudio.celery_worker import celery_app
from chefstudio.connection import ConnectionGateError, get_connection_gate
from chefstudio.database import engine

logger = logging.getLogger(__name__)


async def _run_with_gate(operation):
    """Run a gate coroutine and release pooled DB connections afterwards."""
    try:
        return await operation(get_connection_gate())
    finally:
        # Each task runs in a fresh event loop; pooled connections
        # must not outlive it.
        await engine.dispose()


@celery_app.task(bind=True)
def verify_tenant_connection(self, tenant_id: str) -> dict:
    """
    Run the connection gate for a single tenant.

    Args:
        tenant_id: Tenant to check

    Returns:
        dict: Outcome of the check ("connected" or the gate error code)
    """
    task_id = self.request.id
    start_time = time.time()

    async def check(gate):
        try:
            credential = await gate.ensure_connected(tenant_id)
            return {"status": "connected", "ad_accounts": len(credential.linked_accounts)}
        except ConnectionGateError as e:
            return {"status": e.code, "retryable": e.retryable}

    result = asyncio.run(_run_with_gate(check))

    elapsed = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: tenant {tenant_id} -> {result['status']} in {elapsed}s")

    return {
        "task_id": task_id,
        "tenant_id": tenant_id,
        "processing_time_seconds": elapsed,
        **result,
    }


@celery_app.task
def sweep_meta_connections() -> dict:
    """
    Re-check every connected tenant.

    Scheduled by celery beat (see celery_worker.beat_schedule).
    """
    results = asyncio.run(_run_with_gate(lambda gate: gate.sweep()))

    summary: dict[str, int] = {}
    for code in results.values():
        summary[code] = summary.get(code, 0) + 1

    return {
        "checked": len(results),
        "outcomes": summary,
        "timestamp": datetime.now().isoformat(),
    }
