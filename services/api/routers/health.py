"""
Liveness and database reachability.

Always answers 200 so load balancers can tell a running process from a dead
one; ``status`` drops to "degraded" when the database cannot be reached.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _ping_database(session_factory) -> tuple[str, Optional[float]]:
    """("ok", latency ms), ("error", None) or ("unavailable", None)."""
    if session_factory is None:
        return "unavailable", None

    start = time.monotonic()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health check: database ping failed: %s", exc)
        return "error", None
    return "ok", round((time.monotonic() - start) * 1000, 1)


@router.get("/health")
async def health_check(request: Request) -> dict:
    settings = request.app.state.settings
    database, latency_ms = await _ping_database(
        getattr(request.app.state, "db_session_factory", None)
    )

    return {
        "success": True,
        "data": {
            "status": "healthy" if database == "ok" else "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "database": database,
            "databaseLatencyMs": latency_ms,
        },
        "requestId": request.state.request_id,
    }
