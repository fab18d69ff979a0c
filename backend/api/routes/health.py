# backend/api/routes/health.py

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from core import state

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Pings Redis; every chat action depends on it, so an unreachable store
    means the instance is unhealthy.

    Returns:
        dict: Status, Redis reachability and live WebSocket count
    """
    try:
        await state.redis_client.ping()
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "redis": "unreachable"},
        )

    return {
        "status": "healthy",
        "redis": "ok",
        "connections": len(state.connection_manager.connection_channels),
    }
