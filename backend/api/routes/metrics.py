# backend/api/routes/metrics.py
from fastapi import APIRouter
from datetime import datetime, timezone

from core import state

router = APIRouter()

@router.get("/metrics")
async def get_metrics():
    """
    Runtime counters for this instance.

    Counters are per-process and reset on restart; they are meant for
    eyeballing load and push health, not for billing.

    Example Response:
        {
            "total_messages": 1520,
            "uptime_hours": 3.2,
            "messages_per_second": 0.13,
            "push_failures": 0,
            "pending_broadcasts": 0,
            "concurrent_connections": 42,
            "subscribed_channels": 57
        }
    """
    uptime_seconds = (datetime.now(timezone.utc) - state.app_start_time).total_seconds()

    if uptime_seconds > 0:
        messages_per_second = state.message_counter / uptime_seconds
    else:
        messages_per_second = 0

    return {
        # Statistics
        "total_messages": state.message_counter,
        "uptime_hours": round(uptime_seconds / 3600, 2) if uptime_seconds > 0 else 0,
        "messages_per_second": round(messages_per_second, 2),

        # Push layer
        "push_backend": type(state.fanout).__name__ if state.fanout is not None else None,
        "push_failures": state.broadcaster.failures if state.broadcaster else 0,
        "pending_broadcasts": state.events.pending if state.events else 0,

        # Capacity
        "concurrent_connections": len(state.connection_manager.connection_channels),
        "subscribed_channels": len(state.connection_manager.channels),
    }
