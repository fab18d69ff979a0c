# backend/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the API and its features.
    """
    return {
        "message": "Roomchat - multi-room chat backend",
        "version": "1.0",
        "architecture": "stateless handlers + Redis + pub/sub push fan-out",
        "features": ["public_rooms", "private_rooms", "presence", "multi_device_tokens", "rate_limiting"],
        "endpoints": {
            "actions": "/api/chat-rooms?action=...",
            "websocket": "/ws",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
