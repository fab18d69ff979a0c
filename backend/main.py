# backend/main.py

from __future__ import annotations

import asyncio
import secrets
import time

from core import state
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.errors import ChatError
from core.logging import setup_logging, get_logger
from services.redis_pub_sub import AsyncRedisPubSubService, create_redis_client
from api.routes import root, health, metrics, chat_rooms
from api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="Roomchat - Multi-room Chat Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = secrets.token_hex(4)
    request.state.request_id = request_id
    action = request.query_params.get("action")
    logger.info("[%s] %s %s%s", request_id, request.method, request.url.path, f" action={action}" if action else "")

    start = time.perf_counter()
    try:
        return await call_next(request)
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info("[%s] Request completed in %.2fms", request_id, duration_ms)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# REST routes
app.include_router(root.router)
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(chat_rooms.router)

# WebSocket routes
app.include_router(websocket_module.router)

_listener_task: asyncio.Task | None = None


@app.on_event("startup")
async def startup_event():
    global _listener_task
    logger.info("🚀 Application starting - push backend: %s", settings.PUB_SUB_SERVICE)

    client = create_redis_client()

    if settings.PUB_SUB_SERVICE == "redis":
        # Pub/Sub needs its own client; the shared one stays free for commands
        redis_service = AsyncRedisPubSubService(create_redis_client())
        await redis_service.connect()
        state.push_service = redis_service
        state.init(client, redis_service)

        # Start subscriber in background
        _listener_task = asyncio.create_task(redis_service.listen(state.connection_manager.deliver))
    elif settings.PUB_SUB_SERVICE == "google_pub_sub":
        from services.gcloud_pub_sub import GooglePubSubService

        gcloud_service = GooglePubSubService()
        state.push_service = gcloud_service
        state.init(client, gcloud_service)

        loop = asyncio.get_running_loop()
        gcloud_service.start(loop, state.connection_manager.deliver)
    else:
        raise RuntimeError(f"Unknown PUB_SUB_SERVICE: {settings.PUB_SUB_SERVICE}")

    state.events.start()


@app.on_event("shutdown")
async def on_shutdown():
    if state.events is not None:
        await state.events.stop()

    if _listener_task is not None:
        _listener_task.cancel()

    if settings.PUB_SUB_SERVICE == "google_pub_sub" and state.push_service is not None:
        state.push_service.shutdown()
    elif state.push_service is not None:
        await state.push_service.close()

    if state.redis_client is not None:
        await state.redis_client.aclose()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000)

# ============================================================================
# END OF FILE
# ============================================================================
