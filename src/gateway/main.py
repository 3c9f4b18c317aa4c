"""FastAPI application entry point for the session webhook gateway.

This module exposes the gateway over HTTP:
- POST /webhook/{subscription_id}: webhook ingress
- GET /sessions/{session_id}/stream: SSE stream of delivered envelopes
- POST /sessions/{session_id}/drain: poll and remove queued envelopes
- GET /events: SSE stream of control-plane notifications
- /api/...: control-plane operations (subscriptions, tunnel, events)
- GET /health, /ready, /metrics
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST

from src.gateway.config import GatewaySettings, get_settings
from src.gateway.delivery.channel import ConsumerAttachedError, DeliveryError
from src.gateway.delivery.sse import format_sse_event
from src.gateway.notifications.metrics import generate_metrics_output
from src.gateway.registry.event_store import EventNotFoundError
from src.gateway.registry.registry import (
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    VersionConflictError,
)
from src.gateway.schemas import CreateSubscriptionRequest, UpdateSubscriptionRequest
from src.gateway.service import GatewayService, build_gateway
from src.gateway.storage.repository import DatabaseError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instance, initialized during lifespan startup
gateway: Optional[GatewayService] = None


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: GatewaySettings) -> None:
    """Log configuration values with the database URL redacted."""
    database = _redact_secret(settings.database_url) if settings.database_url else "(in-memory)"

    logger.info("Gateway configuration:")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")
    logger.info(f"  Local Base URL: {settings.local_base_url}")
    logger.info(f"  Database URL: {database}")
    logger.info(f"  cloudflared Path: {settings.cloudflared_path}")
    logger.info(f"  Tunnel Config Path: {settings.tunnel_config_path}")
    logger.info(f"  Tunnel Name: {settings.tunnel_name or '(from config)'}")
    logger.info(f"  Tunnel Ready Timeout: {settings.tunnel_ready_timeout_seconds}s")
    logger.info(f"  Tunnel Stop Timeout: {settings.tunnel_stop_timeout_seconds}s")
    logger.info(f"  Tunnel Autostart: {settings.tunnel_autostart}")
    logger.info(f"  Mailbox Capacity: {settings.mailbox_capacity}")
    logger.info(f"  Max Sessions: {settings.max_sessions}")
    logger.info(f"  Observer Queue Size: {settings.observer_queue_size}")
    logger.info(f"  Filter Timeout: {settings.filter_timeout_seconds}s")
    logger.info(f"  Log Level: {settings.log_level}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Logging configuration (with secrets redacted)
    - Gateway wiring and persistence connection
    - Tunnel shutdown and cleanup
    """
    global gateway

    logger.info("Session gateway starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    gateway = build_gateway(settings)
    await gateway.start()

    logger.info("Session gateway started successfully")

    yield

    logger.info("Session gateway shutting down...")

    await gateway.close()
    gateway = None

    logger.info("Session gateway shutdown complete")


app = FastAPI(
    title="Session Webhook Gateway",
    description="Routes third-party webhooks into running agent sessions",
    version="1.0.0",
    lifespan=lifespan,
)


def _require_gateway() -> GatewayService:
    if gateway is None:
        logger.error("Gateway not initialized")
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return gateway


@app.exception_handler(SubscriptionNotFoundError)
@app.exception_handler(EventNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SubscriptionValidationError)
async def validation_error_handler(request: Request, exc: SubscriptionValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(VersionConflictError)
async def conflict_handler(request: Request, exc: VersionConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    logger.error("Database error: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Checks persistence connectivity and reports the tunnel state.
    """
    gw = _require_gateway()
    database_status = "healthy" if await gw.health_check() else "unhealthy"
    status = "ready" if database_status == "healthy" else "not_ready"

    return JSONResponse(
        status_code=200 if status == "ready" else 503,
        content={
            "status": status,
            "dependencies": {
                "database": database_status,
                "tunnel": gw.tunnel_status().state.value,
            },
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    gw = _require_gateway()
    return Response(
        content=generate_metrics_output(gw.metrics.registry),
        media_type=CONTENT_TYPE_LATEST,
    )


# -----------------------------------------------------------------------------
# Webhook ingress and session delivery
# -----------------------------------------------------------------------------
@app.post("/webhook/{subscription_id}")
async def receive_webhook(subscription_id: str, request: Request):
    """Run an inbound webhook through the ingress pipeline.

    Returns 404 for unknown subscriptions, 401 for signature failures
    and 200 for every other outcome.
    """
    gw = _require_gateway()
    body = await request.body()
    result = await gw.handler.handle(subscription_id, body, request.headers)
    return JSONResponse(status_code=result.status_code, content=result.to_response())


@app.get("/sessions/{session_id}/stream")
async def stream_session(session_id: str):
    """Stream envelopes delivered to a session as Server-Sent Events.

    Only one consumer may be attached per session (409 otherwise).
    """
    gw = _require_gateway()
    try:
        consumer = gw.channel.consume(session_id)
    except ConsumerAttachedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DeliveryError as e:
        raise HTTPException(status_code=503, detail=str(e))

    async def event_stream():
        async with consumer:
            async for text in consumer:
                yield format_sse_event(text, event="webhook-event")

    # Detach even if the client leaves before the stream is iterated
    cleanup = BackgroundTasks()
    cleanup.add_task(consumer.aclose)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        background=cleanup,
    )


@app.post("/sessions/{session_id}/drain")
async def drain_session(session_id: str):
    """Remove and return every queued envelope for a session."""
    gw = _require_gateway()
    messages = gw.channel.drain(session_id)
    return {"session_id": session_id, "messages": messages}


@app.get("/events")
async def stream_notifications():
    """Stream control-plane notifications as Server-Sent Events."""
    gw = _require_gateway()
    observer_id = gw.observers.connect()

    async def release():
        gw.observers.disconnect(observer_id)

    cleanup = BackgroundTasks()
    cleanup.add_task(release)

    return StreamingResponse(
        gw.observers.stream(observer_id),
        media_type="text/event-stream",
        background=cleanup,
    )


# -----------------------------------------------------------------------------
# Control plane
# -----------------------------------------------------------------------------
@app.post("/api/subscriptions", status_code=201)
async def create_subscription(request: CreateSubscriptionRequest):
    gw = _require_gateway()
    fields = request.model_dump(exclude={"session_id"})
    subscription = await gw.create_subscription(request.session_id, **fields)
    return subscription.redacted()


@app.get("/api/subscriptions")
async def list_subscriptions(session_id: Optional[str] = None):
    gw = _require_gateway()
    subscriptions = await gw.list_subscriptions(session_id)
    return {"subscriptions": [s.redacted() for s in subscriptions]}


@app.get("/api/subscriptions/{subscription_id}")
async def get_subscription(subscription_id: str):
    gw = _require_gateway()
    subscription = await gw.get_subscription(subscription_id)
    return subscription.redacted()


@app.patch("/api/subscriptions/{subscription_id}")
async def update_subscription(subscription_id: str, request: UpdateSubscriptionRequest):
    gw = _require_gateway()
    subscription = await gw.update_subscription(
        subscription_id, request.model_dump(exclude_none=True)
    )
    return subscription.redacted()


@app.delete("/api/subscriptions/{subscription_id}")
async def delete_subscription(subscription_id: str):
    gw = _require_gateway()
    await gw.delete_subscription(subscription_id)
    return {"deleted": subscription_id}


@app.get("/api/subscriptions/{subscription_id}/url")
async def subscription_url(subscription_id: str):
    gw = _require_gateway()
    return await gw.public_webhook_url(subscription_id)


@app.get("/api/events/{event_id}/payload")
async def event_payload(event_id: str):
    gw = _require_gateway()
    event = await gw.event_payload(event_id)
    return event.to_response()


@app.get("/api/tunnel")
async def tunnel_status():
    gw = _require_gateway()
    return gw.tunnel_status().to_dict()


@app.post("/api/tunnel/start")
async def start_tunnel():
    gw = _require_gateway()
    status = await gw.start_tunnel()
    return status.to_dict()


@app.post("/api/tunnel/quick")
async def start_quick_tunnel():
    gw = _require_gateway()
    status = await gw.start_quick_tunnel()
    return status.to_dict()


@app.post("/api/tunnel/stop")
async def stop_tunnel():
    gw = _require_gateway()
    status = await gw.stop_tunnel()
    return status.to_dict()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.gateway.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
    )
