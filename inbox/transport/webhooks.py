# inbox/transport/webhooks.py
"""
Generic multi-channel webhook handler.

Handles:
- GET  /t/{tenant_slug}/webhooks/{channel} - hub.verify_token handshake
- POST /t/{tenant_slug}/webhooks/{channel} - inbound messages and delivery statuses

The signature is checked against the raw body before anything is parsed
or written. After that the handler always answers 200, except when a data
store was transiently unavailable (503, so the provider redelivers).
"""
from __future__ import annotations

import json
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from inbox.config import settings
from inbox.core.ingestion.domain import Channel
from inbox.core.ingestion.errors import AuthenticationFailure, TransientStoreError
from inbox.core.ingestion.pipeline import IngestionPipeline
from inbox.infra.db_resilience_async import is_transient_error
from inbox.infra.logging_config import LogContext, get_logger
from inbox.infra.metrics import AppMetrics, inc_counter
from inbox.transport.adapters import get_adapter
from inbox.transport.signatures import signature_headers, verify_any

logger = get_logger(__name__)


def parse_channel(channel: str) -> Channel:
    """Path segment to Channel; unknown channels are a 404."""
    try:
        return Channel(channel.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown channel: {channel}")


def _unavailable(request_id: str) -> JSONResponse:
    return JSONResponse({"status": "retry", "request_id": request_id}, status_code=503)


# -------------------------------------------------------------------------
# GET - Webhook Verification
# -------------------------------------------------------------------------

async def webhook_verify(request: Request, tenant_slug: str, channel: str) -> PlainTextResponse:
    """
    Handle the hub verification handshake (GET).

    The provider sends hub.mode=subscribe, hub.verify_token and hub.challenge;
    we echo hub.challenge when the token matches a connected channel.
    """
    ch = parse_channel(channel)
    pipeline: IngestionPipeline = request.app.state.pipeline

    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge", "")

    try:
        connections = await pipeline.tenants.list_connections(tenant_slug, ch)
    except Exception as exc:
        if is_transient_error(exc):
            return PlainTextResponse("retry", status_code=503)
        raise

    expected = [c.verify_token for c in connections if c.verify_token]
    if mode == "subscribe" and token and token in expected:
        logger.info(f"Webhook verification successful: tenant={tenant_slug}, channel={ch.value}")
        inc_counter("webhook_verified_total", channel=ch.value)
        return PlainTextResponse(content=challenge, status_code=200)

    logger.warning(f"Webhook verification failed: tenant={tenant_slug}, channel={ch.value}, mode={mode}")
    AppMetrics.webhook_validation_failed(ch.value)
    raise HTTPException(status_code=403, detail="Verification failed")


# -------------------------------------------------------------------------
# POST - Inbound Events
# -------------------------------------------------------------------------

async def authenticate(pipeline: IngestionPipeline, request: Request, tenant_slug: str, ch: Channel, body: bytes) -> None:
    """
    Raise AuthenticationFailure unless the body is signed by one of the
    tenant's connected channel secrets.
    """
    if not settings.require_webhook_validation:
        return
    connections = await pipeline.tenants.list_connections(tenant_slug, ch)
    signature, timestamp = signature_headers(ch, request.headers)
    secrets = [c.webhook_secret for c in connections if c.webhook_secret]
    if not secrets or not verify_any(ch, body, signature, secrets, timestamp):
        raise AuthenticationFailure(
            f"Invalid or missing signature: tenant={tenant_slug}, channel={ch.value}, "
            f"connections={len(connections)}"
        )


async def webhook_handler(request: Request, tenant_slug: str, channel: str) -> JSONResponse:
    """Handle a provider webhook POST for any channel."""
    start_time = time.time()
    ch = parse_channel(channel)
    pipeline: IngestionPipeline = request.app.state.pipeline
    request_id = getattr(request.state, "request_id", "unknown")
    log_ctx = LogContext(logger, channel=ch.value, request_id=request_id)

    body = await request.body()

    try:
        await authenticate(pipeline, request, tenant_slug, ch, body)
    except AuthenticationFailure as exc:
        log_ctx.error(f"Webhook rejected: {exc}")
        AppMetrics.webhook_validation_failed(ch.value)
        raise HTTPException(status_code=403, detail="Invalid signature")
    except Exception as exc:
        if is_transient_error(exc):
            log_ctx.error(f"Signature lookup unavailable: {exc.__class__.__name__}")
            return _unavailable(request_id)
        raise

    # Parse JSON payload: malformed input is acknowledged so the provider stops retrying
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        log_ctx.warning("Webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("webhook_malformed_payload_total", channel=ch.value)
        return JSONResponse({"status": "ignored"}, status_code=200)

    batch = get_adapter(ch).normalize(payload)
    if batch.is_empty():
        return JSONResponse({"status": "ok", "processed": 0, "duplicates": 0, "skipped": 0, "errors": 0})

    try:
        result = await pipeline.process_batch(tenant_slug, ch, batch, request_id=request_id)
    except TransientStoreError as exc:
        log_ctx.error(f"Webhook deferred, store unavailable: {exc}")
        return _unavailable(request_id)

    elapsed_ms = (time.time() - start_time) * 1000
    summary = result.summary()
    log_ctx.info(
        f"Webhook processed: tenant={tenant_slug}, messages={len(batch.messages)}, "
        f"statuses={len(batch.statuses)}, summary={summary}, elapsed={elapsed_ms:.0f}ms"
    )

    if result.has_transient_failure:
        return _unavailable(request_id)
    return JSONResponse({"status": "ok", **summary}, status_code=200)
