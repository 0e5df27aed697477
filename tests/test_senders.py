# tests/test_senders.py
"""Tests for the outbound sender: request shape, truncation and error classification."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from inbox.core.ingestion.domain import Channel
from inbox.core.ingestion.errors import (
    MessagingWindowExpired,
    ProviderRateLimited,
    ProviderSendError,
    ProviderTimeout,
)
from inbox.core.ingestion.text import TRUNCATION_MARKER
from inbox.transport.senders import (
    OutboundSender,
    build_request,
    classify_meta_error,
    classify_tiktok_error,
    extract_message_id,
    graph_url,
)


def _session(status: int = 200, body: dict | None = None, *, raises: Exception | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body)
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=resp)
    cm.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post = MagicMock(return_value=cm, side_effect=raises)
    return session


def _sender(session) -> OutboundSender:
    return OutboundSender(session_factory=lambda: session)


class TestBuildRequest:
    def test_whatsapp(self, whatsapp_ctx):
        url, body = build_request(whatsapp_ctx, "+5215512345678", "Hola")
        assert url == graph_url(f"{whatsapp_ctx.endpoint_id}/messages")
        assert body["to"] == "5215512345678"
        assert body["text"] == {"preview_url": False, "body": "Hola"}

    def test_instagram(self, instagram_ctx):
        url, body = build_request(instagram_ctx, "psid-1", "Hola")
        assert url.endswith("/me/messages")
        assert body == {"recipient": {"id": "psid-1"}, "messaging_type": "RESPONSE", "message": {"text": "Hola"}}

    def test_tiktok(self, tiktok_ctx):
        url, body = build_request(tiktok_ctx, "open-1", "Hola")
        assert url.endswith("/direct_message/send/")
        assert body["open_id"] == "open-1"

    def test_graph_version_override(self):
        assert graph_url("me/messages", graph_api_version="v20.0") == "https://graph.facebook.com/v20.0/me/messages"

    def test_extract_message_id(self):
        assert extract_message_id(Channel.WHATSAPP, {"messages": [{"id": "wamid.1"}]}) == "wamid.1"
        assert extract_message_id(Channel.FACEBOOK, {"recipient_id": "x", "message_id": "mid.1"}) == "mid.1"
        assert extract_message_id(Channel.TIKTOK, {"data": {"message_id": "tt-1"}}) == "tt-1"


class TestClassification:
    @pytest.mark.parametrize("status,code", [(429, None), (400, 4), (400, 80007), (400, 130429)])
    def test_meta_rate_limits(self, status, code):
        error = classify_meta_error(status, {"error": {"code": code, "message": "slow down"}})
        assert isinstance(error, ProviderRateLimited)
        assert error.retryable is True

    @pytest.mark.parametrize("body", [
        {"error": {"code": 131047, "message": "Re-engagement message"}},
        {"error": {"code": 10, "error_subcode": 2018108, "message": "outside of allowed window"}},
        {"error": {"code": 2018278, "message": "window"}},
    ])
    def test_meta_window_expired(self, body):
        error = classify_meta_error(400, body)
        assert isinstance(error, MessagingWindowExpired)
        assert error.retryable is False

    def test_meta_auth_failure(self):
        error = classify_meta_error(401, {"error": {"code": 190, "message": "expired token"}})
        assert type(error) is ProviderSendError
        assert error.retryable is False

    def test_meta_server_error_is_retryable(self):
        error = classify_meta_error(503, None)
        assert type(error) is ProviderSendError
        assert error.retryable is True

    def test_tiktok_codes(self):
        assert isinstance(classify_tiktok_error(200, {"error": {"code": 10003}}), ProviderRateLimited)
        assert isinstance(classify_tiktok_error(200, {"error": {"code": 10004}}), MessagingWindowExpired)
        assert classify_tiktok_error(400, {"error": {"code": 1}}).retryable is False


class TestSend:
    @pytest.mark.asyncio
    async def test_whatsapp_success(self, whatsapp_ctx):
        session = _session(200, {"messages": [{"id": "wamid.OUT"}]})

        provider_id = await _sender(session).send(whatsapp_ctx, "+5215512345678", "Hola!")

        assert provider_id == "wamid.OUT"
        _, kwargs = session.post.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer EAAG-test-token"
        assert kwargs["json"]["text"]["body"] == "Hola!"

    @pytest.mark.asyncio
    async def test_long_text_is_truncated(self, instagram_ctx):
        session = _session(200, {"recipient_id": "psid-1", "message_id": "mid.1"})

        await _sender(session).send(instagram_ctx, "psid-1", "palabra " * 500)

        sent = session.post.call_args.kwargs["json"]["message"]["text"]
        assert len(sent) <= 1000
        assert sent.endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_rate_limited(self, whatsapp_ctx):
        session = _session(429, {"error": {"code": 130429, "message": "Rate limit hit"}})
        with pytest.raises(ProviderRateLimited):
            await _sender(session).send(whatsapp_ctx, "+521", "Hola")

    @pytest.mark.asyncio
    async def test_window_expired(self, whatsapp_ctx):
        session = _session(400, {"error": {"code": 131047, "message": "Re-engagement message"}})
        with pytest.raises(MessagingWindowExpired):
            await _sender(session).send(whatsapp_ctx, "+521", "Hola")

    @pytest.mark.asyncio
    async def test_tiktok_daily_limit(self, tiktok_ctx):
        session = _session(200, {"error": {"code": 10003, "message": "limit"}})
        with pytest.raises(ProviderRateLimited):
            await _sender(session).send(tiktok_ctx, "open-1", "Hola")

    @pytest.mark.asyncio
    async def test_tiktok_window_closed(self, tiktok_ctx):
        session = _session(200, {"error": {"code": 10004, "message": "window"}})
        with pytest.raises(MessagingWindowExpired):
            await _sender(session).send(tiktok_ctx, "open-1", "Hola")

    @pytest.mark.asyncio
    async def test_tiktok_success(self, tiktok_ctx):
        session = _session(200, {"data": {"message_id": "tt-1"}, "error": {"code": "ok", "message": ""}})
        assert await _sender(session).send(tiktok_ctx, "open-1", "Hola") == "tt-1"

    @pytest.mark.asyncio
    async def test_timeout(self, whatsapp_ctx):
        session = _session(raises=asyncio.TimeoutError())
        with pytest.raises(ProviderTimeout) as exc_info:
            await _sender(session).send(whatsapp_ctx, "+521", "Hola")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, whatsapp_ctx):
        session = _session(raises=aiohttp.ClientConnectionError("reset"))
        with pytest.raises(ProviderSendError) as exc_info:
            await _sender(session).send(whatsapp_ctx, "+521", "Hola")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, whatsapp_ctx):
        session = _session(502)
        session.post.return_value.__aenter__.return_value.json = AsyncMock(side_effect=ValueError("html"))
        with pytest.raises(ProviderSendError) as exc_info:
            await _sender(session).send(whatsapp_ctx, "+521", "Hola")
        assert exc_info.value.status == 502
        assert exc_info.value.retryable is True
