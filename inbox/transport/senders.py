# inbox/transport/senders.py
"""
Outbound text sender for WhatsApp Cloud API, Instagram/Facebook Messenger
and TikTok direct messages.

Every send:
- truncates the text to the channel limit (ending with "[truncated]")
- runs under the sender session's hard timeout (settings.outbound_timeout_seconds)
- returns the provider message id

Error classification:
- Timeout                          -> ProviderTimeout (ambiguous, never auto re-sent)
- 429 / Meta 4, 80007, 130429      -> ProviderRateLimited (retryable)
- TikTok 10003                     -> ProviderRateLimited (retryable)
- Meta 131047, 2018278 / sub 2018108, TikTok 10004
                                   -> MessagingWindowExpired (not retryable)
- 401 / Meta 190                   -> ProviderSendError (not retryable)
- 5xx / network                    -> ProviderSendError (retryable)
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import aiohttp

from inbox.config import settings
from inbox.core.ingestion.domain import Channel, ChannelContext
from inbox.core.ingestion.errors import (
    MessagingWindowExpired,
    OutboundSendError,
    ProviderRateLimited,
    ProviderSendError,
    ProviderTimeout,
)
from inbox.core.ingestion.text import truncate_for_channel
from inbox.infra.http_client import get_sender_session
from inbox.infra.logging_config import get_logger, mask_identifier
from inbox.infra.metrics import inc_counter

logger = get_logger(__name__)

META_RATE_LIMIT_CODES = frozenset({4, 80007, 130429})
META_WINDOW_CODES = frozenset({131047, 2018278})
META_WINDOW_SUBCODES = frozenset({2018108})
TIKTOK_RATE_LIMIT_CODE = 10003
TIKTOK_WINDOW_CODE = 10004


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def graph_url(path: str, *, graph_api_version: str | None = None) -> str:
    """Build Graph API URL."""
    version = graph_api_version or settings.meta_graph_api_version
    return f"https://graph.facebook.com/{version}/{path}"


def _auth_headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        data = await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Provider returned non-JSON body: status={resp.status}")
        return None
    return data if isinstance(data, dict) else None


def build_request(ctx: ChannelContext, recipient_id: str, text: str) -> tuple[str, dict[str, Any]]:
    """Return (url, json body) for a text send on the context's channel."""
    if ctx.channel == Channel.WHATSAPP:
        return graph_url(f"{ctx.endpoint_id}/messages"), {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient_id.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
    if ctx.channel in (Channel.INSTAGRAM, Channel.FACEBOOK):
        return graph_url("me/messages"), {
            "recipient": {"id": recipient_id},
            "messaging_type": "RESPONSE",
            "message": {"text": text},
        }
    if ctx.channel == Channel.TIKTOK:
        return f"{settings.tiktok_api_base.rstrip('/')}/direct_message/send/", {
            "open_id": recipient_id,
            "message_type": "text",
            "message_content": {"text": text},
        }
    raise ValueError(f"Unsupported channel: {ctx.channel}")


def extract_message_id(channel: Channel, body: dict) -> str:
    if channel == Channel.WHATSAPP:
        messages = body.get("messages") or [{}]
        return str(messages[0].get("id", ""))
    if channel == Channel.TIKTOK:
        return str((body.get("data") or {}).get("message_id", ""))
    return str(body.get("message_id", ""))


def classify_meta_error(status: int, body: dict | None) -> OutboundSendError:
    """Map a Graph API error response to the outbound error taxonomy."""
    error = (body or {}).get("error") or {}
    code = error.get("code")
    subcode = error.get("error_subcode")
    message = error.get("message", "Unknown error")

    if status == 401 or code == 190:
        return ProviderSendError(status, code, message, retryable=False)
    if status == 429 or code in META_RATE_LIMIT_CODES:
        return ProviderRateLimited(status, code, message)
    if code in META_WINDOW_CODES or subcode in META_WINDOW_SUBCODES:
        return MessagingWindowExpired(status, code, message)
    if status >= 500:
        return ProviderSendError(status, code, message, retryable=True)
    return ProviderSendError(status, code, message, retryable=False)


def classify_tiktok_error(status: int, body: dict | None) -> OutboundSendError:
    error = (body or {}).get("error") or {}
    code = error.get("code")
    message = error.get("message", "Unknown error")

    if status == 429 or code == TIKTOK_RATE_LIMIT_CODE:
        return ProviderRateLimited(status, code, message or "max 10 messages per user per day")
    if code == TIKTOK_WINDOW_CODE:
        return MessagingWindowExpired(status, code, message or "24-hour messaging window expired")
    if status == 401:
        return ProviderSendError(status, code, message, retryable=False)
    if status >= 500:
        return ProviderSendError(status, code, message, retryable=True)
    return ProviderSendError(status, code, message, retryable=False)


def _tiktok_ok(body: dict | None) -> bool:
    if body is None:
        return False
    code = (body.get("error") or {}).get("code", 0)
    return code in (0, "ok")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class OutboundSender:
    """
    Sends text through the provider API of a channel connection.

    Usage:
        sender = OutboundSender()
        provider_id = await sender.send(ctx, "+5215512345678", "Hola")
    """

    def __init__(self, session_factory: Callable[[], aiohttp.ClientSession] = get_sender_session):
        self._session_factory = session_factory

    async def send(self, ctx: ChannelContext, recipient_id: str, text: str) -> str:
        """
        Send a text message and return the provider message id.

        Raises:
            ProviderTimeout, ProviderRateLimited, MessagingWindowExpired,
            ProviderSendError (check .retryable before scheduling a retry)
        """
        channel = Channel(ctx.channel)
        body_text = truncate_for_channel(channel, text)
        if len(body_text) < len(text):
            inc_counter("outbound_truncated_total", channel=channel.value)
        url, payload = build_request(ctx, recipient_id, body_text)

        try:
            session = self._session_factory()
            async with session.post(url, json=payload, headers=_auth_headers(ctx.access_token)) as resp:
                body = await _safe_response_json(resp)

                if channel == Channel.TIKTOK:
                    ok = resp.status in (200, 201) and _tiktok_ok(body)
                else:
                    ok = resp.status in (200, 201) and body is not None and "error" not in body

                if ok:
                    message_id = extract_message_id(channel, body)
                    logger.info(
                        f"Outbound message sent: channel={channel.value}, "
                        f"to={mask_identifier(recipient_id)}, msg_id={message_id[:24]}",
                        extra={"tenant_id": ctx.tenant_id, "channel": channel.value},
                    )
                    inc_counter("outbound_messages_total", channel=channel.value, status="sent")
                    return message_id

                if channel == Channel.TIKTOK:
                    error = classify_tiktok_error(resp.status, body)
                else:
                    error = classify_meta_error(resp.status, body)

        except asyncio.TimeoutError:
            logger.error(
                f"Outbound send timed out: channel={channel.value}, to={mask_identifier(recipient_id)}",
                extra={"tenant_id": ctx.tenant_id, "channel": channel.value},
            )
            inc_counter("outbound_messages_total", channel=channel.value, status="timeout")
            raise ProviderTimeout(f"No response from {channel.value} within {settings.outbound_timeout_seconds}s")
        except aiohttp.ClientError as exc:
            logger.error(
                f"Outbound connection error: channel={channel.value}, {exc.__class__.__name__}",
                extra={"tenant_id": ctx.tenant_id, "channel": channel.value},
            )
            inc_counter("outbound_messages_total", channel=channel.value, status="connection_error")
            raise ProviderSendError(0, None, exc.__class__.__name__, retryable=True) from exc

        logger.warning(
            f"Outbound send rejected: channel={channel.value}, {error.__class__.__name__}, "
            f"status={error.status}, code={error.error_code}",
            extra={"tenant_id": ctx.tenant_id, "channel": channel.value},
        )
        inc_counter("outbound_messages_total", channel=channel.value, status=error.__class__.__name__)
        raise error
