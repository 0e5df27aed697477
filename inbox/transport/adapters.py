# inbox/transport/adapters.py
"""
Adapters to convert provider webhook payloads into canonical events.
These are pure converters - they don't contain domain logic.

Every adapter returns a NormalizedBatch and never raises on malformed
sub-fields: a bad item is logged and skipped.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from inbox.core.ingestion.domain import (
    Channel,
    DeliveryStatus,
    InboundMessage,
    MessageKind,
    NormalizedBatch,
)
from inbox.core.ingestion.text import normalize_phone
from inbox.infra.logging_config import get_logger, mask_identifier
from inbox.infra.metrics import inc_counter

logger = get_logger(__name__)


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _from_unix(value: Any, *, millis: bool = False) -> datetime:
    """Provider timestamp to aware UTC datetime; falls back to now."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)
    if millis:
        seconds /= 1000.0
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug(f"Provider timestamp out of range: {value!r}")
        return datetime.now(timezone.utc)


class PayloadAdapter(Protocol):
    """Protocol for adapters that convert a webhook body to a NormalizedBatch"""

    channel: Channel

    def normalize(self, payload: Any) -> NormalizedBatch:
        ...


# ============================================================================
# WHATSAPP CLOUD API
# ============================================================================

class WhatsAppCloudAdapter:
    """
    Adapter for WhatsApp Cloud API webhooks.

    Meta sends JSON payloads with structure:
    {
      "object": "whatsapp_business_account",
      "entry": [{
        "id": "<WABA_ID>",
        "changes": [{
          "value": {
            "messaging_product": "whatsapp",
            "metadata": {"display_phone_number": "...", "phone_number_id": "..."},
            "contacts": [{"profile": {"name": "..."}, "wa_id": "..."}],
            "messages": [{"from": "...", "id": "wamid.xxx", "timestamp": "...", "type": "text", ...}],
            "statuses": [{"id": "wamid.xxx", "status": "delivered", "recipient_id": "...", ...}]
          },
          "field": "messages"
        }]
      }]
    }
    """

    channel = Channel.WHATSAPP

    # (kind, placeholder, default mime type) per media type
    _MEDIA_TYPES = {
        "image": (MessageKind.IMAGE, "[Imagen recibida]", "image/jpeg"),
        "video": (MessageKind.VIDEO, "[Video recibido]", "video/mp4"),
        "audio": (MessageKind.AUDIO, "[Audio recibido]", "audio/ogg"),
        "document": (MessageKind.DOCUMENT, "[Documento recibido]", "application/pdf"),
        "sticker": (MessageKind.IMAGE, "[Sticker recibido]", "image/webp"),
    }

    def normalize(self, payload: Any) -> NormalizedBatch:
        batch = NormalizedBatch()
        if not isinstance(payload, dict):
            return batch

        for entry in _as_list(payload.get("entry")):
            for change in _as_list(_as_dict(entry).get("changes")):
                change = _as_dict(change)
                if change.get("field") != "messages":
                    logger.debug(f"WhatsApp webhook: ignoring field={change.get('field')}")
                    continue
                value = _as_dict(change.get("value"))
                endpoint_id = str(_as_dict(value.get("metadata")).get("phone_number_id") or "")
                if not endpoint_id:
                    logger.warning("WhatsApp webhook: change without phone_number_id, skipping")
                    continue

                names = {
                    str(c.get("wa_id")): _as_dict(c.get("profile")).get("name")
                    for c in _as_list(value.get("contacts")) if isinstance(c, dict)
                }

                for raw in _as_list(value.get("messages")):
                    try:
                        msg = self._parse_message(_as_dict(raw), endpoint_id, names)
                    except Exception as exc:
                        logger.warning(f"WhatsApp webhook: malformed message skipped ({exc.__class__.__name__})")
                        inc_counter("webhook_items_skipped_total", channel=self.channel.value)
                        continue
                    if msg is not None:
                        batch.messages.append(msg)

                for raw in _as_list(value.get("statuses")):
                    try:
                        status = self._parse_status(_as_dict(raw), endpoint_id)
                    except Exception as exc:
                        logger.warning(f"WhatsApp webhook: malformed status skipped ({exc.__class__.__name__})")
                        inc_counter("webhook_items_skipped_total", channel=self.channel.value)
                        continue
                    if status is not None:
                        batch.statuses.append(status)

        return batch

    def _parse_message(self, msg: dict, endpoint_id: str, names: dict) -> Optional[InboundMessage]:
        msg_type = msg.get("type")
        from_number = str(msg.get("from") or "")
        message_id = str(msg.get("id") or "")
        if not from_number or not message_id:
            logger.debug("WhatsApp message without sender or id, ignoring")
            return None

        kind = MessageKind.TEXT
        text = ""
        media_id = None
        media_type = None
        metadata: dict[str, Any] = {"wa_type": msg_type}

        if msg_type == "text":
            text = _as_dict(msg.get("text")).get("body") or ""
            if not text.strip():
                logger.debug("WhatsApp text message with empty body, ignoring")
                return None
        elif msg_type in self._MEDIA_TYPES:
            kind, placeholder, default_mime = self._MEDIA_TYPES[msg_type]
            media = _as_dict(msg.get(msg_type))
            media_id = media.get("id")
            media_type = media.get("mime_type") or default_mime
            if msg_type == "document":
                text = media.get("caption") or media.get("filename") or placeholder
            else:
                text = media.get("caption") or placeholder
        elif msg_type == "location":
            kind = MessageKind.LOCATION
            loc = _as_dict(msg.get("location"))
            if loc.get("name") or loc.get("address"):
                text = f"[Ubicacion: {loc.get('name') or ''} - {loc.get('address') or ''}]"
            else:
                text = f"[Ubicacion: {loc.get('latitude')}, {loc.get('longitude')}]"
            metadata["location"] = {"latitude": loc.get("latitude"), "longitude": loc.get("longitude")}
        elif msg_type == "interactive":
            kind = MessageKind.QUICK_REPLY
            interactive = _as_dict(msg.get("interactive"))
            reply = _as_dict(interactive.get("button_reply")) or _as_dict(interactive.get("list_reply"))
            text = reply.get("title") or "[Boton presionado]"
            if reply.get("id"):
                metadata["reply_id"] = reply.get("id")
        elif msg_type == "button":
            kind = MessageKind.POSTBACK
            button = _as_dict(msg.get("button"))
            text = button.get("text") or button.get("payload") or "[Boton presionado]"
        elif msg_type == "contacts":
            shared = [
                _as_dict(c.get("name")).get("formatted_name") or "contacto"
                for c in _as_list(msg.get("contacts")) if isinstance(c, dict)
            ]
            text = f"[Contactos compartidos: {', '.join(shared)}]"
        elif msg_type == "reaction":
            reaction = _as_dict(msg.get("reaction"))
            emoji = reaction.get("emoji")
            if not emoji:
                logger.debug("WhatsApp reaction removed, ignoring")
                return None
            kind = MessageKind.REACTION
            text = emoji
            if reaction.get("message_id"):
                metadata["reacted_to"] = reaction.get("message_id")
        else:
            kind = MessageKind.UNSUPPORTED
            text = f"[Mensaje tipo {msg_type}]"

        sender_phone = normalize_phone(from_number)
        logger.info(
            f"WhatsApp message: from={mask_identifier(sender_phone)}, id={message_id[:20]}, "
            f"type={msg_type}, has_media={media_id is not None}"
        )

        return InboundMessage(
            channel=self.channel,
            sender_id=sender_phone,
            provider_message_id=message_id,
            endpoint_id=endpoint_id,
            timestamp=_from_unix(msg.get("timestamp")),
            kind=kind,
            text=text,
            media_type=media_type,
            provider_media_id=media_id,
            reply_to_message_id=_as_dict(msg.get("context")).get("id"),
            sender_name=names.get(from_number),
            metadata=metadata,
        )

    def _parse_status(self, raw: dict, endpoint_id: str) -> Optional[DeliveryStatus]:
        status = raw.get("status")
        provider_id = raw.get("id")
        if status not in ("sent", "delivered", "read", "failed") or not provider_id:
            logger.debug(f"WhatsApp status ignored: status={status}")
            return None

        error_message = None
        if status == "failed":
            first = _as_dict((_as_list(raw.get("errors")) or [{}])[0])
            error_message = first.get("title") or first.get("message")

        return DeliveryStatus(
            channel=self.channel,
            endpoint_id=endpoint_id,
            provider_message_id=str(provider_id),
            status=status,
            timestamp=_from_unix(raw.get("timestamp")),
            recipient_id=raw.get("recipient_id"),
            error_message=error_message,
        )


# ============================================================================
# META MESSENGER (INSTAGRAM / FACEBOOK)
# ============================================================================

class MetaMessengerAdapter:
    """
    Adapter for Instagram Direct and Facebook Messenger webhooks.

    {
      "object": "instagram" | "page",
      "entry": [{
        "id": "<PAGE_ID>",
        "time": 1700000000000,
        "messaging": [{
          "sender": {"id": "<PSID>"},
          "recipient": {"id": "<PAGE_ID>"},
          "timestamp": 1700000000000,
          "message": {"mid": "...", "text": "..."}
        }]
      }]
    }
    """

    _ATTACHMENT_TYPES = {
        "image": (MessageKind.IMAGE, "[Imagen recibida]"),
        "video": (MessageKind.VIDEO, "[Video recibido]"),
        "audio": (MessageKind.AUDIO, "[Audio recibido]"),
    }

    def __init__(self, channel: Channel):
        if channel not in (Channel.INSTAGRAM, Channel.FACEBOOK):
            raise ValueError(f"Messenger adapter does not handle {channel}")
        self.channel = channel

    def normalize(self, payload: Any) -> NormalizedBatch:
        batch = NormalizedBatch()
        if not isinstance(payload, dict):
            return batch

        for entry in _as_list(payload.get("entry")):
            entry = _as_dict(entry)
            page_id = str(entry.get("id") or "")
            if not page_id:
                continue
            for event in _as_list(entry.get("messaging")):
                event = _as_dict(event)
                try:
                    if "delivery" in event:
                        batch.statuses.extend(self._parse_delivery(event, page_id))
                        continue
                    if "read" in event:
                        # Read receipts carry a watermark, not message ids
                        continue
                    msg = self._parse_event(event, page_id)
                except Exception as exc:
                    logger.warning(f"Meta webhook: malformed event skipped ({exc.__class__.__name__})")
                    inc_counter("webhook_items_skipped_total", channel=self.channel.value)
                    continue
                if msg is not None:
                    batch.messages.append(msg)

        return batch

    def _parse_event(self, event: dict, page_id: str) -> Optional[InboundMessage]:
        sender_id = str(_as_dict(event.get("sender")).get("id") or "")
        if not sender_id:
            return None
        message = _as_dict(event.get("message"))
        if message.get("is_echo") or message.get("is_deleted") or message.get("is_unsupported"):
            return None

        kind = MessageKind.TEXT
        content = ""
        media_url = None
        media_type = None
        metadata: dict[str, Any] = {"page_id": page_id}
        reply_to = _as_dict(message.get("reply_to"))

        if event.get("postback"):
            postback = _as_dict(event.get("postback"))
            kind = MessageKind.POSTBACK
            content = postback.get("title") or postback.get("payload") or ""
        elif event.get("reaction"):
            reaction = _as_dict(event.get("reaction"))
            if reaction.get("action") == "unreact":
                return None
            kind = MessageKind.REACTION
            content = reaction.get("emoji") or reaction.get("reaction") or "[Reaccion]"
            if reaction.get("mid"):
                metadata["reacted_to"] = reaction.get("mid")
        elif message.get("quick_reply"):
            kind = MessageKind.QUICK_REPLY
            content = message.get("text") or _as_dict(message.get("quick_reply")).get("payload") or ""
        elif reply_to.get("story"):
            kind = MessageKind.STORY_REPLY
            content = message.get("text") or "[Respuesta a historia]"
            metadata["is_story_reply"] = True
            metadata["story_url"] = _as_dict(reply_to.get("story")).get("url")
        elif message.get("text"):
            content = message["text"]
        elif _as_list(message.get("attachments")):
            attachment = _as_dict(message["attachments"][0])
            att_type = attachment.get("type")
            att_payload = _as_dict(attachment.get("payload"))

            if att_type in self._ATTACHMENT_TYPES:
                kind, content = self._ATTACHMENT_TYPES[att_type]
                media_url = att_payload.get("url")
                media_type = att_type
            elif att_type == "file":
                kind = MessageKind.DOCUMENT
                content = att_payload.get("title") or "[Archivo recibido]"
                media_url = att_payload.get("url")
                media_type = "file"
            elif att_type == "location":
                kind = MessageKind.LOCATION
                coords = _as_dict(att_payload.get("coordinates"))
                if coords:
                    content = f"[Ubicacion: {coords.get('lat')}, {coords.get('long')}]"
                else:
                    content = "[Ubicacion compartida]"
            elif att_type == "story_mention":
                kind = MessageKind.STORY_MENTION
                content = "[Te mencionaron en una historia]"
                metadata["is_story_mention"] = True
                metadata["story_url"] = att_payload.get("url") or att_payload.get("story_url")
            elif att_type == "story_reply":
                kind = MessageKind.STORY_REPLY
                content = message.get("text") or "[Respuesta a historia]"
                metadata["is_story_reply"] = True
                metadata["story_url"] = att_payload.get("url") or att_payload.get("story_url")
            else:
                kind = MessageKind.UNSUPPORTED
                content = f"[Mensaje tipo {att_type}]"

        if not content:
            return None

        timestamp = event.get("timestamp")
        provider_id = message.get("mid")
        if not provider_id:
            if timestamp is None:
                logger.debug("Meta event without mid or timestamp, ignoring")
                return None
            provider_id = f"postback_{sender_id}_{timestamp}"

        logger.info(
            f"{self.channel.value.capitalize()} message: from={mask_identifier(sender_id)}, "
            f"id={str(provider_id)[:20]}, kind={kind.value}"
        )

        return InboundMessage(
            channel=self.channel,
            sender_id=sender_id,
            provider_message_id=str(provider_id),
            endpoint_id=page_id,
            timestamp=_from_unix(timestamp, millis=True),
            kind=kind,
            text=content,
            media_url=media_url,
            media_type=media_type,
            reply_to_message_id=reply_to.get("mid"),
            metadata=metadata,
        )

    def _parse_delivery(self, event: dict, page_id: str) -> list[DeliveryStatus]:
        delivery = _as_dict(event.get("delivery"))
        recipient = _as_dict(event.get("sender")).get("id")
        timestamp = _from_unix(delivery.get("watermark") or event.get("timestamp"), millis=True)
        return [
            DeliveryStatus(
                channel=self.channel,
                endpoint_id=page_id,
                provider_message_id=str(mid),
                status="delivered",
                timestamp=timestamp,
                recipient_id=recipient,
            )
            for mid in _as_list(delivery.get("mids")) if mid
        ]


# ============================================================================
# TIKTOK
# ============================================================================

class TikTokAdapter:
    """
    Adapter for TikTok Business messaging webhooks (one event per request).

    {
      "client_key": "...",
      "event": "direct_message.receive",
      "create_time": 1700000000,
      "user_openid": "...",
      "content": {
        "open_id": "...",
        "message_id": "...",
        "message_type": "text",
        "message_content": {"text": "..."}
      }
    }
    """

    channel = Channel.TIKTOK

    def normalize(self, payload: Any) -> NormalizedBatch:
        batch = NormalizedBatch()
        if not isinstance(payload, dict):
            return batch

        if payload.get("event") != "direct_message.receive":
            logger.debug(f"TikTok webhook: ignoring event={payload.get('event')}")
            return batch

        content = payload.get("content")
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError:
                logger.warning("TikTok webhook: content is not valid JSON, skipping")
                return batch
        content = _as_dict(content)

        open_id = content.get("open_id")
        message_id = content.get("message_id")
        client_key = str(payload.get("client_key") or "")
        if not open_id or not message_id or not client_key:
            logger.warning("TikTok webhook: event without open_id, message_id or client_key, skipping")
            return batch

        message_type = content.get("message_type") or "text"
        message_content = _as_dict(content.get("message_content"))
        kind = MessageKind.TEXT
        text = ""
        media_url = None
        media_type = None
        metadata: dict[str, Any] = {"client_key": client_key, "is_shared_video": False}

        if message_type == "text":
            text = message_content.get("text") or ""
        elif message_type == "image":
            kind, text = MessageKind.IMAGE, "[Imagen recibida]"
            media_url, media_type = message_content.get("media_url"), "image"
        elif message_type == "video":
            kind, text = MessageKind.VIDEO, "[Video recibido]"
            media_url, media_type = message_content.get("media_url"), "video"
        elif message_type == "sticker":
            kind, text = MessageKind.IMAGE, "[Sticker recibido]"
        elif message_type == "share":
            kind, text = MessageKind.VIDEO, "[Video de TikTok compartido]"
            media_url = message_content.get("shared_video_url")
            metadata["is_shared_video"] = True
            metadata["shared_video_id"] = message_content.get("shared_video_id")
        else:
            kind, text = MessageKind.UNSUPPORTED, f"[Mensaje tipo {message_type}]"

        if not text:
            return batch

        logger.info(
            f"TikTok message: from={mask_identifier(str(open_id))}, id={str(message_id)[:20]}, type={message_type}"
        )

        batch.messages.append(InboundMessage(
            channel=self.channel,
            sender_id=str(open_id),
            provider_message_id=str(message_id),
            endpoint_id=client_key,
            timestamp=_from_unix(payload.get("create_time")),
            kind=kind,
            text=text,
            media_url=media_url,
            media_type=media_type,
            metadata=metadata,
        ))
        return batch


def get_adapter(channel: Channel | str) -> PayloadAdapter:
    """Get the payload adapter for a channel"""
    channel = Channel(channel)
    if channel == Channel.WHATSAPP:
        return WhatsAppCloudAdapter()
    if channel == Channel.TIKTOK:
        return TikTokAdapter()
    return MetaMessengerAdapter(channel)
