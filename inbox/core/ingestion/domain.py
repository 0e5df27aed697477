# inbox/core/ingestion/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TIKTOK = "tiktok"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    POSTBACK = "postback"
    QUICK_REPLY = "quick_reply"
    REACTION = "reaction"
    STORY_REPLY = "story_reply"
    STORY_MENTION = "story_mention"
    UNSUPPORTED = "unsupported"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    WAITING_RESPONSE = "waiting_response"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


OPEN_CONVERSATION_STATUSES = frozenset({ConversationStatus.ACTIVE.value, ConversationStatus.PENDING.value})
TERMINAL_CONVERSATION_STATUSES = frozenset({ConversationStatus.RESOLVED.value, ConversationStatus.ARCHIVED.value})

# Delivery progression; "failed" is handled separately (always applies)
DELIVERY_STATUS_ORDER = {"pending": 0, "received": 0, "sent": 1, "delivered": 2, "read": 3}
DELIVERY_STATUSES = frozenset({"sent", "delivered", "read", "failed"})

# Names we consider placeholders; a real name from the provider replaces them
GENERIC_LEAD_NAMES = frozenset({"Desconocido", "Unknown", "Usuario TikTok", ""})
DEFAULT_LEAD_NAME = "Desconocido"
DEFAULT_TIKTOK_LEAD_NAME = "Usuario TikTok"

# Column in `leads` holding the external id for each channel
LEAD_IDENTITY_COLUMNS = {
    Channel.WHATSAPP: "phone",
    Channel.INSTAGRAM: "instagram_psid",
    Channel.FACEBOOK: "facebook_psid",
    Channel.TIKTOK: "tiktok_open_id",
}

# Priority order for cross-channel identity matching
IDENTITY_MATCH_ORDER = ("phone", "email", "instagram_psid", "facebook_psid", "tiktok_open_id")


# ============================================================================
# CHANNEL CONTEXT (read-only snapshot per webhook)
# ============================================================================

@dataclass(frozen=True)
class ChannelContext:
    """
    Tenant + channel-connection snapshot used to process one webhook segment.
    Never mutated by the ingestion core.
    """
    tenant_id: str
    tenant_slug: str
    channel: Channel
    channel_connection_id: str
    endpoint_id: str  # WhatsApp phone_number_id / Meta page id / TikTok client_key
    access_token: str = field(default="", repr=False)
    webhook_secret: Optional[str] = field(default=None, repr=False)  # Meta app secret / TikTok client secret
    verify_token: Optional[str] = field(default=None, repr=False)  # hub.verify_token for GET handshake
    branch_id: Optional[str] = None
    ai_enabled: bool = True
    ai_personality_override: Optional[str] = None
    first_message_delay_seconds: int = 0
    subsequent_message_delay_seconds: int = 0
    custom_instructions_override: Optional[str] = None


# ============================================================================
# CANONICAL INBOUND EVENTS
# ============================================================================

@dataclass
class InboundMessage:
    """
    Normalized inbound message from any channel.
    ``provider_message_id`` is the idempotency key.
    """
    channel: Channel
    sender_id: str  # E.164 phone / PSID / open_id
    provider_message_id: str
    endpoint_id: str
    timestamp: datetime
    kind: MessageKind = MessageKind.TEXT
    text: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None  # mime type (WhatsApp) or generic kind (Meta/TikTok)
    provider_media_id: Optional[str] = None  # WhatsApp delivers a media id, not a URL
    reply_to_message_id: Optional[str] = None
    sender_name: Optional[str] = None  # Display name from the payload, if any
    metadata: dict[str, Any] = field(default_factory=dict)

    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())

    def has_media(self) -> bool:
        return bool(self.media_url or self.provider_media_id)


@dataclass
class DeliveryStatus:
    """Delivery receipt for a message we sent earlier."""
    channel: Channel
    endpoint_id: str
    provider_message_id: str
    status: str  # sent | delivered | read | failed
    timestamp: Optional[datetime] = None
    recipient_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class NormalizedBatch:
    """Everything one webhook call carried, after normalization."""
    messages: list[InboundMessage] = field(default_factory=list)
    statuses: list[DeliveryStatus] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.messages and not self.statuses


# ============================================================================
# STORE RESULTS
# ============================================================================

@dataclass
class Lead:
    id: str
    tenant_id: str
    name: str
    branch_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    instagram_psid: Optional[str] = None
    facebook_psid: Optional[str] = None
    tiktok_open_id: Optional[str] = None
    source: str = "whatsapp"
    source_details: dict[str, Any] = field(default_factory=dict)
    status: str = "new"
    classification: str = "warm"
    score: int = 50
    first_contact_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def identity(self, channel: Channel) -> Optional[str]:
        return getattr(self, LEAD_IDENTITY_COLUMNS[channel])


@dataclass
class SenderProfile:
    """Best-effort profile returned by a provider lookup."""
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class LeadResolution:
    lead_id: str
    is_new: bool
    was_cross_linked: bool = False
    name: Optional[str] = None


@dataclass
class Conversation:
    id: str
    tenant_id: str
    lead_id: str
    channel: Channel
    channel_connection_id: str
    status: str = ConversationStatus.ACTIVE.value
    branch_id: Optional[str] = None
    ai_handling: bool = True
    started_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    message_count: int = 0


@dataclass
class ConversationResolution:
    conversation_id: str
    is_new: bool
    was_reopened: bool = False


@dataclass
class StoredMessage:
    id: str
    tenant_id: str
    conversation_id: str
    channel: Channel
    content: str
    kind: str
    sender_type: str = "lead"  # lead | ai | staff | system
    sender_id: Optional[str] = None
    media_url: Optional[str] = None
    status: str = "received"
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class SaveResult:
    message_id: str
    is_duplicate: bool


# ============================================================================
# JOB PAYLOADS (write contract consumed by the AI and send workers)
# ============================================================================

@dataclass
class AIResponsePayload:
    conversation_id: str
    message_id: str
    lead_id: str
    tenant_id: str
    channel: str
    channel_connection_id: str
    is_first_message: bool
    ai_personality_override: Optional[str] = None
    custom_instructions_override: Optional[str] = None


@dataclass
class SendMessagePayload:
    conversation_id: str
    tenant_id: str
    channel: str
    channel_connection_id: str
    recipient_id: str
    content: str
    message_id: Optional[str] = None  # outbound messages row to mark as sent


@dataclass
class EventOutcome:
    """Result of processing one inbound message through the pipeline."""
    provider_message_id: str
    status: str  # processed | duplicate | skipped | error | transient_error
    lead_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    job_id: Optional[str] = None
    lead_is_new: bool = False
    conversation_is_new: bool = False
    conversation_reopened: bool = False
    detail: Optional[str] = None
