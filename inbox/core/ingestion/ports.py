# inbox/core/ingestion/ports.py
from __future__ import annotations
from typing import Any, Optional, Protocol

from inbox.core.ingestion.domain import (
    Channel,
    ChannelContext,
    ConversationResolution,
    DeliveryStatus,
    InboundMessage,
    Lead,
    LeadResolution,
    SaveResult,
    SenderProfile,
)


# ============================================================================
# ASYNC PROTOCOLS (implemented by infra/pg_*_async.py and infra/memory_store.py)
# ============================================================================

class AsyncTenantResolver(Protocol):
    async def resolve(self, tenant_slug: str, channel: Channel, endpoint_id: str) -> ChannelContext:
        """Raises TenantNotFound / ChannelNotConnected."""
        ...

    async def list_connections(self, tenant_slug: str, channel: Channel) -> list[ChannelContext]:
        """All connected channel-connections of an active tenant (empty if none)."""
        ...


class AsyncLeadStore(Protocol):
    async def find_lead(self, tenant_id: str, channel: Channel, external_id: str) -> Optional[Lead]: ...

    async def find_lead_by_identities(self, tenant_id: str, identities: dict[str, str]) -> Optional[Lead]:
        """
        Match a non-deleted lead on any identity column.
        Priority: phone, email, instagram_psid, facebook_psid, tiktok_open_id.
        """
        ...

    async def find_or_create_lead(
        self,
        tenant_id: str,
        branch_id: Optional[str],
        channel: Channel,
        external_id: str,
        name: str,
        *,
        link_to_lead_id: Optional[str] = None,
    ) -> LeadResolution:
        """
        Serialized per (tenant, channel, external_id). Returns the existing lead,
        attaches the identity to ``link_to_lead_id`` when possible, or creates one.
        """
        ...

    async def rename_if_generic(self, tenant_id: str, lead_id: str, name: str) -> bool: ...


class AsyncConversationStore(Protocol):
    async def find_or_create_or_reopen(
        self,
        tenant_id: str,
        branch_id: Optional[str],
        lead_id: str,
        channel: Channel,
        channel_connection_id: str,
        ai_enabled: bool,
    ) -> ConversationResolution: ...


class AsyncMessageStore(Protocol):
    async def find_by_provider_id(self, tenant_id: str, provider_message_id: str) -> Optional[str]:
        """Stored message id for this tenant's provider message id, if any."""
        ...

    async def save_incoming(
        self,
        tenant_id: str,
        conversation_id: str,
        lead_id: str,
        msg: InboundMessage,
    ) -> SaveResult: ...

    async def apply_status(self, tenant_id: str, status: DeliveryStatus) -> bool:
        """
        True  => a message of this tenant was updated
        False => no matching message for this tenant (normal no-op)
        """
        ...


class AsyncJobQueue(Protocol):
    async def enqueue(
        self,
        tenant_id: str,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 1,
        max_attempts: int = 3,
        delay_seconds: float = 0,
    ) -> str: ...


class AsyncProfileFetcher(Protocol):
    async def fetch(self, channel: Channel, external_id: str, access_token: str) -> Optional[SenderProfile]: ...
