# inbox/infra/memory_store.py
"""
In-process implementations of the ingestion store protocols.

Each find-or-create step runs under an ``asyncio.Lock`` keyed by the same
identity the Postgres stores hash into their advisory locks, so the
uniqueness guarantees hold for a single process. Use for development,
single-instance deployments and tests (STORE_BACKEND=memory).
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from inbox.core.ingestion.domain import (
    Channel,
    ChannelContext,
    Conversation,
    ConversationResolution,
    ConversationStatus,
    DELIVERY_STATUS_ORDER,
    DeliveryStatus,
    GENERIC_LEAD_NAMES,
    IDENTITY_MATCH_ORDER,
    InboundMessage,
    LEAD_IDENTITY_COLUMNS,
    Lead,
    LeadResolution,
    OPEN_CONVERSATION_STATUSES,
    SaveResult,
    StoredMessage,
    TERMINAL_CONVERSATION_STATUSES,
)
from inbox.core.ingestion.errors import ChannelNotConnected, TenantNotFound
from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class KeyedLocks:
    """Per-key asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


# ============================================================================
# TENANTS
# ============================================================================

class MemoryTenantRegistry:
    """Tenant slugs and channel connections held in memory."""

    def __init__(self):
        self._tenants: dict[str, dict[str, Any]] = {}  # slug -> {"id", "active"}
        self._connections: list[tuple[ChannelContext, str]] = []  # (context, status)

    def add_tenant(self, slug: str, tenant_id: Optional[str] = None, *, active: bool = True) -> str:
        tenant_id = tenant_id or _new_id()
        self._tenants[slug] = {"id": tenant_id, "active": active}
        return tenant_id

    def add_connection(self, ctx: ChannelContext, *, status: str = "connected") -> ChannelContext:
        self._connections.append((ctx, status))
        return ctx

    def _active_tenant_id(self, tenant_slug: str) -> str:
        tenant = self._tenants.get(tenant_slug)
        if tenant is None or not tenant["active"]:
            raise TenantNotFound(f"Tenant not found or inactive: {tenant_slug}")
        return tenant["id"]

    async def resolve(self, tenant_slug: str, channel: Channel, endpoint_id: str) -> ChannelContext:
        tenant_id = self._active_tenant_id(tenant_slug)
        for ctx, status in self._connections:
            if (
                ctx.tenant_id == tenant_id
                and ctx.channel == Channel(channel)
                and ctx.endpoint_id == endpoint_id
                and status == "connected"
            ):
                return ctx
        raise ChannelNotConnected(
            f"No connected {Channel(channel).value} channel for tenant {tenant_slug}, endpoint {endpoint_id}"
        )

    async def list_connections(self, tenant_slug: str, channel: Channel) -> list[ChannelContext]:
        try:
            tenant_id = self._active_tenant_id(tenant_slug)
        except TenantNotFound:
            return []
        return [
            ctx for ctx, status in self._connections
            if ctx.tenant_id == tenant_id and ctx.channel == Channel(channel) and status == "connected"
        ]

    async def get_connection(self, tenant_id: str, channel_connection_id: str) -> Optional[ChannelContext]:
        for ctx, status in self._connections:
            if ctx.tenant_id == tenant_id and ctx.channel_connection_id == channel_connection_id and status == "connected":
                return ctx
        return None


# ============================================================================
# LEADS
# ============================================================================

class MemoryLeadStore:
    def __init__(self):
        self.leads: dict[str, Lead] = {}
        self._locks = KeyedLocks()

    def _active(self, tenant_id: str):
        return (lead for lead in self.leads.values() if lead.tenant_id == tenant_id and lead.deleted_at is None)

    async def find_lead(self, tenant_id: str, channel: Channel, external_id: str) -> Optional[Lead]:
        column = LEAD_IDENTITY_COLUMNS[Channel(channel)]
        for lead in self._active(tenant_id):
            if getattr(lead, column) == external_id:
                return lead
        return None

    async def find_lead_by_identities(self, tenant_id: str, identities: dict[str, str]) -> Optional[Lead]:
        for column in IDENTITY_MATCH_ORDER:
            value = identities.get(column)
            if not value:
                continue
            for lead in self._active(tenant_id):
                if getattr(lead, column) == value:
                    return lead
        return None

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
        channel = Channel(channel)
        column = LEAD_IDENTITY_COLUMNS[channel]

        async with self._locks.hold(f"lead:{tenant_id}:{channel.value}:{external_id}"):
            existing = await self.find_lead(tenant_id, channel, external_id)
            # simulate the store round trip between check and insert
            await asyncio.sleep(0)
            if existing is not None:
                if existing.name in GENERIC_LEAD_NAMES and name not in GENERIC_LEAD_NAMES:
                    existing.name = name
                return LeadResolution(lead_id=existing.id, is_new=False, name=existing.name)

            if link_to_lead_id:
                target = self.leads.get(link_to_lead_id)
                if target is not None and target.tenant_id == tenant_id and target.deleted_at is None \
                        and getattr(target, column) is None:
                    setattr(target, column, external_id)
                    return LeadResolution(lead_id=target.id, is_new=False, was_cross_linked=True, name=target.name)

            lead = Lead(
                id=_new_id(),
                tenant_id=tenant_id,
                branch_id=branch_id,
                name=name,
                source="other" if channel == Channel.TIKTOK else channel.value,
                source_details={"platform": channel.value} if channel == Channel.TIKTOK else {},
                first_contact_at=_now(),
            )
            setattr(lead, column, external_id)
            self.leads[lead.id] = lead
            return LeadResolution(lead_id=lead.id, is_new=True, name=name)

    async def rename_if_generic(self, tenant_id: str, lead_id: str, name: str) -> bool:
        lead = self.leads.get(lead_id)
        if lead is None or lead.tenant_id != tenant_id or lead.name not in GENERIC_LEAD_NAMES:
            return False
        lead.name = name
        return True

    def soft_delete(self, lead_id: str) -> None:
        self.leads[lead_id].deleted_at = _now()


# ============================================================================
# CONVERSATIONS
# ============================================================================

class MemoryConversationStore:
    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self._locks = KeyedLocks()

    async def find_or_create_or_reopen(
        self,
        tenant_id: str,
        branch_id: Optional[str],
        lead_id: str,
        channel: Channel,
        channel_connection_id: str,
        ai_enabled: bool,
    ) -> ConversationResolution:
        channel = Channel(channel)
        async with self._locks.hold(f"conv:{tenant_id}:{lead_id}:{channel.value}"):
            candidates = [
                c for c in self.conversations.values()
                if c.tenant_id == tenant_id and c.lead_id == lead_id and c.channel == channel
            ]
            await asyncio.sleep(0)
            latest = max(candidates, key=lambda c: c.created_at) if candidates else None

            if latest is not None and latest.status in TERMINAL_CONVERSATION_STATUSES:
                latest.status = ConversationStatus.ACTIVE.value
                latest.ai_handling = ai_enabled
                return ConversationResolution(conversation_id=latest.id, is_new=False, was_reopened=True)

            if latest is not None:
                # active / pending / waiting_response / escalated: still the live thread
                return ConversationResolution(conversation_id=latest.id, is_new=False)

            now = _now()
            conversation = Conversation(
                id=_new_id(),
                tenant_id=tenant_id,
                branch_id=branch_id,
                lead_id=lead_id,
                channel=channel,
                channel_connection_id=channel_connection_id,
                status=ConversationStatus.ACTIVE.value,
                ai_handling=ai_enabled,
                started_at=now,
                last_message_at=now,
                created_at=now,
            )
            self.conversations[conversation.id] = conversation
            return ConversationResolution(conversation_id=conversation.id, is_new=True)

    def set_status(self, conversation_id: str, status: str) -> None:
        self.conversations[conversation_id].status = status

    def open_for(self, tenant_id: str, lead_id: str, channel: Channel) -> list[Conversation]:
        return [
            c for c in self.conversations.values()
            if c.tenant_id == tenant_id and c.lead_id == lead_id
            and c.channel == Channel(channel) and c.status in OPEN_CONVERSATION_STATUSES
        ]


# ============================================================================
# MESSAGES
# ============================================================================

class MemoryMessageStore:
    def __init__(self, conversations: MemoryConversationStore):
        self.conversations = conversations
        self.messages: dict[str, StoredMessage] = {}
        self._by_provider_id: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def find_by_provider_id(self, tenant_id: str, provider_message_id: str) -> Optional[str]:
        return self._by_provider_id.get((tenant_id, provider_message_id))

    async def save_incoming(
        self,
        tenant_id: str,
        conversation_id: str,
        lead_id: str,
        msg: InboundMessage,
    ) -> SaveResult:
        async with self._lock:
            key = (tenant_id, msg.provider_message_id)
            existing = self._by_provider_id.get(key)
            if existing is not None:
                return SaveResult(message_id=existing, is_duplicate=True)

            stored = StoredMessage(
                id=_new_id(),
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                channel=msg.channel,
                content=msg.text,
                kind=msg.kind.value,
                sender_type="lead",
                sender_id=lead_id,
                media_url=msg.media_url,
                status="received",
                provider_message_id=msg.provider_message_id,
                metadata=dict(msg.metadata),
                created_at=_now(),
            )
            self.messages[stored.id] = stored
            self._by_provider_id[key] = stored.id

            conversation = self.conversations.conversations[conversation_id]
            conversation.message_count += 1
            conversation.last_message_at = stored.created_at
            return SaveResult(message_id=stored.id, is_duplicate=False)

    def record_outbound(
        self,
        tenant_id: str,
        conversation_id: str,
        provider_message_id: str,
        content: str = "",
        *,
        status: str = "sent",
    ) -> StoredMessage:
        stored = StoredMessage(
            id=_new_id(),
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            channel=self.conversations.conversations[conversation_id].channel,
            content=content,
            kind="text",
            sender_type="ai",
            status=status,
            provider_message_id=provider_message_id,
            created_at=_now(),
        )
        self.messages[stored.id] = stored
        self._by_provider_id[(tenant_id, provider_message_id)] = stored.id
        return stored

    async def mark_outbound_sent(self, tenant_id: str, message_id: str, provider_message_id: str) -> None:
        stored = self.messages.get(message_id)
        if stored is None or stored.tenant_id != tenant_id:
            return
        self.messages[message_id] = replace(stored, status="sent", provider_message_id=provider_message_id)
        self._by_provider_id[(tenant_id, provider_message_id)] = message_id

    async def mark_outbound_failed(self, tenant_id: str, message_id: str, error_message: str) -> None:
        stored = self.messages.get(message_id)
        if stored is None or stored.tenant_id != tenant_id:
            return
        self.messages[message_id] = replace(stored, status="failed", error_message=error_message)

    async def apply_status(self, tenant_id: str, status: DeliveryStatus) -> bool:
        message_id = self._by_provider_id.get((tenant_id, status.provider_message_id))
        if message_id is None:
            return False
        stored = self.messages[message_id]

        if status.status == "failed":
            self.messages[message_id] = replace(stored, status="failed", error_message=status.error_message)
            return True

        current_rank = DELIVERY_STATUS_ORDER.get(stored.status, -1)
        if stored.status == "failed" or DELIVERY_STATUS_ORDER[status.status] <= current_rank:
            return False
        self.messages[message_id] = replace(stored, status=status.status)
        return True


# ============================================================================
# JOBS
# ============================================================================

class MemoryJobQueue:
    def __init__(self):
        self.jobs: list[dict[str, Any]] = []

    async def enqueue(
        self,
        tenant_id: str,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 1,
        max_attempts: int = 3,
        delay_seconds: float = 0,
    ) -> str:
        now = _now()
        job = {
            "id": _new_id(),
            "tenant_id": tenant_id,
            "job_type": job_type,
            "payload": payload,
            "status": "pending",
            "priority": priority,
            "attempts": 0,
            "max_attempts": max_attempts,
            "scheduled_for": now + timedelta(seconds=float(delay_seconds)),
            "created_at": now,
        }
        self.jobs.append(job)
        return job["id"]
