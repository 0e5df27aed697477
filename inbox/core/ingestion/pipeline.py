# inbox/core/ingestion/pipeline.py
"""
Generic ingestion pipeline shared by every channel.

Per inbound message:
    Tenant Resolver -> Identity Resolver -> Conversation Manager
    -> Message Store -> Job Dispatcher

Per delivery status:
    Tenant Resolver -> Status Reconciler

Messages of one batch are grouped by sender. Senders run concurrently;
messages of the same sender run in arrival order.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from inbox.core.ingestion.dispatcher import JobDispatcher
from inbox.core.ingestion.domain import (
    Channel,
    ChannelContext,
    DeliveryStatus,
    DELIVERY_STATUSES,
    EventOutcome,
    InboundMessage,
    NormalizedBatch,
)
from inbox.core.ingestion.errors import (
    DuplicateEvent,
    TenantResolutionError,
    TransientStoreError,
)
from inbox.core.ingestion.identity import IdentityResolver
from inbox.core.ingestion.ports import (
    AsyncConversationStore,
    AsyncJobQueue,
    AsyncLeadStore,
    AsyncMessageStore,
    AsyncProfileFetcher,
    AsyncTenantResolver,
)
from inbox.infra.db_resilience_async import is_transient_error
from inbox.infra.logging_config import LogContext, get_logger, mask_identifier
from inbox.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


@dataclass
class BatchResult:
    outcomes: list[EventOutcome] = field(default_factory=list)
    statuses_applied: int = 0
    statuses_ignored: int = 0

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def has_transient_failure(self) -> bool:
        return any(o.status == "transient_error" for o in self.outcomes)

    def summary(self) -> dict:
        return {
            "processed": self.count("processed"),
            "duplicates": self.count("duplicate"),
            "skipped": self.count("skipped"),
            "errors": self.count("error") + self.count("transient_error"),
            "statuses": self.statuses_applied,
        }


class IngestionPipeline:
    """Application service wiring the ingestion components together."""

    def __init__(
        self,
        tenants: AsyncTenantResolver,
        leads: AsyncLeadStore,
        conversations: AsyncConversationStore,
        messages: AsyncMessageStore,
        jobs: AsyncJobQueue,
        *,
        profiles: Optional[AsyncProfileFetcher] = None,
        job_priority: int = 1,
        job_max_attempts: int = 3,
    ):
        self.tenants = tenants
        self.conversations = conversations
        self.messages = messages
        self.identity = IdentityResolver(leads, profiles)
        self.dispatcher = JobDispatcher(jobs, priority=job_priority, max_attempts=job_max_attempts)

    # ------------------------------------------------------------------
    # Batch entry point
    # ------------------------------------------------------------------

    async def process_batch(
        self,
        tenant_slug: str,
        channel: Channel,
        batch: NormalizedBatch,
        *,
        request_id: Optional[str] = None,
    ) -> BatchResult:
        channel = Channel(channel)
        result = BatchResult()
        contexts: dict[str, Optional[ChannelContext]] = {}

        endpoints = {m.endpoint_id for m in batch.messages} | {s.endpoint_id for s in batch.statuses}
        for endpoint_id in endpoints:
            contexts[endpoint_id] = await self._resolve(tenant_slug, channel, endpoint_id, request_id)

        # Group by sender, keeping arrival order inside each group
        streams: "OrderedDict[tuple[str, str], list[InboundMessage]]" = OrderedDict()
        for msg in batch.messages:
            ctx = contexts.get(msg.endpoint_id)
            if ctx is None:
                result.outcomes.append(EventOutcome(
                    provider_message_id=msg.provider_message_id,
                    status="skipped",
                    detail="channel not resolved",
                ))
                continue
            streams.setdefault((msg.endpoint_id, msg.sender_id), []).append(msg)

        stream_results = await asyncio.gather(*[
            self._process_stream(contexts[endpoint_id], msgs, request_id)
            for (endpoint_id, _sender), msgs in streams.items()
        ])
        for outcomes in stream_results:
            result.outcomes.extend(outcomes)

        for status in batch.statuses:
            ctx = contexts.get(status.endpoint_id)
            if ctx is None:
                result.statuses_ignored += 1
                continue
            if await self.apply_status(ctx.tenant_id, status):
                result.statuses_applied += 1
            else:
                result.statuses_ignored += 1

        return result

    async def _resolve(
        self,
        tenant_slug: str,
        channel: Channel,
        endpoint_id: str,
        request_id: Optional[str],
    ) -> Optional[ChannelContext]:
        try:
            return await self.tenants.resolve(tenant_slug, channel, endpoint_id)
        except TenantResolutionError as exc:
            LogContext(logger, channel=channel.value, request_id=request_id).warning(
                f"Skipping segment: {exc.__class__.__name__} slug={tenant_slug} endpoint={endpoint_id}"
            )
            inc_counter("webhook_segments_skipped_total", channel=channel.value, reason=exc.__class__.__name__)
            return None
        except Exception as exc:
            LogContext(logger, channel=channel.value, request_id=request_id).error(
                f"Tenant resolution failed: {exc.__class__.__name__} slug={tenant_slug}",
                exc_info=True,
            )
            if is_transient_error(exc):
                raise TransientStoreError(str(exc)) from exc
            return None

    async def _process_stream(
        self,
        ctx: ChannelContext,
        msgs: list[InboundMessage],
        request_id: Optional[str],
    ) -> list[EventOutcome]:
        return [await self.process_message(ctx, msg, request_id=request_id) for msg in msgs]

    # ------------------------------------------------------------------
    # Single message
    # ------------------------------------------------------------------

    async def process_message(
        self,
        ctx: ChannelContext,
        msg: InboundMessage,
        *,
        request_id: Optional[str] = None,
    ) -> EventOutcome:
        """Run one inbound message through the pipeline. Never raises."""
        log_ctx = LogContext(
            logger,
            tenant_id=ctx.tenant_id,
            channel=ctx.channel.value,
            chat_id=msg.sender_id,
            request_id=request_id,
        )
        outcome = EventOutcome(provider_message_id=msg.provider_message_id, status="processed")

        try:
            with AppMetrics.track_processing_time(ctx.channel.value):
                await self._run(ctx, msg, outcome, log_ctx)
            AppMetrics.inbound_received(ctx.tenant_id, ctx.channel.value)
            log_ctx.info(
                f"Message processed: from={mask_identifier(msg.sender_id)}, kind={msg.kind.value}, "
                f"lead={outcome.lead_id}, conv={outcome.conversation_id}, msg={outcome.message_id}, "
                f"ai_queued={outcome.job_id is not None}"
            )
        except DuplicateEvent as dup:
            outcome.status = "duplicate"
            outcome.message_id = dup.message_id
            AppMetrics.duplicate_event(ctx.tenant_id, ctx.channel.value)
            log_ctx.info(f"Duplicate event ignored: provider_id={msg.provider_message_id}")
        except Exception as exc:
            transient = is_transient_error(exc)
            outcome.status = "transient_error" if transient else "error"
            outcome.detail = exc.__class__.__name__
            if transient:
                AppMetrics.database_error("process_message")
            inc_counter("inbound_errors_total", channel=ctx.channel.value, transient=str(transient).lower())
            log_ctx.error(
                f"Message processing failed: {exc.__class__.__name__}, provider_id={msg.provider_message_id}",
                exc_info=True,
            )
        return outcome

    async def _run(
        self,
        ctx: ChannelContext,
        msg: InboundMessage,
        outcome: EventOutcome,
        log_ctx: LogContext,
    ) -> None:
        known = await self.messages.find_by_provider_id(ctx.tenant_id, msg.provider_message_id)
        if known is not None:
            raise DuplicateEvent(msg.provider_message_id, known)

        lead = await self.identity.find_or_create(
            ctx.tenant_id,
            ctx.branch_id,
            ctx.channel,
            msg.sender_id,
            msg.sender_name,
            access_token=ctx.access_token,
        )
        outcome.lead_id = lead.lead_id
        outcome.lead_is_new = lead.is_new

        conversation = await self.conversations.find_or_create_or_reopen(
            ctx.tenant_id,
            ctx.branch_id,
            lead.lead_id,
            ctx.channel,
            ctx.channel_connection_id,
            ctx.ai_enabled,
        )
        outcome.conversation_id = conversation.conversation_id
        outcome.conversation_is_new = conversation.is_new
        outcome.conversation_reopened = conversation.was_reopened
        if conversation.is_new:
            AppMetrics.conversation_created(ctx.tenant_id, ctx.channel.value)
        elif conversation.was_reopened:
            AppMetrics.conversation_reopened(ctx.tenant_id, ctx.channel.value)
            log_ctx.info(f"Conversation reopened: {conversation.conversation_id}")

        saved = await self.messages.save_incoming(ctx.tenant_id, conversation.conversation_id, lead.lead_id, msg)
        if saved.is_duplicate:
            raise DuplicateEvent(msg.provider_message_id, saved.message_id)
        outcome.message_id = saved.message_id

        outcome.job_id = await self.dispatcher.dispatch_for_message(
            ctx, conversation, lead.lead_id, saved.message_id,
        )

    # ------------------------------------------------------------------
    # Status Reconciler
    # ------------------------------------------------------------------

    async def apply_status(self, tenant_id: str, status: DeliveryStatus) -> bool:
        """
        Apply a delivery receipt to a message of ``tenant_id`` only.

        Unknown ids are a normal no-op. Failures are logged and swallowed:
        delivery receipts are not on the critical path.
        """
        if status.status not in DELIVERY_STATUSES:
            logger.debug(f"Ignoring unknown delivery status: {status.status}")
            return False
        try:
            updated = await self.messages.apply_status(tenant_id, status)
        except Exception as exc:
            logger.warning(
                f"Status update failed: {exc.__class__.__name__}, provider_id={status.provider_message_id}",
                extra={"tenant_id": tenant_id},
            )
            inc_counter("status_update_errors_total", channel=Channel(status.channel).value)
            return False

        if updated:
            AppMetrics.status_applied(Channel(status.channel).value, status.status)
        return updated
