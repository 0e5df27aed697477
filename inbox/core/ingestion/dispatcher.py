# inbox/core/ingestion/dispatcher.py
from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from inbox.core.ingestion.domain import (
    AIResponsePayload,
    ChannelContext,
    ConversationResolution,
    SendMessagePayload,
)
from inbox.core.ingestion.ports import AsyncJobQueue
from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)

JOB_AI_RESPONSE = "ai_response"
JOB_SEND_MESSAGE = "send_message"


def response_delay(ctx: ChannelContext, is_first_message: bool) -> int:
    """Seconds to wait before the AI replies, per channel-connection policy."""
    delay = ctx.first_message_delay_seconds if is_first_message else ctx.subsequent_message_delay_seconds
    return max(int(delay or 0), 0)


class JobDispatcher:
    """
    Enqueues downstream work. Retries are the worker's concern
    (``max_attempts`` on the row), never the dispatcher's.
    """

    def __init__(self, jobs: AsyncJobQueue, *, priority: int = 1, max_attempts: int = 3):
        self.jobs = jobs
        self.priority = priority
        self.max_attempts = max_attempts

    async def enqueue_ai_response(self, payload: AIResponsePayload, delay_seconds: int = 0) -> str:
        job_id = await self.jobs.enqueue(
            payload.tenant_id,
            JOB_AI_RESPONSE,
            asdict(payload),
            priority=self.priority,
            max_attempts=self.max_attempts,
            delay_seconds=delay_seconds,
        )
        delay_info = f" (delay: {delay_seconds}s)" if delay_seconds > 0 else ""
        logger.info(
            f"AI response job queued: {job_id}{delay_info}, first={payload.is_first_message}",
            extra={"tenant_id": payload.tenant_id, "conversation_id": payload.conversation_id},
        )
        return job_id

    async def enqueue_send(self, payload: SendMessagePayload) -> str:
        job_id = await self.jobs.enqueue(
            payload.tenant_id,
            JOB_SEND_MESSAGE,
            asdict(payload),
            priority=self.priority,
            max_attempts=self.max_attempts,
        )
        logger.info(
            f"Send job queued: {job_id}, channel={payload.channel}",
            extra={"tenant_id": payload.tenant_id, "conversation_id": payload.conversation_id},
        )
        return job_id

    async def dispatch_for_message(
        self,
        ctx: ChannelContext,
        conversation: ConversationResolution,
        lead_id: str,
        message_id: str,
    ) -> Optional[str]:
        """
        Queue the AI reply for a freshly stored inbound message.

        Returns the job id, or None when AI is disabled for the connection.
        """
        if not ctx.ai_enabled:
            logger.debug(
                f"AI disabled for connection {ctx.channel_connection_id}, no job queued",
                extra={"tenant_id": ctx.tenant_id},
            )
            return None

        is_first = conversation.is_new
        payload = AIResponsePayload(
            conversation_id=conversation.conversation_id,
            message_id=message_id,
            lead_id=lead_id,
            tenant_id=ctx.tenant_id,
            channel=ctx.channel.value,
            channel_connection_id=ctx.channel_connection_id,
            is_first_message=is_first,
            ai_personality_override=ctx.ai_personality_override,
            custom_instructions_override=ctx.custom_instructions_override,
        )
        return await self.enqueue_ai_response(payload, response_delay(ctx, is_first))
