# tests/test_dispatcher.py
from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from inbox.core.ingestion.dispatcher import (
    JOB_AI_RESPONSE,
    JOB_SEND_MESSAGE,
    JobDispatcher,
    response_delay,
)
from inbox.core.ingestion.domain import ConversationResolution, SendMessagePayload


def _queue(job_id: str = "job-1") -> AsyncMock:
    jobs = AsyncMock()
    jobs.enqueue = AsyncMock(return_value=job_id)
    return jobs


class TestResponseDelay:
    def test_first_and_subsequent(self, whatsapp_ctx):
        assert response_delay(whatsapp_ctx, True) == 30
        assert response_delay(whatsapp_ctx, False) == 5

    def test_negative_is_clamped(self, whatsapp_ctx):
        ctx = replace(whatsapp_ctx, subsequent_message_delay_seconds=-3)
        assert response_delay(ctx, False) == 0


class TestDispatchForMessage:
    @pytest.mark.asyncio
    async def test_new_conversation_queues_first_message_job(self, whatsapp_ctx):
        jobs = _queue()
        dispatcher = JobDispatcher(jobs, priority=2, max_attempts=4)

        job_id = await dispatcher.dispatch_for_message(
            whatsapp_ctx, ConversationResolution("conv-1", is_new=True), "lead-1", "msg-1",
        )

        assert job_id == "job-1"
        args, kwargs = jobs.enqueue.call_args
        assert args[0] == "tenant-a"
        assert args[1] == JOB_AI_RESPONSE
        assert args[2] == {
            "conversation_id": "conv-1",
            "message_id": "msg-1",
            "lead_id": "lead-1",
            "tenant_id": "tenant-a",
            "channel": "whatsapp",
            "channel_connection_id": "cc-wa-1",
            "is_first_message": True,
            "ai_personality_override": None,
            "custom_instructions_override": None,
        }
        assert kwargs == {"priority": 2, "max_attempts": 4, "delay_seconds": 30}

    @pytest.mark.asyncio
    async def test_existing_conversation_uses_subsequent_delay(self, whatsapp_ctx):
        jobs = _queue()
        dispatcher = JobDispatcher(jobs)

        await dispatcher.dispatch_for_message(
            whatsapp_ctx, ConversationResolution("conv-1", is_new=False, was_reopened=True), "lead-1", "msg-2",
        )

        args, kwargs = jobs.enqueue.call_args
        assert args[2]["is_first_message"] is False
        assert kwargs["delay_seconds"] == 5

    @pytest.mark.asyncio
    async def test_ai_disabled_queues_nothing(self, whatsapp_ctx):
        jobs = _queue()
        dispatcher = JobDispatcher(jobs)

        job_id = await dispatcher.dispatch_for_message(
            replace(whatsapp_ctx, ai_enabled=False), ConversationResolution("conv-1", is_new=True), "lead-1", "msg-1",
        )

        assert job_id is None
        jobs.enqueue.assert_not_awaited()


class TestEnqueueSend:
    @pytest.mark.asyncio
    async def test_send_job(self):
        jobs = _queue("job-9")
        dispatcher = JobDispatcher(jobs)
        payload = SendMessagePayload(
            conversation_id="conv-1",
            tenant_id="tenant-a",
            channel="instagram",
            channel_connection_id="cc-ig-1",
            recipient_id="psid-1",
            content="Hola!",
            message_id="msg-out",
        )

        assert await dispatcher.enqueue_send(payload) == "job-9"
        args, kwargs = jobs.enqueue.call_args
        assert args[1] == JOB_SEND_MESSAGE
        assert args[2]["recipient_id"] == "psid-1"
        assert args[2]["message_id"] == "msg-out"
        assert "delay_seconds" not in kwargs
