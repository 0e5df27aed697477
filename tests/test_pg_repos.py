# tests/test_pg_repos.py
"""
Tests for the asyncpg repositories with a mocked connection.

These check the statements each operation issues and how results are
interpreted; locking and uniqueness themselves are Postgres' job.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from inbox.core.ingestion.domain import Channel, DeliveryStatus, InboundMessage, Lead, MessageKind
from inbox.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository, conversation_lock_key
from inbox.infra.pg_job_repo_async import STALE_SEND_ERROR, AsyncPostgresJobRepository, _row_to_job
from inbox.infra.pg_lead_repo_async import AsyncPostgresLeadRepository, lead_lock_key
from inbox.infra.pg_message_repo_async import AsyncPostgresMessageRepository, _message_metadata


def _mock_conn() -> AsyncMock:
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="UPDATE 0")
    # conn.transaction() is used as a savepoint context manager
    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=None)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=savepoint)
    return conn


def _patch_conn(module: str, conn):
    patcher = patch(f"inbox.infra.{module}.safe_db_conn")
    mock_ctx = patcher.start()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=conn)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return patcher, mock_ctx


def _statements(conn) -> list[str]:
    return [" ".join(c.args[0].split()) for c in conn.execute.call_args_list] + \
        [" ".join(c.args[0].split()) for c in conn.fetchrow.call_args_list]


def _inbound() -> InboundMessage:
    return InboundMessage(
        channel=Channel.WHATSAPP,
        sender_id="+5215512345678",
        provider_message_id="wamid.1",
        endpoint_id="pnid",
        timestamp=datetime.now(timezone.utc),
        kind=MessageKind.IMAGE,
        text="[Imagen recibida]",
        media_type="image/jpeg",
        provider_media_id="media-1",
        sender_name="Maria",
    )


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

class TestLeadRepository:
    @pytest.mark.asyncio
    async def test_creates_lead_under_advisory_lock(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, {"id": "lead-1"}])
        patcher, mock_ctx = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.WHATSAPP, "+521", "Maria",
            )
        finally:
            patcher.stop()

        assert res.lead_id == "lead-1"
        assert res.is_new is True
        mock_ctx.assert_called_with(autocommit=False)
        lock_call = conn.execute.call_args_list[0]
        assert "pg_advisory_xact_lock" in lock_call.args[0]
        assert lock_call.args[1] == lead_lock_key("t1", Channel.WHATSAPP, "+521") == "lead:t1:whatsapp:+521"

        insert = conn.fetchrow.call_args_list[1]
        assert "INSERT INTO leads" in insert.args[0]
        assert "phone" in insert.args[0]
        assert insert.args[5] == "whatsapp"

    @pytest.mark.asyncio
    async def test_tiktok_lead_source_details(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, {"id": "lead-2"}])
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.TIKTOK, "open-1", "Usuario TikTok",
            )
        finally:
            patcher.stop()

        insert = conn.fetchrow.call_args_list[1]
        assert "tiktok_open_id" in insert.args[0]
        assert insert.args[5] == "other"
        assert json.loads(insert.args[6]) == {"platform": "tiktok"}

    @pytest.mark.asyncio
    async def test_existing_lead_is_returned(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "lead-1", "name": "Maria"})
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.INSTAGRAM, "psid-1", "Otro",
            )
        finally:
            patcher.stop()

        assert res.is_new is False
        assert res.name == "Maria"
        assert not any("INSERT" in s for s in _statements(conn))

    @pytest.mark.asyncio
    async def test_existing_generic_name_is_replaced(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "lead-1", "name": "Desconocido"})
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.INSTAGRAM, "psid-1", "Ana",
            )
        finally:
            patcher.stop()

        assert res.name == "Ana"
        assert any(s.startswith("UPDATE leads SET name") for s in _statements(conn))

    @pytest.mark.asyncio
    async def test_cross_channel_link(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, {"id": "lead-wa", "name": "Maria"}])
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.INSTAGRAM, "psid-1", "Maria", link_to_lead_id="lead-wa",
            )
        finally:
            patcher.stop()

        assert res.lead_id == "lead-wa"
        assert res.was_cross_linked is True
        update = conn.fetchrow.call_args_list[1].args[0]
        assert "instagram_psid IS NULL" in update
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_link_conflict_falls_back_to_create(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[
            None,
            asyncpg.UniqueViolationError("duplicate key"),
            {"id": "lead-new"},
        ])
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await AsyncPostgresLeadRepository().find_or_create_lead(
                "t1", None, Channel.INSTAGRAM, "psid-1", "Maria", link_to_lead_id="lead-wa",
            )
        finally:
            patcher.stop()

        assert res.lead_id == "lead-new"
        assert res.is_new is True

    @pytest.mark.asyncio
    async def test_unique_violation_reselects(self):
        repo = AsyncPostgresLeadRepository()
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, asyncpg.UniqueViolationError("duplicate key")])
        existing = Lead(id="lead-other", tenant_id="t1", name="Maria")
        repo.find_lead = AsyncMock(return_value=existing)
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            res = await repo.find_or_create_lead("t1", None, Channel.WHATSAPP, "+521", "Maria")
        finally:
            patcher.stop()

        assert res.lead_id == "lead-other"
        assert res.is_new is False

    @pytest.mark.asyncio
    async def test_rename_if_generic(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(return_value="UPDATE 1")
        patcher, _ = _patch_conn("pg_lead_repo_async", conn)
        try:
            assert await AsyncPostgresLeadRepository().rename_if_generic("t1", "lead-1", "Ana") is True
        finally:
            patcher.stop()
        assert "Desconocido" in conn.execute.call_args.args[4]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class TestConversationRepository:
    @pytest.mark.asyncio
    async def test_creates_when_none(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, {"id": "conv-1"}])
        patcher, _ = _patch_conn("pg_conversation_repo_async", conn)
        try:
            res = await AsyncPostgresConversationRepository().find_or_create_or_reopen(
                "t1", None, "lead-1", Channel.WHATSAPP, "cc-1", True,
            )
        finally:
            patcher.stop()

        assert res.is_new is True
        assert conn.execute.call_args_list[0].args[1] == conversation_lock_key("t1", "lead-1", Channel.WHATSAPP)

    @pytest.mark.asyncio
    async def test_reopens_resolved(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "conv-1", "status": "resolved"})
        patcher, _ = _patch_conn("pg_conversation_repo_async", conn)
        try:
            res = await AsyncPostgresConversationRepository().find_or_create_or_reopen(
                "t1", None, "lead-1", Channel.WHATSAPP, "cc-2", False,
            )
        finally:
            patcher.stop()

        assert res.conversation_id == "conv-1"
        assert res.was_reopened is True
        update = conn.execute.call_args_list[1]
        assert "status = 'active'" in update.args[0]
        assert "resolved_at = NULL" in update.args[0]
        assert update.args[3:] == (False, "cc-2")

    @pytest.mark.asyncio
    async def test_reuses_escalated(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "conv-1", "status": "escalated"})
        patcher, _ = _patch_conn("pg_conversation_repo_async", conn)
        try:
            res = await AsyncPostgresConversationRepository().find_or_create_or_reopen(
                "t1", None, "lead-1", Channel.WHATSAPP, "cc-1", True,
            )
        finally:
            patcher.stop()

        assert res.is_new is False
        assert res.was_reopened is False
        assert not any("status = 'active'" in s for s in _statements(conn))


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TestMessageRepository:
    def test_metadata_carries_media_and_reply(self):
        metadata = _message_metadata(_inbound())
        assert metadata["provider_media_id"] == "media-1"
        assert metadata["media_type"] == "image/jpeg"
        assert metadata["sender_name"] == "Maria"

    @pytest.mark.asyncio
    async def test_insert_bumps_counters(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "msg-1"})
        patcher, mock_ctx = _patch_conn("pg_message_repo_async", conn)
        try:
            res = await AsyncPostgresMessageRepository().save_incoming("t1", "conv-1", "lead-1", _inbound())
        finally:
            patcher.stop()

        assert res.message_id == "msg-1"
        assert res.is_duplicate is False
        mock_ctx.assert_called_with(autocommit=False)
        statements = _statements(conn)
        assert any("FOR UPDATE" in s for s in statements)
        assert any("message_count = message_count + 1" in s for s in statements)
        assert any("ON CONFLICT (tenant_id, provider_message_id)" in s for s in statements)

    @pytest.mark.asyncio
    async def test_duplicate_does_not_bump(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, {"id": "msg-existing"}])
        patcher, _ = _patch_conn("pg_message_repo_async", conn)
        try:
            res = await AsyncPostgresMessageRepository().save_incoming("t1", "conv-1", "lead-1", _inbound())
        finally:
            patcher.stop()

        assert res.is_duplicate is True
        assert res.message_id == "msg-existing"
        assert not any("message_count" in s for s in _statements(conn))

    @pytest.mark.asyncio
    async def test_status_update_is_tenant_scoped(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(return_value="UPDATE 1")
        patcher, _ = _patch_conn("pg_message_repo_async", conn)
        try:
            updated = await AsyncPostgresMessageRepository().apply_status(
                "t1", DeliveryStatus(Channel.WHATSAPP, "pnid", "wamid.out", "delivered"),
            )
        finally:
            patcher.stop()

        assert updated is True
        sql, *args = conn.execute.call_args.args
        assert "WHERE tenant_id = $1 AND provider_message_id = $2" in sql
        assert "status <> 'failed'" in sql
        assert args == ["t1", "wamid.out", "delivered"]

    @pytest.mark.asyncio
    async def test_stale_status_reports_no_update(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(return_value="UPDATE 0")
        patcher, _ = _patch_conn("pg_message_repo_async", conn)
        try:
            updated = await AsyncPostgresMessageRepository().apply_status(
                "t1", DeliveryStatus(Channel.WHATSAPP, "pnid", "wamid.out", "sent"),
            )
        finally:
            patcher.stop()
        assert updated is False

    @pytest.mark.asyncio
    async def test_failed_status_records_error(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(return_value="UPDATE 1")
        patcher, _ = _patch_conn("pg_message_repo_async", conn)
        try:
            await AsyncPostgresMessageRepository().apply_status(
                "t1", DeliveryStatus(Channel.WHATSAPP, "pnid", "wamid.out", "failed", error_message="expired"),
            )
        finally:
            patcher.stop()

        sql, *args = conn.execute.call_args.args
        assert "status = 'failed'" in sql
        assert args == ["t1", "wamid.out", "expired"]


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class TestJobRepository:
    def test_row_to_job_parses_json_string(self):
        now = datetime.now(timezone.utc)
        row = {
            "id": "job-1", "tenant_id": "t1", "job_type": "send_message",
            "payload": '{"recipient_id": "psid-1"}', "status": "pending", "priority": 1,
            "attempts": 0, "max_attempts": 3, "error_message": None,
            "scheduled_for": now, "created_at": now, "started_at": None, "completed_at": None,
        }
        job = _row_to_job(row)
        assert job.payload == {"recipient_id": "psid-1"}
        assert job.max_attempts == 3

    @pytest.mark.asyncio
    async def test_enqueue_with_delay(self):
        conn = _mock_conn()
        conn.fetchrow = AsyncMock(return_value={"id": "job-uuid"})
        patcher, _ = _patch_conn("pg_job_repo_async", conn)
        try:
            job_id = await AsyncPostgresJobRepository().enqueue(
                "t1", "ai_response", {"conversation_id": "c1"}, priority=1, max_attempts=3, delay_seconds=30,
            )
        finally:
            patcher.stop()

        assert job_id == "job-uuid"
        sql, *args = conn.fetchrow.call_args.args
        assert "make_interval(secs => $6)" in sql
        assert args == ["t1", "ai_response", '{"conversation_id": "c1"}', 1, 3, 30.0]

    @pytest.mark.asyncio
    async def test_reset_stale_parses_count(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(side_effect=["UPDATE 1", "UPDATE 3"])
        patcher, _ = _patch_conn("pg_job_repo_async", conn)
        try:
            assert await AsyncPostgresJobRepository().reset_stale_processing(60, ["send_message"]) == 4
        finally:
            patcher.stop()

    @pytest.mark.asyncio
    async def test_reset_stale_fails_send_jobs_instead_of_requeueing(self):
        conn = _mock_conn()
        conn.execute = AsyncMock(side_effect=["UPDATE 2", "UPDATE 0"])
        patcher, _ = _patch_conn("pg_job_repo_async", conn)
        try:
            await AsyncPostgresJobRepository().reset_stale_processing(300, ["send_message"])
        finally:
            patcher.stop()

        fail_sql, *fail_args = conn.execute.call_args_list[0].args
        assert "SET status = 'failed'" in fail_sql
        assert "job_type = $4" in fail_sql
        assert fail_args == [300, ["send_message"], STALE_SEND_ERROR, "send_message"]
        assert "ambiguous" in STALE_SEND_ERROR

        requeue_sql, *requeue_args = conn.execute.call_args_list[1].args
        assert "SET status = 'pending'" in requeue_sql
        assert "job_type <> $3" in requeue_sql
        assert requeue_args == [300, ["send_message"], "send_message"]
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_reset_stale_is_scoped_to_job_types(self):
        conn = _mock_conn()
        patcher, _ = _patch_conn("pg_job_repo_async", conn)
        try:
            await AsyncPostgresJobRepository().reset_stale_processing(60, ("send_message",))
        finally:
            patcher.stop()

        for call in conn.execute.call_args_list:
            sql, _timeout, types = call.args[:3]
            assert "job_type = ANY($2::text[])" in sql
            assert types == ["send_message"]
