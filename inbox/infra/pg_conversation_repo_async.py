# inbox/infra/pg_conversation_repo_async.py
"""
Async PostgreSQL conversation repository (asyncpg).
At most one open conversation per (tenant, lead, channel).
"""
from __future__ import annotations
from typing import Optional

from inbox.core.ingestion.domain import (
    Channel,
    ConversationResolution,
    ConversationStatus,
    TERMINAL_CONVERSATION_STATUSES,
)
from inbox.infra.db_async import advisory_xact_lock
from inbox.infra.db_resilience_async import safe_db_conn
from inbox.infra.logging_config import get_logger
from inbox.infra.metrics import AppMetrics

logger = get_logger(__name__)


def conversation_lock_key(tenant_id: str, lead_id: str, channel: Channel) -> str:
    return f"conv:{tenant_id}:{lead_id}:{Channel(channel).value}"


class AsyncPostgresConversationRepository:
    """Async PostgreSQL implementation of the conversation store using asyncpg."""

    async def find_or_create_or_reopen(
        self,
        tenant_id: str,
        branch_id: Optional[str],
        lead_id: str,
        channel: Channel,
        channel_connection_id: str,
        ai_enabled: bool,
    ) -> ConversationResolution:
        """
        Resolve the conversation a new inbound message belongs to.

        Looks at the latest conversation (by created_at) of this lead on this
        channel:
            active / pending              -> reused
            waiting_response / escalated  -> reused as-is
            resolved / archived           -> reopened as active
            none                          -> created
        """
        channel = Channel(channel)
        try:
            async with safe_db_conn(autocommit=False) as conn:
                await advisory_xact_lock(conn, conversation_lock_key(tenant_id, lead_id, channel))

                latest = await conn.fetchrow(
                    """
                    SELECT id, status FROM conversations
                    WHERE tenant_id = $1 AND lead_id = $2 AND channel = $3
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    tenant_id,
                    lead_id,
                    channel.value,
                )

                if latest and latest["status"] in TERMINAL_CONVERSATION_STATUSES:
                    await conn.execute(
                        """
                        UPDATE conversations
                        SET status = 'active', ai_handling = $3, channel_connection_id = $4,
                            resolved_at = NULL, updated_at = now()
                        WHERE tenant_id = $1 AND id = $2
                        """,
                        tenant_id,
                        latest["id"],
                        ai_enabled,
                        channel_connection_id,
                    )
                    logger.info(
                        f"Conversation reopened: id={latest['id']}, previous_status={latest['status']}",
                        extra={"tenant_id": tenant_id, "lead_id": lead_id},
                    )
                    return ConversationResolution(conversation_id=str(latest["id"]), is_new=False, was_reopened=True)

                if latest:
                    await conn.execute(
                        "UPDATE conversations SET updated_at = now() WHERE tenant_id = $1 AND id = $2",
                        tenant_id,
                        latest["id"],
                    )
                    return ConversationResolution(conversation_id=str(latest["id"]), is_new=False)

                row = await conn.fetchrow(
                    """
                    INSERT INTO conversations (
                        tenant_id, branch_id, lead_id, channel, channel_connection_id,
                        status, ai_handling, message_count, started_at, last_message_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, 0, now(), now())
                    RETURNING id
                    """,
                    tenant_id,
                    branch_id,
                    lead_id,
                    channel.value,
                    channel_connection_id,
                    ConversationStatus.ACTIVE.value,
                    ai_enabled,
                )
                return ConversationResolution(conversation_id=str(row["id"]), is_new=True)

        except Exception:
            logger.error(
                f"Failed to resolve conversation: channel={channel.value}",
                exc_info=True,
                extra={"tenant_id": tenant_id, "lead_id": lead_id},
            )
            AppMetrics.database_error("conversation_find_or_create")
            raise
