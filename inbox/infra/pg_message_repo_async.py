# inbox/infra/pg_message_repo_async.py
"""
Async PostgreSQL message repository (asyncpg).

Inbound messages are idempotent on (tenant_id, provider_message_id): the
unique index turns a redelivery into ``INSERT 0 0`` and the conversation
counter is only bumped when a row was actually inserted.
"""
from __future__ import annotations
import json
from typing import Any, Optional

from inbox.core.ingestion.domain import DeliveryStatus, InboundMessage, SaveResult
from inbox.infra.db_resilience_async import safe_db_conn
from inbox.infra.logging_config import get_logger
from inbox.infra.metrics import AppMetrics

logger = get_logger(__name__)


def _message_metadata(msg: InboundMessage) -> dict[str, Any]:
    metadata = dict(msg.metadata)
    if msg.reply_to_message_id:
        metadata["reply_to_message_id"] = msg.reply_to_message_id
    if msg.provider_media_id:
        metadata["provider_media_id"] = msg.provider_media_id
    if msg.media_type:
        metadata["media_type"] = msg.media_type
    if msg.sender_name:
        metadata["sender_name"] = msg.sender_name
    return metadata


class AsyncPostgresMessageRepository:
    """Async PostgreSQL implementation of the message store using asyncpg."""

    async def find_by_provider_id(self, tenant_id: str, provider_message_id: str) -> Optional[str]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT id FROM messages WHERE tenant_id = $1 AND provider_message_id = $2",
                tenant_id,
                provider_message_id,
            )
            return str(row["id"]) if row else None

    async def save_incoming(
        self,
        tenant_id: str,
        conversation_id: str,
        lead_id: str,
        msg: InboundMessage,
    ) -> SaveResult:
        """
        Store an inbound lead message and bump the conversation counters.

        Returns:
            SaveResult(is_duplicate=True) with the existing id when this
            provider message id was already stored for the tenant.
        """
        try:
            async with safe_db_conn(autocommit=False) as conn:
                # Serializes counter updates for this conversation
                await conn.execute(
                    "SELECT id FROM conversations WHERE tenant_id = $1 AND id = $2 FOR UPDATE",
                    tenant_id,
                    conversation_id,
                )

                row = await conn.fetchrow(
                    """
                    INSERT INTO messages (
                        tenant_id, conversation_id, channel, sender_type, sender_id,
                        content, message_type, media_url, status, provider_message_id, metadata
                    )
                    VALUES ($1, $2, $3, 'lead', $4, $5, $6, $7, 'received', $8, $9::jsonb)
                    ON CONFLICT (tenant_id, provider_message_id) WHERE provider_message_id IS NOT NULL
                    DO NOTHING
                    RETURNING id
                    """,
                    tenant_id,
                    conversation_id,
                    msg.channel.value,
                    lead_id,
                    msg.text,
                    msg.kind.value,
                    msg.media_url,
                    msg.provider_message_id,
                    json.dumps(_message_metadata(msg)),
                )

                if row is None:
                    existing = await conn.fetchrow(
                        "SELECT id FROM messages WHERE tenant_id = $1 AND provider_message_id = $2",
                        tenant_id,
                        msg.provider_message_id,
                    )
                    logger.info(f"Idempotency hit: provider_id={msg.provider_message_id}")
                    return SaveResult(message_id=str(existing["id"]), is_duplicate=True)

                await conn.execute(
                    """
                    UPDATE conversations
                    SET message_count = message_count + 1, last_message_at = now(), updated_at = now()
                    WHERE tenant_id = $1 AND id = $2
                    """,
                    tenant_id,
                    conversation_id,
                )
                await conn.execute(
                    "UPDATE leads SET last_contact_at = now() WHERE tenant_id = $1 AND id = $2",
                    tenant_id,
                    lead_id,
                )
                return SaveResult(message_id=str(row["id"]), is_duplicate=False)

        except Exception:
            logger.error(
                f"Failed to save inbound message: provider_id={msg.provider_message_id}",
                exc_info=True,
                extra={"tenant_id": tenant_id, "conversation_id": conversation_id},
            )
            AppMetrics.database_error("message_save_incoming")
            raise

    async def apply_status(self, tenant_id: str, status: DeliveryStatus) -> bool:
        """
        Apply a delivery receipt to a message of this tenant.

        Progress only moves forward (pending < sent < delivered < read);
        ``failed`` always applies.

        Returns:
            True  => a row was updated
            False => no matching message for this tenant, or a stale receipt
        """
        async with safe_db_conn() as conn:
            if status.status == "failed":
                result = await conn.execute(
                    """
                    UPDATE messages
                    SET status = 'failed', error_message = $3, updated_at = now()
                    WHERE tenant_id = $1 AND provider_message_id = $2
                    """,
                    tenant_id,
                    status.provider_message_id,
                    (status.error_message or "")[:2000],
                )
            else:
                result = await conn.execute(
                    """
                    UPDATE messages
                    SET status = $3, updated_at = now()
                    WHERE tenant_id = $1 AND provider_message_id = $2
                      AND status <> 'failed'
                      AND (CASE status
                             WHEN 'read' THEN 3 WHEN 'delivered' THEN 2 WHEN 'sent' THEN 1 ELSE 0
                           END)
                          < (CASE $3::text
                             WHEN 'read' THEN 3 WHEN 'delivered' THEN 2 WHEN 'sent' THEN 1 ELSE 0
                           END)
                    """,
                    tenant_id,
                    status.provider_message_id,
                    status.status,
                )
            return bool(result) and int(result.split()[-1]) > 0

    async def mark_outbound_sent(self, tenant_id: str, message_id: str, provider_message_id: str) -> None:
        """Record the provider id of an outbound message once the send succeeded."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE messages
                SET provider_message_id = $3, status = 'sent', updated_at = now()
                WHERE tenant_id = $1 AND id = $2
                """,
                tenant_id,
                message_id,
                provider_message_id,
            )

    async def mark_outbound_failed(self, tenant_id: str, message_id: str, error_message: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE messages
                SET status = 'failed', error_message = $3, updated_at = now()
                WHERE tenant_id = $1 AND id = $2
                """,
                tenant_id,
                message_id,
                error_message[:2000],
            )
