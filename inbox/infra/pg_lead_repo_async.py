# inbox/infra/pg_lead_repo_async.py
"""
Async PostgreSQL lead repository (asyncpg).

One non-deleted lead per (tenant, channel identity). Creation is serialized
with a transaction-scoped advisory lock; partial unique indexes on every
identity column are the backstop.
"""
from __future__ import annotations
import json
from typing import Any, Optional

import asyncpg

from inbox.core.ingestion.domain import (
    Channel,
    GENERIC_LEAD_NAMES,
    IDENTITY_MATCH_ORDER,
    LEAD_IDENTITY_COLUMNS,
    Lead,
    LeadResolution,
)
from inbox.infra.db_async import advisory_xact_lock
from inbox.infra.db_resilience_async import safe_db_conn
from inbox.infra.logging_config import get_logger
from inbox.infra.metrics import AppMetrics

logger = get_logger(__name__)

_LEAD_COLUMNS = """
    id, tenant_id, branch_id, name, phone, email, instagram_psid, facebook_psid,
    tiktok_open_id, source, source_details, status, classification, score,
    first_contact_at, deleted_at
"""


def _row_to_lead(row) -> Lead:
    """Convert an asyncpg Record to a Lead dataclass."""
    details = row["source_details"]
    if isinstance(details, str):
        details = json.loads(details)
    return Lead(
        id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        branch_id=str(row["branch_id"]) if row["branch_id"] else None,
        name=row["name"],
        phone=row["phone"],
        email=row["email"],
        instagram_psid=row["instagram_psid"],
        facebook_psid=row["facebook_psid"],
        tiktok_open_id=row["tiktok_open_id"],
        source=row["source"],
        source_details=details or {},
        status=row["status"],
        classification=row["classification"],
        score=row["score"],
        first_contact_at=row["first_contact_at"],
        deleted_at=row["deleted_at"],
    )


def lead_lock_key(tenant_id: str, channel: Channel, external_id: str) -> str:
    return f"lead:{tenant_id}:{Channel(channel).value}:{external_id}"


class AsyncPostgresLeadRepository:
    """Async PostgreSQL implementation of the lead store using asyncpg."""

    async def find_lead(self, tenant_id: str, channel: Channel, external_id: str) -> Optional[Lead]:
        column = LEAD_IDENTITY_COLUMNS[Channel(channel)]
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_LEAD_COLUMNS} FROM leads
                WHERE tenant_id = $1 AND {column} = $2 AND deleted_at IS NULL
                LIMIT 1
                """,
                tenant_id,
                external_id,
            )
            return _row_to_lead(row) if row else None

    async def find_lead_by_identities(self, tenant_id: str, identities: dict[str, str]) -> Optional[Lead]:
        """Match a non-deleted lead on the first identity column that hits."""
        async with safe_db_conn() as conn:
            for column in IDENTITY_MATCH_ORDER:
                value = identities.get(column)
                if not value:
                    continue
                row = await conn.fetchrow(
                    f"""
                    SELECT {_LEAD_COLUMNS} FROM leads
                    WHERE tenant_id = $1 AND {column} = $2 AND deleted_at IS NULL
                    ORDER BY created_at
                    LIMIT 1
                    """,
                    tenant_id,
                    value,
                )
                if row:
                    logger.debug(f"Cross-channel match on {column}: lead_id={row['id']}")
                    return _row_to_lead(row)
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
        """
        Return the lead for this identity, creating it if needed.

        Runs in one transaction holding the advisory lock
        ``lead:{tenant}:{channel}:{external_id}``. When ``link_to_lead_id``
        is given the identity is attached to that lead instead of creating
        a new one; the link is attempted inside a savepoint so a conflict
        falls back to plain creation.
        """
        channel = Channel(channel)
        column = LEAD_IDENTITY_COLUMNS[channel]

        try:
            async with safe_db_conn(autocommit=False) as conn:
                await advisory_xact_lock(conn, lead_lock_key(tenant_id, channel, external_id))

                existing = await conn.fetchrow(
                    f"""
                    SELECT id, name FROM leads
                    WHERE tenant_id = $1 AND {column} = $2 AND deleted_at IS NULL
                    LIMIT 1
                    """,
                    tenant_id,
                    external_id,
                )
                if existing:
                    lead_name = existing["name"]
                    if lead_name in GENERIC_LEAD_NAMES and name not in GENERIC_LEAD_NAMES:
                        await conn.execute(
                            "UPDATE leads SET name = $3, updated_at = now() WHERE tenant_id = $1 AND id = $2",
                            tenant_id,
                            existing["id"],
                            name,
                        )
                        lead_name = name
                    return LeadResolution(lead_id=str(existing["id"]), is_new=False, name=lead_name)

                if link_to_lead_id:
                    linked = await self._link_identity(conn, tenant_id, link_to_lead_id, column, external_id)
                    if linked is not None:
                        return linked

                source = "other" if channel == Channel.TIKTOK else channel.value
                source_details: dict[str, Any] = {"platform": channel.value} if channel == Channel.TIKTOK else {}
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO leads (
                        tenant_id, branch_id, name, {column}, source, source_details,
                        status, classification, score, first_contact_at, last_contact_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, 'new', 'warm', 50, now(), now())
                    RETURNING id
                    """,
                    tenant_id,
                    branch_id,
                    name,
                    external_id,
                    source,
                    json.dumps(source_details),
                )
                return LeadResolution(lead_id=str(row["id"]), is_new=True, name=name)

        except asyncpg.UniqueViolationError:
            # Another writer won without the lock (e.g. manual import): take its row
            logger.info(f"Lead insert conflicted, re-selecting: channel={channel.value}")
            lead = await self.find_lead(tenant_id, channel, external_id)
            if lead is None:
                raise
            return LeadResolution(lead_id=lead.id, is_new=False, name=lead.name)

        except Exception:
            logger.error(f"Failed to find or create lead: channel={channel.value}", exc_info=True)
            AppMetrics.database_error("lead_find_or_create")
            raise

    async def _link_identity(
        self,
        conn: asyncpg.Connection,
        tenant_id: str,
        lead_id: str,
        column: str,
        external_id: str,
    ) -> Optional[LeadResolution]:
        """Attach ``external_id`` to an existing lead if that slot is still empty."""
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE leads
                    SET {column} = $3, last_contact_at = now(), updated_at = now()
                    WHERE tenant_id = $1 AND id = $2 AND deleted_at IS NULL AND {column} IS NULL
                    RETURNING id, name
                    """,
                    tenant_id,
                    lead_id,
                    external_id,
                )
        except asyncpg.UniqueViolationError:
            logger.warning(f"Cross-channel link refused, identity already owned: lead_id={lead_id}")
            return None

        if row is None:
            return None
        return LeadResolution(lead_id=str(row["id"]), is_new=False, was_cross_linked=True, name=row["name"])

    async def rename_if_generic(self, tenant_id: str, lead_id: str, name: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE leads SET name = $3, updated_at = now()
                WHERE tenant_id = $1 AND id = $2 AND (name IS NULL OR name = ANY($4::text[]))
                """,
                tenant_id,
                lead_id,
                name,
                list(GENERIC_LEAD_NAMES),
            )
            return bool(result) and int(result.split()[-1]) > 0
