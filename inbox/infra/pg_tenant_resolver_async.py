# inbox/infra/pg_tenant_resolver_async.py
"""
Async Postgres tenant resolver.

Maps (tenant slug, channel, endpoint id) to a ChannelContext. Provider
credentials are stored Fernet-encrypted and bound to (tenant id, channel);
a blob that fails to open is treated as "channel not connected".
"""
from __future__ import annotations

from typing import Any, Optional

from inbox.core.ingestion.domain import Channel, ChannelContext
from inbox.core.ingestion.errors import ChannelNotConnected, TenantNotFound
from inbox.infra.crypto import CryptoError, FernetCrypto, get_crypto
from inbox.infra.db_resilience_async import safe_db_conn
from inbox.infra.logging_config import get_logger

logger = get_logger(__name__)

# Column in `channel_connections` holding each channel's endpoint id
ENDPOINT_COLUMNS = {
    Channel.WHATSAPP: "whatsapp_phone_number_id",
    Channel.INSTAGRAM: "instagram_page_id",
    Channel.FACEBOOK: "facebook_page_id",
    Channel.TIKTOK: "tiktok_client_key",
}

_CONNECTION_COLUMNS = """
    cc.id, cc.tenant_id, cc.channel, cc.branch_id, cc.credentials_encrypted,
    cc.whatsapp_phone_number_id, cc.instagram_page_id, cc.facebook_page_id, cc.tiktok_client_key,
    cc.ai_enabled, cc.ai_personality_override, cc.custom_instructions_override,
    cc.first_message_delay_seconds, cc.subsequent_message_delay_seconds
"""


class AsyncPostgresTenantResolver:
    """Resolves webhook targets against `tenants` and `channel_connections`."""

    def __init__(self, crypto: Optional[FernetCrypto] = None):
        self._crypto = crypto

    @property
    def crypto(self) -> FernetCrypto:
        return self._crypto or get_crypto()

    async def _tenant_id(self, conn, tenant_slug: str) -> str:
        row = await conn.fetchrow(
            "SELECT id FROM tenants WHERE slug = $1 AND status = 'active' AND deleted_at IS NULL",
            tenant_slug,
        )
        if not row:
            raise TenantNotFound(f"Tenant not found or inactive: {tenant_slug}")
        return str(row["id"])

    async def resolve(self, tenant_slug: str, channel: Channel, endpoint_id: str) -> ChannelContext:
        """
        Raises:
            TenantNotFound: unknown slug or inactive tenant
            ChannelNotConnected: no connected channel for this endpoint, or unreadable credentials
        """
        channel = Channel(channel)
        column = ENDPOINT_COLUMNS[channel]
        async with safe_db_conn() as conn:
            tenant_id = await self._tenant_id(conn, tenant_slug)
            row = await conn.fetchrow(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM channel_connections cc
                WHERE cc.tenant_id = $1 AND cc.channel = $2 AND cc.{column} = $3
                  AND cc.status = 'connected'
                LIMIT 1
                """,
                tenant_id,
                channel.value,
                endpoint_id,
            )

        if not row:
            raise ChannelNotConnected(
                f"No connected {channel.value} channel for tenant {tenant_slug}, endpoint {endpoint_id}"
            )
        ctx = self._to_context(row, tenant_slug, channel)
        if ctx is None:
            raise ChannelNotConnected(f"Unreadable credentials for {channel.value} connection {row['id']}")
        return ctx

    async def list_connections(self, tenant_slug: str, channel: Channel) -> list[ChannelContext]:
        """All connected connections of an active tenant for a channel (empty if none)."""
        channel = Channel(channel)
        async with safe_db_conn() as conn:
            try:
                tenant_id = await self._tenant_id(conn, tenant_slug)
            except TenantNotFound:
                return []
            rows = await conn.fetch(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM channel_connections cc
                WHERE cc.tenant_id = $1 AND cc.channel = $2 AND cc.status = 'connected'
                ORDER BY cc.created_at
                """,
                tenant_id,
                channel.value,
            )

        contexts = []
        for row in rows:
            ctx = self._to_context(row, tenant_slug, channel)
            if ctx is not None:
                contexts.append(ctx)
        return contexts

    async def get_connection(self, tenant_id: str, channel_connection_id: str) -> Optional[ChannelContext]:
        """Context for a known connection id, used by the send worker."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_CONNECTION_COLUMNS}, t.slug
                FROM channel_connections cc
                JOIN tenants t ON t.id = cc.tenant_id
                WHERE cc.tenant_id = $1 AND cc.id = $2 AND cc.status = 'connected'
                """,
                tenant_id,
                channel_connection_id,
            )
        if not row:
            return None
        return self._to_context(row, row["slug"], Channel(row["channel"]))

    def _to_context(self, row, tenant_slug: str, channel: Channel) -> Optional[ChannelContext]:
        tenant_id = str(row["tenant_id"])
        creds: dict[str, Any] = {}
        if row["credentials_encrypted"] is not None:
            try:
                creds = self.crypto.open_credentials(
                    row["credentials_encrypted"], tenant_id=tenant_id, channel=channel.value,
                )
            except CryptoError as exc:
                logger.error(
                    f"Cannot open credentials for connection {row['id']}: {exc.__class__.__name__}",
                    extra={"tenant_id": tenant_id, "channel": channel.value},
                )
                return None

        return ChannelContext(
            tenant_id=tenant_id,
            tenant_slug=tenant_slug,
            channel=channel,
            channel_connection_id=str(row["id"]),
            endpoint_id=row[ENDPOINT_COLUMNS[channel]] or "",
            access_token=creds.get("access_token", ""),
            webhook_secret=creds.get("app_secret") or creds.get("client_secret"),
            verify_token=creds.get("verify_token"),
            branch_id=str(row["branch_id"]) if row["branch_id"] else None,
            ai_enabled=bool(row["ai_enabled"]),
            ai_personality_override=row["ai_personality_override"],
            custom_instructions_override=row["custom_instructions_override"],
            first_message_delay_seconds=row["first_message_delay_seconds"] or 0,
            subsequent_message_delay_seconds=row["subsequent_message_delay_seconds"] or 0,
        )
