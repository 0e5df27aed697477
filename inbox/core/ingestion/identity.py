# inbox/core/ingestion/identity.py
"""
Identity resolution: one lead per (tenant, channel, external id).

The store primitive ``find_or_create_lead`` is the only step that runs
under the per-identity lock. Profile lookups and cross-channel matching
happen before it, outside the lock, and are best-effort: any failure
falls back to the non-enriched path.
"""
from __future__ import annotations

from typing import Optional

from inbox.core.ingestion.domain import (
    DEFAULT_LEAD_NAME,
    DEFAULT_TIKTOK_LEAD_NAME,
    GENERIC_LEAD_NAMES,
    Channel,
    LEAD_IDENTITY_COLUMNS,
    LeadResolution,
    SenderProfile,
)
from inbox.core.ingestion.ports import AsyncLeadStore, AsyncProfileFetcher
from inbox.core.ingestion.text import normalize_phone
from inbox.infra.logging_config import get_logger, mask_identifier
from inbox.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


def placeholder_name(channel: Channel) -> str:
    return DEFAULT_TIKTOK_LEAD_NAME if channel == Channel.TIKTOK else DEFAULT_LEAD_NAME


def is_generic_name(name: Optional[str]) -> bool:
    return name is None or name.strip() in GENERIC_LEAD_NAMES


class IdentityResolver:
    """Finds or creates the Lead behind an external sender id."""

    def __init__(self, leads: AsyncLeadStore, profiles: Optional[AsyncProfileFetcher] = None):
        self.leads = leads
        self.profiles = profiles

    async def find_or_create(
        self,
        tenant_id: str,
        branch_id: Optional[str],
        channel: Channel,
        external_id: str,
        display_name_hint: Optional[str] = None,
        *,
        access_token: Optional[str] = None,
    ) -> LeadResolution:
        channel = Channel(channel)
        hint = None if is_generic_name(display_name_hint) else display_name_hint.strip()

        # Fast path: known sender, no lock and no profile call
        existing = await self.leads.find_lead(tenant_id, channel, external_id)
        if existing is not None:
            if hint and is_generic_name(existing.name):
                await self.leads.rename_if_generic(tenant_id, existing.id, hint)
                return LeadResolution(lead_id=existing.id, is_new=False, name=hint)
            return LeadResolution(lead_id=existing.id, is_new=False, name=existing.name)

        profile = None
        if hint is None:
            profile = await self._fetch_profile(channel, external_id, access_token)

        name = hint or (profile.name if profile and not is_generic_name(profile.name) else None)
        link_to = await self._find_cross_channel_match(tenant_id, channel, external_id, profile)

        resolution = await self.leads.find_or_create_lead(
            tenant_id,
            branch_id,
            channel,
            external_id,
            name or placeholder_name(channel),
            link_to_lead_id=link_to,
        )

        if resolution.is_new:
            AppMetrics.lead_created(tenant_id, channel.value)
            logger.info(
                f"Lead created: channel={channel.value}, sender={mask_identifier(external_id)}, "
                f"lead_id={resolution.lead_id}",
                extra={"tenant_id": tenant_id, "lead_id": resolution.lead_id},
            )
        elif resolution.was_cross_linked:
            AppMetrics.lead_cross_linked(tenant_id, channel.value)
            logger.info(
                f"Lead cross-linked: channel={channel.value} identity attached to lead_id={resolution.lead_id}",
                extra={"tenant_id": tenant_id, "lead_id": resolution.lead_id},
            )
        return resolution

    async def _fetch_profile(
        self,
        channel: Channel,
        external_id: str,
        access_token: Optional[str],
    ) -> Optional[SenderProfile]:
        if self.profiles is None or not access_token:
            return None
        try:
            return await self.profiles.fetch(channel, external_id, access_token)
        except Exception as exc:
            logger.warning(
                f"Profile fetch failed for {channel.value} sender {mask_identifier(external_id)}: "
                f"{exc.__class__.__name__}"
            )
            inc_counter("profile_fetch_errors_total", channel=channel.value)
            return None

    async def _find_cross_channel_match(
        self,
        tenant_id: str,
        channel: Channel,
        external_id: str,
        profile: Optional[SenderProfile],
    ) -> Optional[str]:
        """
        Look for a lead already known through another identity.

        Only identifiers the provider actually supplied are used. For
        WhatsApp the sender id is the phone itself, so the fast path has
        already covered it.
        """
        identities: dict[str, str] = {}
        if profile is not None:
            if profile.phone:
                identities["phone"] = normalize_phone(profile.phone)
            if profile.email:
                identities["email"] = profile.email.strip().lower()
        identities.pop(LEAD_IDENTITY_COLUMNS[channel], None)
        if not identities:
            return None

        try:
            match = await self.leads.find_lead_by_identities(tenant_id, identities)
        except Exception as exc:
            logger.warning(f"Cross-channel lookup failed, creating a new lead: {exc.__class__.__name__}")
            inc_counter("cross_channel_lookup_errors_total", channel=channel.value)
            return None

        if match is None:
            return None
        # Already holds a different id for this channel: not the same person on this channel
        current = match.identity(channel)
        if current and current != external_id:
            return None
        return match.id
