# inbox/transport/profiles.py
"""
Best-effort sender profile lookups.

- Instagram: GET {graph}/{igsid}?fields=id,username,name,profile_pic
- Facebook:  GET {graph}/{psid}?fields=id,first_name,last_name,name,profile_pic
- TikTok:    GET {tiktok_api_base}/user/info/?fields=open_id,display_name,avatar_url
- WhatsApp:  no call; the contact name travels in the webhook payload

Any failure returns None. Callers fall back to a placeholder name.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import aiohttp

from inbox.config import settings
from inbox.core.ingestion.domain import Channel, SenderProfile
from inbox.infra.http_client import get_profile_session
from inbox.infra.logging_config import get_logger, mask_identifier
from inbox.infra.metrics import inc_counter
from inbox.transport.senders import graph_url

logger = get_logger(__name__)

_META_FIELDS = {
    Channel.INSTAGRAM: "id,username,name,profile_pic",
    Channel.FACEBOOK: "id,first_name,last_name,name,profile_pic",
}


class HttpProfileFetcher:
    """aiohttp implementation of the profile fetcher port."""

    def __init__(self, session_factory: Callable[[], aiohttp.ClientSession] = get_profile_session):
        self._session_factory = session_factory

    async def fetch(self, channel: Channel, external_id: str, access_token: str) -> Optional[SenderProfile]:
        channel = Channel(channel)
        if channel == Channel.WHATSAPP or not access_token:
            return None

        try:
            if channel == Channel.TIKTOK:
                profile = await self._fetch_tiktok(external_id, access_token)
            else:
                profile = await self._fetch_meta(channel, external_id, access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(
                f"Profile lookup failed: channel={channel.value}, user={mask_identifier(external_id)}, "
                f"{exc.__class__.__name__}"
            )
            inc_counter("profile_fetch_total", channel=channel.value, status="error")
            return None

        inc_counter("profile_fetch_total", channel=channel.value, status="ok" if profile else "empty")
        return profile

    async def _get_json(self, url: str, params: dict, access_token: str) -> Optional[dict]:
        session = self._session_factory()
        async with session.get(url, params=params, headers={"Authorization": f"Bearer {access_token}"}) as resp:
            if resp.status != 200:
                logger.debug(f"Profile lookup returned status={resp.status}")
                return None
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                return None
            return data if isinstance(data, dict) else None

    async def _fetch_meta(self, channel: Channel, external_id: str, access_token: str) -> Optional[SenderProfile]:
        data = await self._get_json(
            graph_url(external_id),
            {"fields": _META_FIELDS[channel], "access_token": access_token},
            access_token,
        )
        if not data:
            return None

        name = data.get("name")
        if not name and channel == Channel.FACEBOOK:
            name = " ".join(p for p in (data.get("first_name"), data.get("last_name")) if p) or None
        if not name and channel == Channel.INSTAGRAM:
            name = data.get("username")
        return SenderProfile(name=name, avatar_url=data.get("profile_pic"))

    async def _fetch_tiktok(self, open_id: str, access_token: str) -> Optional[SenderProfile]:
        data = await self._get_json(
            f"{settings.tiktok_api_base.rstrip('/')}/user/info/",
            {"fields": "open_id,display_name,avatar_url", "open_id": open_id},
            access_token,
        )
        if not data:
            return None
        error = data.get("error") or {}
        if error.get("code") not in (None, 0, "ok"):
            return None
        user = (data.get("data") or {}).get("user") or {}
        if not user:
            return None
        return SenderProfile(name=user.get("display_name"), avatar_url=user.get("avatar_url"))
