# inbox/transport/signatures.py
"""
Webhook signature verification.

WhatsApp / Instagram / Facebook:
    X-Hub-Signature-256: sha256=<hex HMAC-SHA256(app_secret, raw_body)>

TikTok:
    X-TikTok-Timestamp: <unix seconds>
    X-TikTok-Signature: <hex HMAC-SHA256(client_secret, timestamp + raw_body)>

Verifiers are pure functions: no logging of secrets, no side effects.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Iterable, Mapping, Optional

from inbox.core.ingestion.domain import Channel

META_SIGNATURE_HEADER = "X-Hub-Signature-256"
TIKTOK_SIGNATURE_HEADER = "X-TikTok-Signature"
TIKTOK_TIMESTAMP_HEADER = "X-TikTok-Timestamp"


def _hmac_hex(secret: str, data: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).hexdigest()


def verify_meta_signature(raw_body: bytes, header_signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify an ``X-Hub-Signature-256`` header (WhatsApp Cloud API and Messenger)."""
    if not secret or not header_signature:
        return False
    # Header format: "sha256=<hex digest>"
    if not header_signature.startswith("sha256="):
        return False
    expected = _hmac_hex(secret, raw_body)
    return hmac.compare_digest(header_signature[7:].lower(), expected)


def verify_tiktok_signature(
    raw_body: bytes,
    header_signature: Optional[str],
    secret: Optional[str],
    timestamp: Optional[str],
) -> bool:
    """Verify ``X-TikTok-Signature`` over ``timestamp + raw_body``."""
    if not secret or not header_signature or not timestamp:
        return False
    expected = _hmac_hex(secret, timestamp.encode("utf-8") + raw_body)
    return hmac.compare_digest(header_signature.strip().lower(), expected)


def verify(
    channel: Channel,
    raw_body: bytes,
    header_signature: Optional[str],
    secret: Optional[str],
    timestamp: Optional[str] = None,
) -> bool:
    """Verify a webhook body for ``channel``."""
    if Channel(channel) == Channel.TIKTOK:
        return verify_tiktok_signature(raw_body, header_signature, secret, timestamp)
    return verify_meta_signature(raw_body, header_signature, secret)


def signature_headers(channel: Channel, headers: Mapping[str, str]) -> tuple[Optional[str], Optional[str]]:
    """Extract (signature, timestamp) from request headers for ``channel``."""
    if Channel(channel) == Channel.TIKTOK:
        return headers.get(TIKTOK_SIGNATURE_HEADER), headers.get(TIKTOK_TIMESTAMP_HEADER)
    return headers.get(META_SIGNATURE_HEADER), None


def verify_any(
    channel: Channel,
    raw_body: bytes,
    header_signature: Optional[str],
    secrets: Iterable[Optional[str]],
    timestamp: Optional[str] = None,
) -> bool:
    """True if the body verifies against any of the candidate secrets."""
    return any(verify(channel, raw_body, header_signature, secret, timestamp) for secret in secrets)


def sign_meta_body(raw_body: bytes, secret: str) -> str:
    """Build an ``X-Hub-Signature-256`` value (tests and local replay tools)."""
    return f"sha256={_hmac_hex(secret, raw_body)}"


def sign_tiktok_body(raw_body: bytes, secret: str, timestamp: str) -> str:
    return _hmac_hex(secret, timestamp.encode("utf-8") + raw_body)
