#!/usr/bin/env python3
"""
Sign a webhook payload the way the provider does and replay it locally.

The secret never leaves your machine; only the signature is printed.

Usage:
    # WhatsApp / Instagram / Facebook (X-Hub-Signature-256)
    python scripts/sign_webhook.py whatsapp payload.json

    # TikTok (X-TikTok-Timestamp + X-TikTok-Signature)
    python scripts/sign_webhook.py tiktok payload.json

    # Print a curl command against a local instance
    python scripts/sign_webhook.py whatsapp payload.json --curl --tenant clinica-sonrisa

Environment:
    WEBHOOK_SECRET: app secret (Meta) or client secret (TikTok), if --secret is not given
"""
import argparse
import os
import sys
import time
from pathlib import Path

from inbox.core.ingestion.domain import Channel
from inbox.transport.signatures import (
    META_SIGNATURE_HEADER,
    TIKTOK_SIGNATURE_HEADER,
    TIKTOK_TIMESTAMP_HEADER,
    sign_meta_body,
    sign_tiktok_body,
)


def signed_headers(channel: Channel, body: bytes, secret: str, timestamp: str | None = None) -> dict[str, str]:
    """Headers a provider would attach to ``body``."""
    if channel == Channel.TIKTOK:
        timestamp = timestamp or str(int(time.time()))
        return {
            TIKTOK_TIMESTAMP_HEADER: timestamp,
            TIKTOK_SIGNATURE_HEADER: sign_tiktok_body(body, secret, timestamp),
        }
    return {META_SIGNATURE_HEADER: sign_meta_body(body, secret)}


def main():
    parser = argparse.ArgumentParser(
        description="Sign a webhook payload with the channel's HMAC-SHA256 scheme",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("channel", choices=[c.value for c in Channel], help="Webhook channel")
    parser.add_argument("payload", help="Path to the JSON body to sign (sent byte-for-byte)")
    parser.add_argument("--secret", "-s", help="Signing secret (or use WEBHOOK_SECRET env var)")
    parser.add_argument("--curl", "-c", action="store_true", help="Output as curl command")
    parser.add_argument("--host", "-H", default="http://localhost:8000", help="Host URL for curl")
    parser.add_argument("--tenant", "-t", default="demo", help="Tenant slug for curl")

    args = parser.parse_args()

    secret = args.secret or os.environ.get("WEBHOOK_SECRET")
    if not secret:
        print("Error: WEBHOOK_SECRET environment variable not set", file=sys.stderr)
        sys.exit(1)

    channel = Channel(args.channel)
    body = Path(args.payload).read_bytes()
    headers = signed_headers(channel, body, secret)

    if args.curl:
        cmd_parts = ["curl", "-X POST", '-H "Content-Type: application/json"']
        cmd_parts.extend(f'-H "{name}: {value}"' for name, value in headers.items())
        cmd_parts.append(f"--data-binary @{args.payload}")
        cmd_parts.append(f'"{args.host}/t/{args.tenant}/webhooks/{channel.value}"')
        print(" \\\n  ".join(cmd_parts))
    else:
        for name, value in headers.items():
            print(f"{name}: {value}")


if __name__ == "__main__":
    main()
