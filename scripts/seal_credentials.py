#!/usr/bin/env python3
"""Generate TENANT_ENCRYPTION_KEY or seal channel credentials.

Usage:
    # New key for .env
    python scripts/seal_credentials.py --generate-key

    # Seal credentials for channel_connections.credentials_encrypted
    python scripts/seal_credentials.py --tenant-id <uuid> --channel whatsapp \
        --credentials '{"access_token": "EAAG...", "app_secret": "...", "verify_token": "..."}'

The sealed value is bound to the (tenant, channel) pair; it cannot be
opened for any other tenant or channel.
"""
import argparse
import json
import sys

from inbox.core.ingestion.domain import Channel
from inbox.infra.crypto import FernetCrypto, get_crypto


def main() -> None:
    parser = argparse.ArgumentParser(description="Channel credential sealing")
    parser.add_argument("--generate-key", action="store_true", help="Print a new Fernet key and exit")
    parser.add_argument("--tenant-id", help="Tenant UUID the credentials belong to")
    parser.add_argument("--channel", choices=[c.value for c in Channel])
    parser.add_argument("--credentials", help="Credentials JSON object")
    args = parser.parse_args()

    if args.generate_key:
        print("# Add this to your .env file:")
        print(f"TENANT_ENCRYPTION_KEY={FernetCrypto.generate_key()}")
        return

    if not (args.tenant_id and args.channel and args.credentials):
        parser.error("--tenant-id, --channel and --credentials are required")

    try:
        credentials = json.loads(args.credentials)
    except ValueError as exc:
        print(f"Error: credentials are not valid JSON: {exc}", file=sys.stderr)
        sys.exit(1)

    blob = get_crypto().seal_credentials(credentials, tenant_id=args.tenant_id, channel=args.channel)
    # bytea literal for psql
    print(f"\\x{blob.hex()}")


if __name__ == "__main__":
    main()
