# tests/conftest.py
"""Pytest configuration and fixtures"""
import json
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from inbox.core.ingestion.domain import Channel, ChannelContext  # noqa: E402
from inbox.core.ingestion.pipeline import IngestionPipeline  # noqa: E402
from inbox.infra.memory_store import (  # noqa: E402
    MemoryConversationStore,
    MemoryJobQueue,
    MemoryLeadStore,
    MemoryMessageStore,
    MemoryTenantRegistry,
)
from inbox.infra.metrics import get_metrics_collector  # noqa: E402

WA_PHONE_NUMBER_ID = "106540352242922"
IG_PAGE_ID = "17841400000000001"
FB_PAGE_ID = "102030405060708"
TIKTOK_CLIENT_KEY = "awtiktokclientkey"


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield


@pytest.fixture
def tenant_slug():
    """Default tenant slug for tests"""
    return "clinica-sonrisa"


@pytest.fixture
def whatsapp_ctx():
    return ChannelContext(
        tenant_id="tenant-a",
        tenant_slug="clinica-sonrisa",
        channel=Channel.WHATSAPP,
        channel_connection_id="cc-wa-1",
        endpoint_id=WA_PHONE_NUMBER_ID,
        access_token="EAAG-test-token",
        webhook_secret="wa-app-secret",
        verify_token="wa-verify-token",
        first_message_delay_seconds=30,
        subsequent_message_delay_seconds=5,
    )


@pytest.fixture
def instagram_ctx():
    return ChannelContext(
        tenant_id="tenant-a",
        tenant_slug="clinica-sonrisa",
        channel=Channel.INSTAGRAM,
        channel_connection_id="cc-ig-1",
        endpoint_id=IG_PAGE_ID,
        access_token="IGAA-test-token",
        webhook_secret="ig-app-secret",
        verify_token="ig-verify-token",
    )


@pytest.fixture
def tiktok_ctx():
    return ChannelContext(
        tenant_id="tenant-a",
        tenant_slug="clinica-sonrisa",
        channel=Channel.TIKTOK,
        channel_connection_id="cc-tt-1",
        endpoint_id=TIKTOK_CLIENT_KEY,
        access_token="act.tiktok-token",
        webhook_secret="tt-client-secret",
    )


class MemoryStores:
    """In-memory store bundle wired like the memory backend of the app."""

    def __init__(self):
        self.tenants = MemoryTenantRegistry()
        self.leads = MemoryLeadStore()
        self.conversations = MemoryConversationStore()
        self.messages = MemoryMessageStore(self.conversations)
        self.jobs = MemoryJobQueue()

    def pipeline(self, profiles=None) -> IngestionPipeline:
        return IngestionPipeline(
            self.tenants,
            self.leads,
            self.conversations,
            self.messages,
            self.jobs,
            profiles=profiles,
        )


@pytest.fixture
def stores():
    return MemoryStores()


@pytest.fixture
def seeded_stores(stores, whatsapp_ctx, instagram_ctx, tiktok_ctx):
    stores.tenants.add_tenant("clinica-sonrisa", "tenant-a")
    for ctx in (whatsapp_ctx, instagram_ctx, tiktok_ctx):
        stores.tenants.add_connection(ctx)
    return stores


# ---------------------------------------------------------------------------
# Provider payloads
# ---------------------------------------------------------------------------

def whatsapp_text_payload(
    text: str = "Hola, quiero una cita",
    *,
    wamid: str = "wamid.HBgNNTIxNTUxMjM0NTY3OBUCABIYFjNFQjA",
    from_number: str = "5215512345678",
    name: str = "Maria Lopez",
    phone_number_id: str = WA_PHONE_NUMBER_ID,
) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "5215500000000", "phone_number_id": phone_number_id},
                    "contacts": [{"profile": {"name": name}, "wa_id": from_number}],
                    "messages": [{
                        "from": from_number,
                        "id": wamid,
                        "timestamp": "1700000000",
                        "type": "text",
                        "text": {"body": text},
                    }],
                },
            }],
        }],
    }


def whatsapp_status_payload(
    wamid: str,
    status: str = "delivered",
    *,
    phone_number_id: str = WA_PHONE_NUMBER_ID,
) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA_ID",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": phone_number_id},
                    "statuses": [{
                        "id": wamid,
                        "status": status,
                        "timestamp": "1700000100",
                        "recipient_id": "5215512345678",
                    }],
                },
            }],
        }],
    }


def instagram_text_payload(
    text: str = "Hola! tienen citas?",
    *,
    mid: str = "aWdfZAG1faXRlbToxOklHTWVzc2FnZAUlEOjE3ODQx",
    sender_id: str = "6543210987654321",
    page_id: str = IG_PAGE_ID,
) -> dict:
    return {
        "object": "instagram",
        "entry": [{
            "id": page_id,
            "time": 1700000000000,
            "messaging": [{
                "sender": {"id": sender_id},
                "recipient": {"id": page_id},
                "timestamp": 1700000000000,
                "message": {"mid": mid, "text": text},
            }],
        }],
    }


def tiktok_text_payload(
    text: str = "Hola desde TikTok",
    *,
    message_id: str = "tt-msg-0001",
    open_id: str = "tt-open-id-123",
    client_key: str = TIKTOK_CLIENT_KEY,
    content_as_string: bool = False,
) -> dict:
    content = {
        "open_id": open_id,
        "message_id": message_id,
        "message_type": "text",
        "message_content": {"text": text},
    }
    return {
        "client_key": client_key,
        "event": "direct_message.receive",
        "create_time": 1700000000,
        "user_openid": open_id,
        "content": json.dumps(content) if content_as_string else content,
    }


@pytest.fixture
def wa_payload():
    return whatsapp_text_payload()
