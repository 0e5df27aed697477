# inbox/core/ingestion/__init__.py
"""
Ingestion core -- provider-agnostic domain logic.

This package contains the canonical domain models, the store protocols
(ports), the identity resolver, the job dispatcher and the pipeline that
wires them together for every channel.

Canonical imports:
    from inbox.core.ingestion import IngestionPipeline
    from inbox.core.ingestion.domain import InboundMessage, ChannelContext
    from inbox.core.ingestion.errors import TransientStoreError
"""
from inbox.core.ingestion.domain import (  # noqa: F401
    Channel,
    ChannelContext,
    DeliveryStatus,
    InboundMessage,
    MessageKind,
    NormalizedBatch,
)
from inbox.core.ingestion.pipeline import BatchResult, IngestionPipeline  # noqa: F401
