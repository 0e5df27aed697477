# inbox/core/ingestion/errors.py
"""
Error taxonomy for the ingestion core.

Propagation:
- AuthenticationFailure      -> reject the whole webhook (403), no retry
- TenantResolutionError      -> skip that segment, continue the batch
- DuplicateEvent             -> not a failure; short-circuits one event
- TransientStoreError        -> the only class answered with non-2xx (503)
- OutboundSendError family   -> surfaced to the send worker / caller
"""
from __future__ import annotations


class IngestionError(Exception):
    """Base class for ingestion errors."""


class AuthenticationFailure(IngestionError):
    """Webhook signature missing or invalid."""


class TenantResolutionError(IngestionError):
    """Event cannot be attributed to an active tenant channel."""


class TenantNotFound(TenantResolutionError):
    """No active tenant with that slug."""


class ChannelNotConnected(TenantResolutionError):
    """Tenant exists but has no connected channel for that endpoint."""


class DuplicateEvent(IngestionError):
    """Provider re-delivered a message id that is already stored."""

    def __init__(self, provider_message_id: str, message_id: str):
        self.provider_message_id = provider_message_id
        self.message_id = message_id
        super().__init__(f"Duplicate provider message id: {provider_message_id}")


class TransientStoreError(IngestionError):
    """Data store temporarily unavailable; the provider should retry."""


class OutboundSendError(IngestionError):
    """Error sending a message through a provider API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Provider-specific error code from the response body.
        retryable:  Whether the caller may schedule a retry.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Provider error {status} (code={error_code}): {message}")


class ProviderSendError(OutboundSendError):
    """Generic provider failure (auth, bad recipient, server error)."""


class ProviderRateLimited(OutboundSendError):
    """Provider throttled the send (HTTP 429, TikTok 10 msgs/user/day)."""

    def __init__(self, status: int, error_code: int | None, message: str):
        super().__init__(status, error_code, message, retryable=True)


class MessagingWindowExpired(OutboundSendError):
    """The 24-hour customer-service window is closed; a free-form reply is impossible."""

    def __init__(self, status: int, error_code: int | None, message: str):
        super().__init__(status, error_code, message, retryable=False)


class ProviderTimeout(OutboundSendError):
    """No response within the send timeout. The message may or may not have been delivered."""

    def __init__(self, message: str):
        super().__init__(0, None, message, retryable=False)
