class ChatRelayError(Exception):
    """
    Base error. ``category`` tells callers how to degrade: configuration and
    concurrency errors are rejected up front, upstream and transport errors keep
    any partial content, persistence errors come from the delivery queue.
    """

    category = "internal"
    code = "internal_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "category": self.category, "message": self.message}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(ChatRelayError):
    category = "configuration"
    code = "configuration_error"


class AuthenticationRequiredError(ConfigurationError):
    code = "authentication_required"

    def __init__(self, provider: str, message: str | None = None) -> None:
        super().__init__(
            message
            or f"No API key found for {provider}. Sign in with a stored key or provide one."
        )
        self.provider = provider


class ProviderUnsupportedError(ConfigurationError):
    code = "provider_unsupported"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported AI provider: {provider}")
        self.provider = provider


class ModelMissingError(ConfigurationError):
    code = "model_missing"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No model requested and no default model for {provider}")
        self.provider = provider


# ---------------------------------------------------------------------------
# Upstream / transport
# ---------------------------------------------------------------------------

class UpstreamError(ChatRelayError):
    """Any non-success answer from a provider, in one shape."""

    category = "upstream"
    code = "upstream_error"

    def __init__(self, provider: str, status: int | None, message: str) -> None:
        super().__init__(f"{provider} API error ({status}): {message}")
        self.provider = provider
        self.status = status
        self.upstream_message = message

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # Rate limits and server-side failures are worth another try from the user.
        return self.status is None or self.status == 429 or self.status >= 500

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(provider=self.provider, status=self.status, upstream_message=self.upstream_message)
        return data


class TransportError(ChatRelayError):
    category = "transport"
    code = "transport_error"
    retryable = True

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider


class StreamTerminatedError(TransportError):
    code = "stream_terminated"

    def __init__(self, provider: str) -> None:
        super().__init__(provider, f"{provider} stream closed without a terminal marker")


# ---------------------------------------------------------------------------
# Persistence / concurrency
# ---------------------------------------------------------------------------

class PersistenceError(ChatRelayError):
    category = "persistence"
    code = "persistence_error"


class DeliveryDroppedError(PersistenceError):
    code = "delivery_dropped"

    def __init__(self, entry_id: str, message_id: str, reason: str) -> None:
        super().__init__(f"Delivery of message {message_id} dropped: {reason}")
        self.entry_id = entry_id
        self.message_id = message_id
        self.reason = reason


class ConcurrencyViolationError(ChatRelayError):
    category = "concurrency"
    code = "concurrency_violation"


class MessageNotFoundError(ChatRelayError):
    code = "message_not_found"

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class InvalidRequestError(ChatRelayError):
    code = "invalid_request"
