"""Domain exception hierarchy for TextCraft."""

from __future__ import annotations


class TextcraftError(RuntimeError):
    """Base class for all domain-level errors."""


class ConfigValidationError(TextcraftError):
    """Raised when configuration cannot be validated safely."""


class PersistenceError(TextcraftError):
    """Raised when a storage backend cannot be read or written."""


class CompletionError(TextcraftError):
    """Base class for chat-completion client failures."""

    @property
    def description(self) -> str:
        """Human-readable description suitable for a chat bubble."""
        return str(self)

    @property
    def failure_reason(self) -> str | None:
        """Raw diagnostic detail, when the server supplied one."""
        return None


class InvalidEndpointError(CompletionError):
    """Raised when the configured base URL cannot form a request URL."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid API URL: {url!r}")
        self.url = url


class NetworkError(CompletionError):
    """Raised when the transport fails before a response arrives."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Network error: {cause}")
        self.cause = cause


class ServerError(CompletionError):
    """Raised when the endpoint answers with a non-2xx status."""

    def __init__(self, status_code: int, raw_body: str | None) -> None:
        super().__init__(f"Server error (status code: {status_code})")
        self.status_code = status_code
        self.raw_body = raw_body

    @property
    def failure_reason(self) -> str | None:
        return self.raw_body


class DecodingError(CompletionError):
    """Raised when a 2xx payload cannot be decoded into the expected shape."""

    def __init__(self, cause: BaseException, raw_body: str | None) -> None:
        super().__init__(f"Decoding error: {cause}")
        self.cause = cause
        self.raw_body = raw_body

    @property
    def failure_reason(self) -> str | None:
        return self.raw_body


class NoMessageInResponseError(CompletionError):
    """Raised when a well-formed response carries no choice message."""

    def __init__(self) -> None:
        super().__init__("No message in response")


class EmptyCredentialError(CompletionError):
    """Raised when a streaming request is attempted without an API key."""

    def __init__(self) -> None:
        super().__init__("API key is empty")


class StreamError(CompletionError):
    """Raised for faults specific to reading a streamed response."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Streaming error: {message}")
        self.message = message
