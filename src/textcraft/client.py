"""Async chat-completion client with single-shot and streaming modes."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from dataclasses import dataclass
import logging
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ValidationError

from .exceptions import (
    CompletionError,
    DecodingError,
    EmptyCredentialError,
    InvalidEndpointError,
    NetworkError,
    NoMessageInResponseError,
    ServerError,
    StreamError,
)
from .settings import ChatSettings
from .sse import LineDecoder, SSEFrame, parse_frame

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ark.cn-beijing.volces.com/api/v3"
COMPLETIONS_PATH = "/chat/completions"
CONNECTION_PROBE = "Connection test, please reply with one short sentence."


class ChatMessage(BaseModel):
    """A role/content pair as sent to the endpoint."""

    role: str
    content: str


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool


class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str


class ResponseChoice(BaseModel):
    index: int = 0
    message: ResponseMessage | None = None
    finish_reason: str | None = None


class ChatCompletionResponse(BaseModel):
    """Non-streaming response body; only ``choices`` is load-bearing."""

    id: str | None = None
    object: str | None = None
    created: int | None = None
    model: str | None = None
    choices: list[ResponseChoice] = []


@dataclass(frozen=True)
class CompletionResult:
    """Outcome delivered to a streaming ``on_complete`` callback."""

    value: str | None = None
    error: CompletionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: str) -> CompletionResult:
        return cls(value=value)

    @classmethod
    def failure(cls, error: CompletionError) -> CompletionResult:
        return cls(error=error)

    def unwrap(self) -> str:
        if self.error is not None:
            raise self.error
        return self.value or ""


MessageLike = ChatMessage | Mapping[str, str]
SettingsSource = Callable[[], ChatSettings]
ChunkCallback = Callable[[str], None]
CompleteCallback = Callable[[CompletionResult], None]


class ChatCompletionClient:
    """Translate message histories into chat-completion requests.

    Settings are pulled from ``settings`` on every call so edits made in the
    settings form apply to the next request. Each call is independent; the
    client keeps no per-conversation state and may be used concurrently.
    """

    def __init__(
        self,
        settings: SettingsSource,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self.base_url = base_url
        self.timeout = timeout
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> ChatCompletionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def endpoint(self) -> str:
        """Return the completions URL; raises ``InvalidEndpointError`` when malformed."""
        parsed = urlparse(self.base_url)
        if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
            raise InvalidEndpointError(self.base_url)
        return self.base_url.rstrip("/") + COMPLETIONS_PATH

    @staticmethod
    def _headers(settings: ChatSettings) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.api_key}",
        }

    @staticmethod
    def _build_body(
        settings: ChatSettings, messages: Sequence[MessageLike], stream: bool
    ) -> dict[str, Any]:
        request = ChatCompletionRequest(
            model=settings.model_id,
            messages=[
                m if isinstance(m, ChatMessage) else ChatMessage.model_validate(dict(m))
                for m in messages
            ],
            stream=stream,
        )
        LOGGER.debug(
            "client.request.built",
            extra={
                "event": "client.request.built",
                "model": settings.model_id,
                "stream": stream,
                "messages": len(request.messages),
            },
        )
        return request.model_dump()

    async def complete(self, messages: Sequence[MessageLike]) -> str:
        """Return the first choice's content for a non-streaming request.

        Raises:
            InvalidEndpointError: The base URL cannot form a request URL.
            NetworkError: The transport failed.
            ServerError: The endpoint answered with a non-2xx status.
            DecodingError: The body could not be decoded or did not match the
                response schema.
            NoMessageInResponseError: The body carried no choice message.
        """
        settings = self._settings()
        url = self.endpoint
        body = self._build_body(settings, messages, stream=False)
        try:
            response = await self._http.post(
                url, json=body, headers=self._headers(settings)
            )
        except httpx.DecodingError as exc:
            raise DecodingError(exc, None) from exc
        except httpx.InvalidURL as exc:
            raise InvalidEndpointError(url) from exc
        except httpx.TransportError as exc:
            LOGGER.warning(
                "client.request.transport_failed",
                extra={"event": "client.request.transport_failed", "error": str(exc)},
            )
            raise NetworkError(exc) from exc

        raw_body = response.text
        LOGGER.info(
            "client.response",
            extra={"event": "client.response", "status_code": response.status_code},
        )
        if not response.is_success:
            raise ServerError(response.status_code, raw_body)

        try:
            payload = ChatCompletionResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise DecodingError(exc, raw_body) from exc

        if not payload.choices or payload.choices[0].message is None:
            raise NoMessageInResponseError()
        return payload.choices[0].message.content

    async def stream(
        self, messages: Sequence[MessageLike]
    ) -> AsyncGenerator[SSEFrame, None]:
        """Yield ``delta`` and ``message`` frames as the response body arrives.

        Malformed data lines are logged and skipped. Raises
        ``EmptyCredentialError`` before any network access when no API key is
        configured, and ``CompletionError`` subclasses for transport, status
        and body failures.
        """
        settings = self._settings()
        if not settings.api_key:
            raise EmptyCredentialError()
        url = self.endpoint
        body = self._build_body(settings, messages, stream=True)

        try:
            async with self._http.stream(
                "POST", url, json=body, headers=self._headers(settings)
            ) as response:
                LOGGER.info(
                    "client.stream.response",
                    extra={
                        "event": "client.stream.response",
                        "status_code": response.status_code,
                    },
                )
                if not response.is_success:
                    raw = await response.aread()
                    raise ServerError(
                        response.status_code, raw.decode("utf-8", errors="replace")
                    )

                decoder = LineDecoder()
                received = False
                async for data in response.aiter_bytes():
                    received = received or bool(data)
                    try:
                        lines = decoder.feed(data)
                    except UnicodeDecodeError as exc:
                        raise StreamError("response body is not valid UTF-8") from exc
                    for line in lines:
                        frame = self._parse_line(line)
                        if frame is not None:
                            yield frame

                try:
                    tail = decoder.close()
                except UnicodeDecodeError as exc:
                    raise StreamError("response body is not valid UTF-8") from exc
                for line in tail:
                    frame = self._parse_line(line)
                    if frame is not None:
                        yield frame

                if not received:
                    raise StreamError("empty response body")
        except httpx.DecodingError as exc:
            raise StreamError("response body could not be decoded") from exc
        except httpx.InvalidURL as exc:
            raise InvalidEndpointError(url) from exc
        except httpx.TransportError as exc:
            LOGGER.warning(
                "client.stream.transport_failed",
                extra={"event": "client.stream.transport_failed", "error": str(exc)},
            )
            raise NetworkError(exc) from exc

    @staticmethod
    def _parse_line(line: str) -> SSEFrame | None:
        try:
            frame = parse_frame(line)
        except ValueError as exc:
            LOGGER.warning(
                "client.stream.line_invalid",
                extra={
                    "event": "client.stream.line_invalid",
                    "error": str(exc),
                    "line": line[:200],
                },
            )
            return None
        if frame is not None and frame.kind == "done":
            LOGGER.debug("client.stream.done", extra={"event": "client.stream.done"})
            return None
        return frame

    async def complete_stream(
        self,
        messages: Sequence[MessageLike],
        on_chunk: ChunkCallback,
        on_complete: CompleteCallback,
    ) -> None:
        """Stream a reply through callbacks.

        ``on_chunk`` receives each chunk in order; a full ``message`` frame
        replaces the accumulated text. ``on_complete`` is called exactly once,
        last, with the accumulated text or the failure. Both run on the
        caller's event loop.
        """
        accumulated = ""
        try:
            async for frame in self.stream(messages):
                if frame.kind == "delta":
                    accumulated += frame.text
                else:
                    accumulated = frame.text
                on_chunk(frame.text)
        except CompletionError as exc:
            LOGGER.warning(
                "client.stream.failed",
                extra={
                    "event": "client.stream.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            on_complete(CompletionResult.failure(exc))
            return

        LOGGER.info(
            "client.stream.complete",
            extra={"event": "client.stream.complete", "characters": len(accumulated)},
        )
        on_complete(CompletionResult.success(accumulated))

    async def test_connection(self) -> tuple[bool, str]:
        """Send a short test message through the non-streaming path."""
        try:
            reply = await self.complete([ChatMessage(role="user", content=CONNECTION_PROBE)])
        except CompletionError as exc:
            return False, f"API connection failed: {exc.description}"
        return True, f"API connection succeeded: {reply}"
