"""Send-message orchestration between the conversation store and the client.

``ChatSession`` is what the rendering layer calls when the user presses send:
it records the user message, inserts a ``loading`` assistant placeholder,
and moves that placeholder through ``streaming`` to ``completed`` or
``error`` as the request progresses. All store updates happen on the event
loop that called ``send``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
import logging
from uuid import UUID

from .client import ChatCompletionClient, ChatMessage, CompletionResult, SettingsSource
from .exceptions import CompletionError, StreamError
from .models import Message, MessageStatus
from .store import ConversationStore
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful AI assistant who is good at answering user questions."
CONTEXT_TEMPLATE = "Here is context information provided by the user:\n\n{selected_text}"
QUOTE_TEMPLATE = 'Refer to the following content:\n"{selected_text}"\n\n{question}'
ERROR_TEMPLATE = "Failed to get AI reply: {description}"
CANCELLED_TEXT = "Request cancelled."


def compose_user_content(question: str, selected_text: str = "") -> str:
    """Return the user bubble text, quoting any selected text above the question."""
    if selected_text:
        return QUOTE_TEMPLATE.format(selected_text=selected_text, question=question)
    return question


def history_messages(messages: Iterable[Message]) -> list[ChatMessage]:
    """Convert prior turns into request messages, skipping unfinished or failed replies."""
    history: list[ChatMessage] = []
    for message in messages:
        if message.is_user:
            history.append(ChatMessage(role="user", content=message.content))
        elif message.status is MessageStatus.COMPLETED and message.content:
            history.append(ChatMessage(role="assistant", content=message.content))
    return history


class ChatSession:
    """Drive one assistant reply per ``send`` call."""

    def __init__(
        self,
        store: ConversationStore,
        client: ChatCompletionClient,
        settings: SettingsSource,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.store = store
        self.client = client
        self._settings = settings
        self.system_prompt = system_prompt
        self._tasks = TaskManager()

    @property
    def is_processing(self) -> bool:
        return len(self._tasks) > 0

    def build_request_messages(
        self,
        question: str,
        selected_text: str = "",
        history: Iterable[Message] = (),
    ) -> list[ChatMessage]:
        request = [ChatMessage(role="system", content=self.system_prompt)]
        request.extend(history_messages(history))
        if selected_text:
            request.append(
                ChatMessage(
                    role="system",
                    content=CONTEXT_TEMPLATE.format(selected_text=selected_text),
                )
            )
        request.append(ChatMessage(role="user", content=question))
        return request

    def send(self, question: str, selected_text: str = "") -> UUID | None:
        """Start a reply and return the placeholder message id.

        Must be called from a running event loop. Returns ``None`` without
        side effects when there is neither a question nor selected text.
        """
        question = question.strip()
        if not question and not selected_text:
            return None

        conversation = self.store.current_conversation
        prior = list(conversation.messages) if conversation is not None else []
        request = self.build_request_messages(question, selected_text, prior)

        self.store.add_message(
            Message(content=compose_user_content(question, selected_text), is_user=True)
        )
        placeholder = Message(content="", is_user=False, status=MessageStatus.LOADING)
        self.store.add_message(placeholder)

        streaming = self._settings().use_stream_output
        LOGGER.info(
            "session.send",
            extra={
                "event": "session.send",
                "message_id": str(placeholder.id),
                "streaming": streaming,
                "with_selection": bool(selected_text),
            },
        )
        task = asyncio.create_task(
            self._run(placeholder.id, request, streaming),
            name=f"completion-{placeholder.id}",
        )
        self._tasks.add(task, name=str(placeholder.id))
        return placeholder.id

    async def ask(self, question: str, selected_text: str = "") -> Message | None:
        """Send and wait; return the finished assistant message if it still exists."""
        message_id = self.send(question, selected_text)
        if message_id is None:
            return None
        task = self._tasks.get(str(message_id))
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._find(message_id)

    async def wait(self) -> None:
        await self._tasks.wait_all()

    async def abandon(self, message_id: UUID) -> bool:
        """Cancel an in-flight reply; its placeholder is marked as failed."""
        cancelled = await self._tasks.cancel(str(message_id))
        if cancelled:
            self.store.update_message(
                message_id, content=CANCELLED_TEXT, status=MessageStatus.ERROR
            )
        return cancelled

    def _find(self, message_id: UUID) -> Message | None:
        for conversation in self.store.conversations:
            message = conversation.find_message(message_id)
            if message is not None:
                return message
        return None

    async def _run(
        self, message_id: UUID, request: list[ChatMessage], streaming: bool
    ) -> None:
        try:
            if streaming:
                await self.client.complete_stream(
                    request,
                    on_chunk=lambda chunk: self._on_chunk(message_id, chunk),
                    on_complete=lambda result: self._on_complete(message_id, result),
                )
                return
            content = await self.client.complete(request)
        except CompletionError as exc:
            self._on_complete(message_id, CompletionResult.failure(exc))
            return
        except Exception as exc:  # noqa: BLE001 - the placeholder must not stay loading.
            LOGGER.exception(
                "session.reply.crashed",
                extra={
                    "event": "session.reply.crashed",
                    "message_id": str(message_id),
                    "error_type": type(exc).__name__,
                },
            )
            error = StreamError(str(exc)) if streaming else CompletionError(str(exc))
            self._on_complete(message_id, CompletionResult.failure(error))
            return
        self._on_complete(message_id, CompletionResult.success(content))

    def _on_chunk(self, message_id: UUID, chunk: str) -> None:
        self.store.update_message(message_id, append=chunk, status=MessageStatus.STREAMING)

    def _on_complete(self, message_id: UUID, result: CompletionResult) -> None:
        if result.error is not None:
            LOGGER.warning(
                "session.reply.failed",
                extra={
                    "event": "session.reply.failed",
                    "message_id": str(message_id),
                    "error_type": type(result.error).__name__,
                    "reason": result.error.failure_reason,
                },
            )
            self.store.update_message(
                message_id,
                content=ERROR_TEMPLATE.format(description=result.error.description),
                status=MessageStatus.ERROR,
            )
            return
        # The accumulated text already reflects any full-message replacement.
        self.store.update_message(
            message_id, content=result.value or "", status=MessageStatus.COMPLETED
        )
