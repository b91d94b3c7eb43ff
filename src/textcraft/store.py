"""Conversation collection with dual-backend write-through persistence."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
import json
import logging
from pathlib import Path
from typing import Any
from uuid import UUID

from .exceptions import PersistenceError
from .models import (
    Conversation,
    Message,
    MessageStatus,
    conversations_from_payload,
    conversations_to_payload,
    utc_now,
)
from .storage import AtomicFileStore, FileStore, KeyValueStore
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

STORAGE_KEY = "textcraft_conversations"
FILE_PATH_KEY = "textcraft_conversations_filePath"
DEFAULT_HISTORY_LIMIT = 50

WarningCallback = Callable[[str], None]


class ConversationStore:
    """Own the ordered conversation list and the active-conversation pointer.

    All mutations happen on the caller's thread (the owner). Each mutation
    ends with a persist: the collection is trimmed to ``history_limit``, a
    snapshot is serialized on the owner, and the snapshot is written to the
    key-value backup and the primary file by a single worker thread so writes
    land in submission order. Inside a running event loop the write does not
    block the loop; ``flush()`` waits for it.

    Write failures are logged and reported through ``on_warning``; the
    in-memory collection is never rolled back.
    """

    def __init__(
        self,
        file_path: Path | str,
        key_value_store: KeyValueStore,
        file_store: FileStore | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        on_warning: WarningCallback | None = None,
    ) -> None:
        self.file_path = Path(file_path).expanduser()
        self._kv = key_value_store
        self._files = file_store or AtomicFileStore()
        self._history_limit = max(1, history_limit)
        self.on_warning = on_warning
        self._conversations: list[Conversation] = []
        self._active_id: UUID | None = None
        self._tasks = TaskManager()
        self._executor: ThreadPoolExecutor | None = None
        self._load()

    # -- read access ---------------------------------------------------------

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return tuple(self._conversations)

    @property
    def active_id(self) -> UUID | None:
        return self._active_id

    @property
    def current_conversation(self) -> Conversation | None:
        """The active conversation, or ``None`` if the pointer matches nothing."""
        if self._active_id is None:
            return None
        return self.find_conversation(self._active_id)

    @property
    def history_limit(self) -> int:
        return self._history_limit

    @history_limit.setter
    def history_limit(self, value: int) -> None:
        # Applied at the next persist.
        self._history_limit = max(1, value)

    def find_conversation(self, conversation_id: UUID) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def _index_of(self, conversation_id: UUID) -> int | None:
        for index, conversation in enumerate(self._conversations):
            if conversation.id == conversation_id:
                return index
        return None

    # -- mutations -----------------------------------------------------------

    def create_conversation(self) -> UUID:
        """Insert an empty conversation at the head and make it active."""
        return self._create().id

    def _create(self) -> Conversation:
        conversation = Conversation()
        self._conversations.insert(0, conversation)
        self._active_id = conversation.id
        LOGGER.info(
            "store.conversation.created",
            extra={
                "event": "store.conversation.created",
                "conversation_id": str(conversation.id),
            },
        )
        self._persist()
        return conversation

    def switch_active(self, conversation_id: UUID) -> None:
        """Point the active selection at ``conversation_id`` without validation."""
        self._active_id = conversation_id
        LOGGER.info(
            "store.conversation.switched",
            extra={
                "event": "store.conversation.switched",
                "conversation_id": str(conversation_id),
            },
        )

    def add_message(self, message: Message) -> UUID:
        """Append ``message`` to the active conversation and return that conversation's id.

        Creates a conversation first when none is active. The first user
        message names the conversation, and the conversation moves to the
        head of the list.
        """
        conversation = self.current_conversation
        if conversation is None:
            LOGGER.info(
                "store.message.no_active_conversation",
                extra={"event": "store.message.no_active_conversation"},
            )
            conversation = self._create()

        conversation.messages.append(message)
        if message.is_user and conversation.user_message_count == 1:
            conversation.update_title()
            LOGGER.info(
                "store.conversation.titled",
                extra={
                    "event": "store.conversation.titled",
                    "conversation_id": str(conversation.id),
                    "title": conversation.title,
                },
            )

        conversation.timestamp = utc_now()
        index = self._index_of(conversation.id)
        if index is not None and index > 0:
            self._conversations.insert(0, self._conversations.pop(index))

        LOGGER.debug(
            "store.message.added",
            extra={
                "event": "store.message.added",
                "conversation_id": str(conversation.id),
                "message_id": str(message.id),
                "author": "user" if message.is_user else "assistant",
            },
        )
        self._persist()
        return conversation.id

    def update_message(
        self,
        message_id: UUID,
        *,
        content: str | None = None,
        append: str | None = None,
        status: MessageStatus | None = None,
    ) -> bool:
        """Update a message in place wherever it lives.

        Returns False when the message no longer exists or the status change
        is not a legal transition. Persists once the message reaches a
        terminal status.
        """
        message = None
        for conversation in self._conversations:
            message = conversation.find_message(message_id)
            if message is not None:
                break
        if message is None:
            LOGGER.debug(
                "store.message.update_missing",
                extra={
                    "event": "store.message.update_missing",
                    "message_id": str(message_id),
                },
            )
            return False

        if (
            status is not None
            and status != message.status
            and not message.status.can_transition_to(status)
        ):
            LOGGER.warning(
                "store.message.illegal_transition",
                extra={
                    "event": "store.message.illegal_transition",
                    "message_id": str(message_id),
                    "from_status": message.status.value,
                    "to_status": status.value,
                },
            )
            return False

        if content is not None:
            message.content = content
        if append:
            message.content += append
        if status is not None:
            message.status = status
            if status.is_terminal:
                self._persist()
        return True

    def delete_conversation(self, conversation_id: UUID) -> None:
        """Remove a conversation; re-point the active selection if it was active."""
        self._conversations = [
            c for c in self._conversations if c.id != conversation_id
        ]
        LOGGER.info(
            "store.conversation.deleted",
            extra={
                "event": "store.conversation.deleted",
                "conversation_id": str(conversation_id),
            },
        )
        if self._active_id == conversation_id:
            if self._conversations:
                self._active_id = self._conversations[0].id
            else:
                self.create_conversation()
        self._persist()

    def clear_active(self) -> None:
        """Drop every message of the active conversation, keeping id and title."""
        conversation = self.current_conversation
        if conversation is None:
            LOGGER.warning(
                "store.clear.no_active_conversation",
                extra={"event": "store.clear.no_active_conversation"},
            )
            return
        conversation.messages.clear()
        LOGGER.info(
            "store.conversation.cleared",
            extra={
                "event": "store.conversation.cleared",
                "conversation_id": str(conversation.id),
            },
        )
        self._persist()

    # -- persistence ---------------------------------------------------------

    def save_all(self) -> None:
        """Persist synchronously; safe to call repeatedly from lifecycle hooks."""
        LOGGER.info("store.save_all", extra={"event": "store.save_all"})
        self._enforce_history_limit()
        self._report(self._submit(self._snapshot()).result())

    async def flush(self) -> None:
        """Wait for every write scheduled from inside the event loop."""
        await self._tasks.wait_all()

    def close(self) -> None:
        """Release the writer thread after pending writes finish."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _enforce_history_limit(self) -> None:
        overflow = len(self._conversations) - self._history_limit
        if overflow > 0:
            self._conversations = self._conversations[: self._history_limit]
            LOGGER.info(
                "store.history.trimmed",
                extra={
                    "event": "store.history.trimmed",
                    "removed": overflow,
                    "limit": self._history_limit,
                },
            )

    def _snapshot(self) -> list[dict[str, Any]]:
        return conversations_to_payload(self._conversations)

    def _submit(self, snapshot: list[dict[str, Any]]) -> Future[list[str]]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="textcraft-persist"
            )
        return self._executor.submit(self._write_snapshot, snapshot)

    def _persist(self) -> None:
        self._enforce_history_limit()
        future = self._submit(self._snapshot())
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._report(future.result())
            return
        self._tasks.add(asyncio.ensure_future(self._await_write(future)))

    async def _await_write(self, future: Future[list[str]]) -> None:
        self._report(await asyncio.wrap_future(future))

    def _write_snapshot(self, snapshot: list[dict[str, Any]]) -> list[str]:
        """Write both backends; runs on the writer thread and returns warnings."""
        warnings: list[str] = []
        try:
            self._kv.set(STORAGE_KEY, json.dumps(snapshot, ensure_ascii=False))
        except (OSError, PersistenceError) as exc:
            LOGGER.error(
                "store.save.backup_failed",
                extra={"event": "store.save.backup_failed", "error": str(exc)},
            )
            warnings.append(f"Failed to save conversation backup: {exc}")

        try:
            self._files.write_text(
                self.file_path, json.dumps(snapshot, ensure_ascii=False, indent=2)
            )
            self._kv.set(FILE_PATH_KEY, str(self.file_path.resolve()))
        except (OSError, PersistenceError) as exc:
            LOGGER.error(
                "store.save.file_failed",
                extra={
                    "event": "store.save.file_failed",
                    "path": str(self.file_path),
                    "error": str(exc),
                },
            )
            warnings.append(f"Failed to save conversations: {exc}")
        else:
            LOGGER.debug(
                "store.save.complete",
                extra={
                    "event": "store.save.complete",
                    "path": str(self.file_path),
                    "conversations": len(snapshot),
                },
            )
        return warnings

    def _report(self, warnings: list[str]) -> None:
        if self.on_warning is None:
            return
        for warning in warnings:
            self.on_warning(warning)

    def _load(self) -> None:
        conversations = self._load_from_file()
        if conversations is None:
            LOGGER.info(
                "store.load.file_unavailable",
                extra={"event": "store.load.file_unavailable"},
            )
            conversations = self._load_from_backup()

        if conversations:
            self._conversations = conversations
            self._active_id = conversations[0].id
            LOGGER.info(
                "store.load.complete",
                extra={"event": "store.load.complete", "conversations": len(conversations)},
            )
            return

        LOGGER.info("store.load.empty", extra={"event": "store.load.empty"})
        self._conversations = []
        self.create_conversation()

    def _load_from_file(self) -> list[Conversation] | None:
        raw_path = self._kv.get(FILE_PATH_KEY)
        if not isinstance(raw_path, str) or not raw_path:
            return None
        path = Path(raw_path)
        try:
            text = self._files.read_text(path)
            return conversations_from_payload(json.loads(text))
        except (OSError, ValueError) as exc:
            LOGGER.warning(
                "store.load.file_failed",
                extra={"event": "store.load.file_failed", "path": str(path), "error": str(exc)},
            )
            return None

    def _load_from_backup(self) -> list[Conversation] | None:
        blob = self._kv.get(STORAGE_KEY)
        if not isinstance(blob, str) or not blob:
            return None
        try:
            return conversations_from_payload(json.loads(blob))
        except ValueError as exc:
            LOGGER.warning(
                "store.load.backup_failed",
                extra={"event": "store.load.backup_failed", "error": str(exc)},
            )
            return None
