"""Tests for the conversation store: ordering, capacity, and persistence."""

from __future__ import annotations

import json
from pathlib import Path
import tempfile
import unittest
from uuid import uuid4

from textcraft.models import Conversation, Message, MessageStatus, conversations_to_payload
from textcraft.storage import JsonKeyValueStore, MemoryKeyValueStore
from textcraft.store import FILE_PATH_KEY, STORAGE_KEY, ConversationStore

FILE_PATH = Path("/virtual/TextCraft/conversations.json")


class MemoryFileStore:
    """In-memory primary file backend."""

    def __init__(self, files: dict[Path, str] | None = None) -> None:
        self.files: dict[Path, str] = dict(files or {})
        self.fail_writes = False
        self.writes = 0

    def read_text(self, path: Path) -> str:
        try:
            return self.files[Path(path)]
        except KeyError:
            raise FileNotFoundError(str(path)) from None

    def write_text(self, path: Path, text: str) -> None:
        if self.fail_writes:
            raise OSError("read-only file system")
        self.writes += 1
        self.files[Path(path)] = text


class FailingKeyValueStore(MemoryKeyValueStore):
    """Key-value store whose writes always fail."""

    def set(self, key: str, value: object) -> None:
        raise OSError("defaults unavailable")


def _make_store(
    history_limit: int = 50,
    kv: MemoryKeyValueStore | None = None,
    files: MemoryFileStore | None = None,
    warnings: list[str] | None = None,
) -> tuple[ConversationStore, MemoryKeyValueStore, MemoryFileStore]:
    kv = kv if kv is not None else MemoryKeyValueStore()
    files = files if files is not None else MemoryFileStore()
    store = ConversationStore(
        FILE_PATH,
        kv,
        file_store=files,
        history_limit=history_limit,
        on_warning=warnings.append if warnings is not None else None,
    )
    return store, kv, files


def _persisted(files: MemoryFileStore) -> list[dict]:
    return json.loads(files.files[FILE_PATH])


class StoreInitializationTests(unittest.TestCase):
    """Validate load order and the at-least-one invariant."""

    def test_empty_state_creates_one_active_conversation(self) -> None:
        store, kv, files = _make_store()
        self.assertEqual(len(store.conversations), 1)
        self.assertEqual(store.active_id, store.conversations[0].id)
        self.assertIsNotNone(store.current_conversation)
        self.assertEqual(len(_persisted(files)), 1)
        self.assertEqual(kv.get(FILE_PATH_KEY), str(FILE_PATH.resolve()))

    def test_corrupt_primary_and_backup_creates_one_conversation(self) -> None:
        kv = MemoryKeyValueStore(
            {FILE_PATH_KEY: str(FILE_PATH), STORAGE_KEY: "{corrupt"}
        )
        files = MemoryFileStore({FILE_PATH: "not json at all"})
        store, _, _ = _make_store(kv=kv, files=files)
        self.assertEqual(len(store.conversations), 1)
        self.assertEqual(store.active_id, store.conversations[0].id)

    def test_loads_primary_file_from_cached_path(self) -> None:
        saved = [Conversation(title="first"), Conversation(title="second")]
        kv = MemoryKeyValueStore({FILE_PATH_KEY: str(FILE_PATH)})
        files = MemoryFileStore(
            {FILE_PATH: json.dumps(conversations_to_payload(saved), indent=2)}
        )
        store, _, _ = _make_store(kv=kv, files=files)
        self.assertEqual([c.title for c in store.conversations], ["first", "second"])
        self.assertEqual(store.active_id, saved[0].id)

    def test_falls_back_to_backup_when_primary_missing(self) -> None:
        saved = [Conversation(title="from backup")]
        kv = MemoryKeyValueStore(
            {
                FILE_PATH_KEY: "/nowhere/conversations.json",
                STORAGE_KEY: json.dumps(conversations_to_payload(saved)),
            }
        )
        store, _, _ = _make_store(kv=kv)
        self.assertEqual([c.title for c in store.conversations], ["from backup"])
        self.assertEqual(store.active_id, saved[0].id)

    def test_falls_back_to_backup_when_path_never_recorded(self) -> None:
        saved = [Conversation(title="only backup")]
        kv = MemoryKeyValueStore({STORAGE_KEY: json.dumps(conversations_to_payload(saved))})
        store, _, _ = _make_store(kv=kv)
        self.assertEqual(store.conversations[0].title, "only backup")

    def test_empty_persisted_array_still_yields_one_conversation(self) -> None:
        kv = MemoryKeyValueStore({FILE_PATH_KEY: str(FILE_PATH)})
        files = MemoryFileStore({FILE_PATH: "[]"})
        store, _, _ = _make_store(kv=kv, files=files)
        self.assertEqual(len(store.conversations), 1)


class StoreMutationTests(unittest.TestCase):
    """Validate create/switch/add/delete/clear semantics."""

    def test_create_inserts_at_head_and_activates(self) -> None:
        store, _, _ = _make_store()
        new_id = store.create_conversation()
        self.assertEqual(store.conversations[0].id, new_id)
        self.assertEqual(store.active_id, new_id)
        self.assertEqual(len(store.conversations), 2)

    def test_switch_active_does_not_validate_or_persist(self) -> None:
        store, _, files = _make_store()
        writes = files.writes
        missing = uuid4()
        store.switch_active(missing)
        self.assertEqual(store.active_id, missing)
        self.assertIsNone(store.current_conversation)
        self.assertEqual(files.writes, writes)

    def test_add_message_moves_mutated_conversation_to_head(self) -> None:
        store, _, _ = _make_store()
        first = store.conversations[0].id
        second = store.create_conversation()
        third = store.create_conversation()
        for target in (first, third, second, first, first, third):
            store.switch_active(target)
            store.add_message(Message(content=f"to {target}", is_user=True))
            self.assertEqual(store.conversations[0].id, target)

    def test_add_message_updates_timestamp(self) -> None:
        store, _, _ = _make_store()
        before = store.conversations[0].timestamp
        store.add_message(Message(content="hello", is_user=True))
        self.assertGreaterEqual(store.conversations[0].timestamp, before)

    def test_add_message_without_active_conversation_creates_one(self) -> None:
        store, _, _ = _make_store()
        store.switch_active(uuid4())
        message = Message(content="orphan", is_user=True)
        conversation_id = store.add_message(message)
        self.assertEqual(len(store.conversations), 2)
        self.assertEqual(store.active_id, conversation_id)
        self.assertEqual(store.conversations[0].messages, [message])

    def test_first_user_message_sets_title(self) -> None:
        store, _, _ = _make_store()
        store.add_message(Message(content="assistant greeting", is_user=False))
        store.add_message(Message(content="What does this code do?", is_user=True))
        store.add_message(Message(content="later question", is_user=True))
        self.assertEqual(store.conversations[0].title, "What does this code ...")

    def test_short_first_user_message_is_title_verbatim(self) -> None:
        store, _, _ = _make_store()
        store.add_message(Message(content="Translate", is_user=True))
        self.assertEqual(store.conversations[0].title, "Translate")

    def test_delete_active_switches_to_head(self) -> None:
        store, _, _ = _make_store()
        older = store.conversations[0].id
        newer = store.create_conversation()
        store.delete_conversation(newer)
        self.assertEqual([c.id for c in store.conversations], [older])
        self.assertEqual(store.active_id, older)

    def test_delete_inactive_keeps_active(self) -> None:
        store, _, _ = _make_store()
        older = store.conversations[0].id
        newer = store.create_conversation()
        store.delete_conversation(older)
        self.assertEqual(store.active_id, newer)

    def test_delete_last_conversation_creates_replacement(self) -> None:
        store, _, files = _make_store()
        only = store.conversations[0].id
        store.delete_conversation(only)
        self.assertEqual(len(store.conversations), 1)
        self.assertNotEqual(store.active_id, only)
        self.assertEqual(store.active_id, store.conversations[0].id)
        self.assertEqual([c["id"] for c in _persisted(files)], [str(store.active_id)])

    def test_clear_active_keeps_id_and_title(self) -> None:
        store, _, files = _make_store()
        store.add_message(Message(content="keep this title", is_user=True))
        conversation = store.conversations[0]
        store.clear_active()
        self.assertEqual(store.conversations[0].id, conversation.id)
        self.assertEqual(store.conversations[0].title, "keep this title")
        self.assertEqual(store.conversations[0].messages, [])
        self.assertEqual(_persisted(files)[0]["messages"], [])

    def test_clear_without_active_is_logged_no_op(self) -> None:
        store, _, files = _make_store()
        store.add_message(Message(content="x", is_user=True))
        store.switch_active(uuid4())
        writes = files.writes
        with self.assertLogs("textcraft.store", level="WARNING") as logs:
            store.clear_active()
        self.assertEqual(files.writes, writes)
        self.assertEqual(len(store.conversations[0].messages), 1)
        self.assertTrue(any("store.clear.no_active_conversation" in line for line in logs.output))


class StoreUpdateMessageTests(unittest.TestCase):
    """Validate in-place updates addressed by message id."""

    def test_updates_message_outside_head_conversation(self) -> None:
        store, _, _ = _make_store()
        placeholder = Message(content="", is_user=False, status=MessageStatus.LOADING)
        store.add_message(placeholder)
        store.create_conversation()
        store.add_message(Message(content="elsewhere", is_user=True))

        self.assertTrue(
            store.update_message(placeholder.id, append="Hi", status=MessageStatus.STREAMING)
        )
        self.assertTrue(store.update_message(placeholder.id, append=" there"))
        self.assertEqual(placeholder.content, "Hi there")
        self.assertEqual(placeholder.status, MessageStatus.STREAMING)

    def test_missing_message_is_ignored(self) -> None:
        store, _, _ = _make_store()
        self.assertFalse(store.update_message(uuid4(), content="late"))

    def test_terminal_status_persists(self) -> None:
        store, _, files = _make_store()
        placeholder = Message(content="", is_user=False, status=MessageStatus.LOADING)
        store.add_message(placeholder)
        store.update_message(placeholder.id, append="partial", status=MessageStatus.STREAMING)
        self.assertEqual(_persisted(files)[0]["messages"][0]["content"], "")
        store.update_message(placeholder.id, content="done", status=MessageStatus.COMPLETED)
        persisted = _persisted(files)[0]["messages"][0]
        self.assertEqual(persisted["content"], "done")
        self.assertEqual(persisted["status"], "completed")

    def test_illegal_transition_is_rejected(self) -> None:
        store, _, _ = _make_store()
        message = Message(content="final", is_user=False, status=MessageStatus.COMPLETED)
        store.add_message(message)
        self.assertFalse(
            store.update_message(message.id, append="more", status=MessageStatus.STREAMING)
        )
        self.assertEqual(message.content, "final")


class StoreCapacityTests(unittest.TestCase):
    """Validate the history limit."""

    def test_oldest_conversations_are_dropped(self) -> None:
        store, _, files = _make_store(history_limit=3)
        created = [store.conversations[0].id]
        for _ in range(5):
            created.append(store.create_conversation())
        self.assertEqual(len(store.conversations), 3)
        self.assertEqual([c.id for c in store.conversations], created[::-1][:3])
        self.assertEqual(len(_persisted(files)), 3)

    def test_retains_most_recently_active(self) -> None:
        store, _, _ = _make_store(history_limit=3)
        oldest = store.conversations[0].id
        store.create_conversation()
        store.create_conversation()
        store.switch_active(oldest)
        store.add_message(Message(content="revive", is_user=True))
        newest = store.create_conversation()
        ids = [c.id for c in store.conversations]
        self.assertEqual(len(ids), 3)
        self.assertEqual(ids[0], newest)
        self.assertEqual(ids[1], oldest)

    def test_lowered_limit_applies_on_next_persist(self) -> None:
        store, _, _ = _make_store(history_limit=10)
        for _ in range(5):
            store.create_conversation()
        store.history_limit = 2
        self.assertEqual(len(store.conversations), 6)
        store.save_all()
        self.assertEqual(len(store.conversations), 2)


class StorePersistenceFailureTests(unittest.TestCase):
    """Validate non-fatal handling of backend write failures."""

    def test_file_failure_warns_and_keeps_memory_state(self) -> None:
        warnings: list[str] = []
        files = MemoryFileStore()
        store, _, _ = _make_store(files=files, warnings=warnings)
        files.fail_writes = True
        message = Message(content="survives", is_user=True)
        with self.assertLogs("textcraft.store", level="ERROR"):
            store.add_message(message)
        self.assertEqual(store.conversations[0].messages, [message])
        self.assertEqual(len(warnings), 1)
        self.assertIn("Failed to save conversations", warnings[0])

    def test_backup_failure_still_writes_primary_file(self) -> None:
        warnings: list[str] = []
        files = MemoryFileStore()
        store, _, _ = _make_store(
            kv=FailingKeyValueStore(), files=files, warnings=warnings
        )
        self.assertIn(FILE_PATH, files.files)
        self.assertTrue(warnings)
        self.assertEqual(len(store.conversations), 1)

    def test_save_all_is_idempotent(self) -> None:
        store, _, files = _make_store()
        store.add_message(Message(content="x", is_user=True))
        store.save_all()
        first = files.files[FILE_PATH]
        store.save_all()
        self.assertEqual(files.files[FILE_PATH], first)


class StoreDiskRoundTripTests(unittest.TestCase):
    """Validate persistence through real file and key-value backends."""

    def test_reload_from_disk(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            base = Path(temp_dir)
            kv_path = base / "defaults.json"
            file_path = base / "TextCraft" / "conversations.json"
            store = ConversationStore(file_path, JsonKeyValueStore(kv_path))
            store.add_message(Message(content="persist me", is_user=True))
            store.add_message(Message(content="answer", is_user=False))
            expected = store.conversations
            store.close()

            text = file_path.read_text(encoding="utf-8")
            self.assertIn("\n  ", text)  # Pretty-printed.

            reloaded = ConversationStore(file_path, JsonKeyValueStore(kv_path))
            self.assertEqual(reloaded.conversations, expected)
            self.assertEqual(reloaded.active_id, expected[0].id)
            reloaded.close()

    def test_reload_uses_backup_after_file_deleted(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            base = Path(temp_dir)
            kv_path = base / "defaults.json"
            file_path = base / "conversations.json"
            store = ConversationStore(file_path, JsonKeyValueStore(kv_path))
            store.add_message(Message(content="in backup too", is_user=True))
            store.close()
            file_path.unlink()

            reloaded = ConversationStore(file_path, JsonKeyValueStore(kv_path))
            self.assertEqual(reloaded.conversations[0].title, "in backup too")
            reloaded.close()


class StoreAsyncPersistenceTests(unittest.IsolatedAsyncioTestCase):
    """Validate that writes from inside the event loop are flushed in order."""

    async def test_flush_waits_for_background_writes(self) -> None:
        warnings: list[str] = []
        store, _, files = _make_store(warnings=warnings)
        for index in range(5):
            store.add_message(Message(content=f"m{index}", is_user=True))
        await store.flush()
        messages = _persisted(files)[0]["messages"]
        self.assertEqual([m["content"] for m in messages], [f"m{i}" for i in range(5)])
        self.assertEqual(warnings, [])
        store.close()

    async def test_background_write_failure_reports_warning(self) -> None:
        warnings: list[str] = []
        files = MemoryFileStore()
        store, _, _ = _make_store(files=files, warnings=warnings)
        await store.flush()
        files.fail_writes = True
        store.create_conversation()
        await store.flush()
        self.assertEqual(len(warnings), 1)
        store.close()


if __name__ == "__main__":
    unittest.main()
