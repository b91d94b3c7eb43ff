"""Storage ports for conversation persistence.

Two narrow interfaces back the conversation store:

* ``FileStore`` - the primary structured file, written atomically.
* ``KeyValueStore`` - a small preferences-style store holding the backup blob,
  the cached primary-file path and scalar chat settings.

Tests substitute in-memory implementations for either port.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Protocol

from .exceptions import PersistenceError

LOGGER = logging.getLogger(__name__)


class FileStore(Protocol):
    """Primary file backend."""

    def read_text(self, path: Path) -> str:
        """Return file contents; raises ``OSError`` when unreadable."""
        ...

    def write_text(self, path: Path, text: str) -> None:
        """Replace file contents atomically; raises ``OSError`` on failure."""
        ...


class KeyValueStore(Protocol):
    """Flat key-value backend for small values."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


def _enforce_permissions(path: Path, mode: int = 0o600) -> None:
    """Best-effort POSIX permission tightening."""
    if os.name != "posix":
        return
    try:
        path.chmod(mode)
    except OSError:
        LOGGER.debug("Unable to enforce %o permissions for %s", mode, path)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _enforce_permissions(path.parent, 0o700)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    _enforce_permissions(path)


class AtomicFileStore:
    """Local filesystem backend using write-to-temp-then-rename."""

    def read_text(self, path: Path) -> str:
        return path.read_text(encoding="utf-8")

    def write_text(self, path: Path, text: str) -> None:
        atomic_write_text(path, text)


class MemoryKeyValueStore:
    """Process-local key-value store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any | None:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)


class JsonKeyValueStore:
    """Key-value store persisted as a single JSON object on disk.

    Values must be JSON-serializable. The file is re-read lazily on first access
    and rewritten atomically on every ``set``/``remove``. A corrupt file is
    treated as empty rather than fatal.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._values: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._values is not None:
            return self._values
        values: dict[str, Any] = {}
        if self.path.exists():
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(payload, dict):
                    values = payload
                else:
                    LOGGER.warning(
                        "kv.load.invalid",
                        extra={"event": "kv.load.invalid", "path": str(self.path)},
                    )
            except (OSError, ValueError) as exc:
                LOGGER.warning(
                    "kv.load.failed",
                    extra={
                        "event": "kv.load.failed",
                        "path": str(self.path),
                        "error": str(exc),
                    },
                )
        self._values = values
        return values

    def _flush(self, values: dict[str, Any]) -> None:
        try:
            atomic_write_text(
                self.path, json.dumps(values, ensure_ascii=False, indent=2, sort_keys=True)
            )
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(
                f"Unable to write key-value store {self.path}: {exc}"
            ) from exc

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            values = self._load()
            values[key] = value
            self._flush(values)

    def remove(self, key: str) -> None:
        with self._lock:
            values = self._load()
            if key in values:
                del values[key]
                self._flush(values)
