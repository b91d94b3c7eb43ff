"""Process-level wiring of the store, client, settings and session.

One ``TextcraftApp`` is built at process start and its components are handed
to consumers; nothing in the package relies on module-level singletons. The
HTTP client and the session are built on first use, so commands that only
touch stored conversations never open a connection pool.
"""

from __future__ import annotations

from collections.abc import Callable
import logging

from .client import ChatCompletionClient
from .config import Config
from .session import ChatSession
from .settings import MAX_HISTORY_ITEMS_KEY, SettingsStore
from .storage import JsonKeyValueStore, KeyValueStore
from .store import ConversationStore

LOGGER = logging.getLogger(__name__)


class TextcraftApp:
    """Own the core components and forward host lifecycle signals to them."""

    def __init__(
        self,
        config: Config,
        key_value_store: KeyValueStore | None = None,
        client: ChatCompletionClient | None = None,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self.key_value_store = key_value_store or JsonKeyValueStore(
            config.persistence.key_value_path
        )
        self.settings = SettingsStore(self.key_value_store)
        self.store = ConversationStore(
            config.persistence.file_path,
            self.key_value_store,
            history_limit=self._history_limit(),
            on_warning=on_warning or self._log_warning,
        )
        self._client = client
        self._session: ChatSession | None = None

    @property
    def client(self) -> ChatCompletionClient:
        if self._client is None:
            self._client = ChatCompletionClient(
                self.settings.load,
                base_url=self.config.api.base_url,
                timeout=self.config.api.timeout,
            )
        return self._client

    @property
    def session(self) -> ChatSession:
        if self._session is None:
            self._session = ChatSession(self.store, self.client, self.settings.load)
        return self._session

    def _history_limit(self) -> int:
        # The settings form value wins over the config file once it has been saved.
        if self.key_value_store.get(MAX_HISTORY_ITEMS_KEY) is None:
            return self.config.history.limit
        return self.settings.load().max_history_items

    @staticmethod
    def _log_warning(message: str) -> None:
        LOGGER.warning("app.warning", extra={"event": "app.warning", "detail": message})

    def apply_settings(self) -> None:
        """Re-read settings that the store caches (the history limit)."""
        self.store.history_limit = self._history_limit()

    def on_background(self) -> None:
        """Host signal: the application is leaving the foreground."""
        self.store.save_all()

    def close(self) -> None:
        """Release the store's writer thread; for hosts that never started a loop."""
        self.store.close()

    async def shutdown(self) -> None:
        """Host signal: the application is about to exit."""
        if self._session is not None:
            await self._session.wait()
        await self.store.flush()
        self.store.save_all()
        self.store.close()
        if self._client is not None:
            await self._client.aclose()
        LOGGER.info("app.shutdown", extra={"event": "app.shutdown"})
