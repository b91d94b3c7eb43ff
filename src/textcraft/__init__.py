"""Top-level package for textcraft."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import TextcraftApp
    from .client import ChatCompletionClient, ChatMessage, CompletionResult
    from .config import ensure_config_dir, load_config
    from .exceptions import (
        CompletionError,
        ConfigValidationError,
        DecodingError,
        EmptyCredentialError,
        InvalidEndpointError,
        NetworkError,
        NoMessageInResponseError,
        PersistenceError,
        ServerError,
        StreamError,
        TextcraftError,
    )
    from .models import Conversation, Message, MessageStatus
    from .session import ChatSession
    from .settings import ChatSettings, SettingsStore
    from .store import ConversationStore

__all__ = [
    "ChatCompletionClient",
    "ChatMessage",
    "ChatSession",
    "ChatSettings",
    "CompletionError",
    "CompletionResult",
    "ConfigValidationError",
    "Conversation",
    "ConversationStore",
    "DecodingError",
    "EmptyCredentialError",
    "InvalidEndpointError",
    "Message",
    "MessageStatus",
    "NetworkError",
    "NoMessageInResponseError",
    "PersistenceError",
    "ServerError",
    "SettingsStore",
    "StreamError",
    "TextcraftApp",
    "TextcraftError",
    "ensure_config_dir",
    "load_config",
]

_EXPORTS: dict[str, str] = {
    "TextcraftApp": ".app",
    "ChatCompletionClient": ".client",
    "ChatMessage": ".client",
    "CompletionResult": ".client",
    "ensure_config_dir": ".config",
    "load_config": ".config",
    "CompletionError": ".exceptions",
    "ConfigValidationError": ".exceptions",
    "DecodingError": ".exceptions",
    "EmptyCredentialError": ".exceptions",
    "InvalidEndpointError": ".exceptions",
    "NetworkError": ".exceptions",
    "NoMessageInResponseError": ".exceptions",
    "PersistenceError": ".exceptions",
    "ServerError": ".exceptions",
    "StreamError": ".exceptions",
    "TextcraftError": ".exceptions",
    "Conversation": ".models",
    "Message": ".models",
    "MessageStatus": ".models",
    "ChatSession": ".session",
    "ChatSettings": ".settings",
    "SettingsStore": ".settings",
    "ConversationStore": ".store",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    value = getattr(import_module(module_name, __name__), name)
    globals()[name] = value
    return value
