"""CLI entrypoint for TextCraft."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Callable, Sequence
from importlib import metadata
from pathlib import Path
import sys

from pydantic import ValidationError

from .app import TextcraftApp
from .config import load_config
from .exceptions import TextcraftError
from .logging_utils import configure_logging
from .models import MessageStatus


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="textcraft",
        description="TextCraft - ask a chat model about selected text",
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask a question in the active conversation")
    ask.add_argument("question", help="Question to send")
    ask.add_argument(
        "--selected-text",
        default="",
        help="Selected text to attach as context; '-' reads it from stdin",
    )
    ask.add_argument("--new", action="store_true", help="Start a new conversation first")

    subparsers.add_parser("list", help="List stored conversations, newest first")
    subparsers.add_parser("test-connection", help="Probe the chat-completion endpoint")

    settings = subparsers.add_parser("settings", help="Show or change chat settings")
    settings.add_argument("--api-key")
    settings.add_argument("--model-id")
    settings.add_argument("--max-history", type=int)
    stream_group = settings.add_mutually_exclusive_group()
    stream_group.add_argument("--stream", dest="stream", action="store_true", default=None)
    stream_group.add_argument("--no-stream", dest="stream", action="store_false")
    return parser


def _print_warning(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


async def _ask(app: TextcraftApp, args: argparse.Namespace) -> int:
    selected_text = args.selected_text
    if selected_text == "-":
        selected_text = sys.stdin.read()
    if args.new:
        app.store.create_conversation()

    try:
        message = await app.session.ask(args.question, selected_text.strip())
    finally:
        await app.shutdown()
    if message is None:
        print("Nothing to send.", file=sys.stderr)
        return 2
    if message.status is MessageStatus.ERROR:
        print(message.content, file=sys.stderr)
        return 1
    print(message.content)
    return 0


async def _test_connection(app: TextcraftApp) -> int:
    try:
        ok, detail = await app.client.test_connection()
    finally:
        await app.shutdown()
    print(detail)
    return 0 if ok else 1


def _settings(app: TextcraftApp, args: argparse.Namespace) -> int:
    changes: dict[str, object] = {}
    if args.api_key is not None:
        changes["api_key"] = args.api_key
    if args.model_id is not None:
        changes["model_id"] = args.model_id
    if args.max_history is not None:
        changes["max_history_items"] = args.max_history
    if args.stream is not None:
        changes["use_stream_output"] = args.stream
    current = app.settings.update(**changes) if changes else app.settings.load()
    app.apply_settings()
    print(f"model_id = {current.model_id or '(unset)'}")
    print(f"api_key = {'(set)' if current.api_key else '(unset)'}")
    print(f"use_stream_output = {str(current.use_stream_output).lower()}")
    print(f"max_history_items = {current.max_history_items}")
    return 0


def _run_sync(
    app: TextcraftApp, command: Callable[..., int], *args: object
) -> int:
    try:
        return command(app, *args)
    finally:
        app.close()


def _list(app: TextcraftApp) -> int:
    for conversation in app.store.conversations:
        marker = "*" if conversation.id == app.store.active_id else " "
        stamp = conversation.timestamp.astimezone().strftime("%Y-%m-%d %H:%M")
        print(f"{marker} {stamp}  {conversation.title}  ({len(conversation.messages)})")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Parse CLI flags, wire the application, and run one command."""
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("textcraft")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"textcraft {version}")
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    config = load_config(args.config)
    configure_logging(config.logging)

    try:
        app = TextcraftApp(config, on_warning=_print_warning)
        if args.command == "ask":
            return asyncio.run(_ask(app, args))
        if args.command == "test-connection":
            return asyncio.run(_test_connection(app))
        if args.command == "settings":
            return _run_sync(app, _settings, args)
        return _run_sync(app, _list)
    except ValidationError as exc:
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            print(f"error: invalid value for {field}: {error['msg']}", file=sys.stderr)
        return 2
    except TextcraftError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
