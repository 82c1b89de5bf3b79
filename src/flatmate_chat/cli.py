from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn, Optional

import typer

from . import __version__
from .chat.errors import ChatError
from .chat.models import ChatMessage, ChatRoom, ChatSessionView
from .core.config import ChatClientConfig, ChatConfigError, load_config
from .core.logging_utils import setup_logging
from .core.time_utils import format_timestamp
from .session import ChatSession

app = typer.Typer(add_completion=False, help="Flatmate chat session client.")

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to flatmate-chat.yml (defaults to ./flatmate-chat.yml)",
)
_LOG_LEVEL_OPTION = typer.Option("WARNING", "--log-level", help="Logging level")


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"flatmate-chat {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def _load(
    config_path: Optional[Path], log_level: str
) -> tuple[ChatClientConfig, logging.Logger]:
    try:
        config = load_config(config_path)
    except ChatConfigError as exc:
        raise_exit(str(exc), cause=exc)
    return config, setup_logging(log_level)


def _format_message(message: ChatMessage, *, user_id: int) -> str:
    who = "me" if message.sender_id == user_id else f"user {message.sender_id}"
    flags = ""
    if message.pending:
        flags = " (sending)"
    if message.send_failed:
        flags = " (failed)"
    stamp = format_timestamp(message.created_at) or "-"
    return f"[{stamp}] {who}: {message.body}{flags}"


def _room_recency(room: ChatRoom) -> datetime:
    if room.last_message is None or room.last_message.created_at is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    return room.last_message.created_at


def _format_rooms(view: ChatSessionView, *, user_id: int) -> list[str]:
    lines = []
    for room in sorted(view.rooms, key=_room_recency, reverse=True):
        preview = room.last_message.body if room.last_message else ""
        unread = f" ({room.unread_count} unread)" if room.unread_count else ""
        lines.append(
            f"{room.id}\tuser {room.other_participant(user_id)}{unread}\t{preview}"
        )
    return lines


async def _list_rooms(config: ChatClientConfig, logger: logging.Logger) -> list[str]:
    async with ChatSession(config, logger=logger) as session:
        result = await session.engine.load_rooms()
        if not result.ok:
            raise result.error or ChatError("Failed to load chat rooms")
        return _format_rooms(session.engine.snapshot(), user_id=config.user_id)


async def _show_history(
    config: ChatClientConfig, logger: logging.Logger, room_id: int, page: int
) -> list[str]:
    async with ChatSession(config, logger=logger) as session:
        history = await session.rest.get_history(
            room_id, page=page, size=config.history_page_size
        )
        lines = [
            _format_message(message, user_id=config.user_id)
            for message in sorted(
                history.messages,
                key=lambda m: m.created_at or datetime.min.replace(tzinfo=timezone.utc),
            )
        ]
        if history.has_more:
            lines.append(f"-- older messages: --page {history.page + 1}")
        return lines


async def _send(
    config: ChatClientConfig, logger: logging.Logger, room_id: int, text: str
) -> str:
    async with ChatSession(config, logger=logger) as session:
        result = await session.engine.load_rooms()
        if not result.ok:
            raise result.error or ChatError("Failed to load chat rooms")
        room = session.engine.room(room_id)
        if room is None:
            raise ChatError(f"Unknown chat room {room_id}")
        message = await session.rest.send_message(
            receiver_id=room.other_participant(config.user_id),
            body=text,
            room_id=room_id,
        )
        return _format_message(message, user_id=config.user_id)


async def _listen(config: ChatClientConfig, logger: logging.Logger) -> None:
    async with ChatSession(config, logger=logger) as session:
        seen: dict[int, int] = {}

        def _echo(view: ChatSessionView) -> None:
            for room in view.rooms:
                message = room.last_message
                if message is None or message.pending:
                    continue
                marker = hash((message.id, message.is_read))
                if seen.get(room.id) == marker:
                    continue
                seen[room.id] = marker
                typer.echo(
                    f"room {room.id} "
                    + _format_message(message, user_id=config.user_id)
                )

        session.engine.add_listener(_echo)
        await session.run_forever()


@app.command("rooms")
def rooms_command(
    config_path: Optional[Path] = _CONFIG_OPTION,
    log_level: str = _LOG_LEVEL_OPTION,
) -> None:
    """List chat rooms with unread counts."""
    config, logger = _load(config_path, log_level)
    try:
        lines = asyncio.run(_list_rooms(config, logger))
    except ChatError as exc:
        raise_exit(exc.user_message or str(exc), cause=exc)
    if not lines:
        typer.echo("No chat rooms.")
    for line in lines:
        typer.echo(line)


@app.command("history")
def history_command(
    room_id: int = typer.Argument(..., help="Chat room id"),
    page: int = typer.Option(0, "--page", min=0, help="History page (0 = newest)"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    log_level: str = _LOG_LEVEL_OPTION,
) -> None:
    """Print one page of a room's message history."""
    config, logger = _load(config_path, log_level)
    try:
        lines = asyncio.run(_show_history(config, logger, room_id, page))
    except ChatError as exc:
        raise_exit(exc.user_message or str(exc), cause=exc)
    for line in lines:
        typer.echo(line)


@app.command("send")
def send_command(
    room_id: int = typer.Argument(..., help="Chat room id"),
    text: str = typer.Argument(..., help="Message text"),
    config_path: Optional[Path] = _CONFIG_OPTION,
    log_level: str = _LOG_LEVEL_OPTION,
) -> None:
    """Send a message through the REST endpoint."""
    config, logger = _load(config_path, log_level)
    try:
        line = asyncio.run(_send(config, logger, room_id, text))
    except ChatError as exc:
        raise_exit(exc.user_message or str(exc), cause=exc)
    typer.echo(line)


@app.command("listen")
def listen_command(
    config_path: Optional[Path] = _CONFIG_OPTION,
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    """Connect to the live transport and print incoming messages until interrupted."""
    config, logger = _load(config_path, log_level)
    try:
        asyncio.run(_listen(config, logger))
    except KeyboardInterrupt:
        typer.echo("Chat listener stopped.")


def main() -> None:
    """Entrypoint for CLI execution."""
    app()
