"""CLI for knockroom.

Manages configuration in ~/.config/knockroom/:
- config.yaml: Global config (server URL)
- rooms.yaml: Rooms you have opened, with their secrets and tokens
- messages.db: Local decrypted history

Server side:
    knockroom serve --port 8000
    knockroom jobs sweep --dry-run

Client side:
    knockroom room new
    knockroom room join https://chat.example.com/<secret>
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from urllib.parse import urlparse

import cyclopts

from .client import RoomClient
from .config import GlobalConfig, get_config_dir
from .crypto import derive_room_hash, generate_room_secret
from .errors import InvalidSecret, KnockroomError
from .options import ConfigError, ServerOptions
from .session import RoomSession, RoomState, open_session
from .storage import MessageLog, RoomBook

app = cyclopts.App(
    name="knockroom",
    help="Knock-to-enter end-to-end encrypted chat rooms",
)

room_app = cyclopts.App(name="room", help="Open, join and forget rooms")
jobs_app = cyclopts.App(name="jobs", help="Scheduled job operations")

app.command(room_app)
app.command(jobs_app)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "warning") -> None:
    """Configure root logging from a level name."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        print(f"Error: unknown log level {level!r}", file=sys.stderr)
        raise SystemExit(2)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def secret_from_link(link: str) -> str:
    """Accept a bare secret or a share link ending in one."""
    link = link.strip()
    if "://" not in link:
        return link.strip("/")
    path = urlparse(link).path.rstrip("/")
    return path.rsplit("/", 1)[-1]


def share_link(url: str, secret: str) -> str:
    return f"{url.rstrip('/')}/{secret}"


# --- Config Commands ---


@app.command
def init(url: str):
    """Set the server URL used by room commands."""
    cfg = GlobalConfig(url=url.rstrip("/"))
    cfg.save()
    print(f"Saved server URL {cfg.url}")


@app.command
def config():
    """Show current configuration."""
    cfg = GlobalConfig.load()
    print(f"Config directory: {get_config_dir()}")
    print(f"Server URL: {cfg.url}")


# --- Server Commands ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    db: str | None = None,
    event_bus: str | None = None,
    log_level: str = "info",
):
    """Run the knockroom server.

    Options not given here come from the environment (KNOCKROOM_DB,
    KNOCKROOM_EVENT_BUS, MERCURE_HUB_URL, ...).

    Args:
        host: Interface to bind
        port: Port to bind
        db: sqlite path; ":memory:" keeps nothing across restarts
        event_bus: "memory" or "mercure"
        log_level: Logging level
    """
    import uvicorn

    from .api import create_app

    configure_logging(log_level)
    try:
        options = ServerOptions(db_path=db, event_bus=event_bus)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if options.is_in_memory():
        print("WARNING: Using an in-memory database. Rooms vanish on restart.")

    uvicorn.run(create_app(options), host=host, port=port, log_level=log_level.lower())


@jobs_app.command
def sweep(*, dry_run: bool = False, log_level: str = "info"):
    """Delete rooms idle for longer than KNOCKROOM_IDLE_SECONDS.

    Runs locally against KNOCKROOM_DB and publishes a destroy event for
    each swept room.

    --dry-run: Show what would be swept without deleting
    """
    from .jobs import run_sweep

    configure_logging(log_level)
    try:
        options = ServerOptions()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    swept = run_sweep(options, dry_run=dry_run)
    if dry_run:
        print(f"Would sweep {len(swept)} idle rooms")
    else:
        print(f"Swept {len(swept)} idle rooms")
    for room_hash in swept:
        print(f"  {room_hash}")


# --- Room Commands ---


def _render(session: RoomSession, printed: set[str]) -> None:
    """Print whatever is new in the session since the last call."""
    for message in session.messages:
        if message.id in printed:
            continue
        printed.add(message.id)
        if message.type == "system":
            print(f"* {message.content}")
            continue
        who = message.handle or (message.from_hash or "?")[:8]
        arrow = ">" if message.direction == "out" else "<"
        print(f"{arrow} {who}: {message.content}")
    for knock in session.pending_knocks:
        key = f"knock:{knock.id}"
        if key not in printed:
            printed.add(key)
            note = f": {knock.message}" if knock.message else ""
            print(f"! Someone is knocking{note} (/approve or /reject)")


def _chat_loop(session: RoomSession) -> None:
    """Read commands and chat lines from stdin until /quit or EOF."""
    print("Commands: /knock [msg], /approve, /reject [msg], /iam <handle>, /disband, /quit")
    for line in sys.stdin:
        line = line.rstrip("\n")
        command, _, arg = line.strip().partition(" ")
        try:
            if command == "/quit":
                break
            elif command == "/knock":
                session.knock(arg or None)
            elif command == "/approve":
                session.approve()
            elif command == "/reject":
                session.reject(message=arg or None)
            elif command == "/disband":
                session.disband()
            else:
                session.send(line)
        except KnockroomError as e:
            print(f"Error: {e.detail}", file=sys.stderr)
        if session.state is RoomState.DESTROYED:
            print("Room destroyed.")
            break


def _run_room(secret: str) -> None:
    cfg = GlobalConfig.load()
    book = RoomBook()
    printed: set[str] = set()
    lock = threading.Lock()
    shown: dict[str, object] = {"state": None, "notice": None}

    def on_change(session: RoomSession) -> None:
        with lock:
            if shown["state"] is not session.state:
                shown["state"] = session.state
                print(f"[{session.state.value}]")
            if session.notice and shown["notice"] != session.notice:
                print(session.notice)
            shown["notice"] = session.notice
            _render(session, printed)

    with RoomClient(cfg.url) as client, MessageLog() as log:
        try:
            session = open_session(secret, client, book, log, on_change=on_change)
        except KnockroomError as e:
            print(f"Error: {e.detail}", file=sys.stderr)
            sys.exit(1)

        print(f"Room {session.room_hash[:12]} ({session.state.value})")
        print(f"Share link: {share_link(cfg.url, secret)}")
        on_change(session)
        session.start()
        try:
            _chat_loop(session)
        except KeyboardInterrupt:
            print()
        finally:
            session.close()


@room_app.command
def new(*, log_level: str = "warning"):
    """Create a new room and enter it as its first participant."""
    configure_logging(log_level)
    _run_room(generate_room_secret())


@room_app.command
def join(link: str, *, log_level: str = "warning"):
    """Open a room from its share link (or bare secret).

    If you already hold a token for the room you go straight in; otherwise
    you land in the lobby and can /knock.
    """
    configure_logging(log_level)
    _run_room(secret_from_link(link))


@room_app.command(name="list")
def list_rooms(*, json_output: bool = False):
    """List rooms you have opened, most recent first."""
    rooms = RoomBook().list()
    if json_output:
        print_json(
            [
                {
                    "room_hash": r.room_hash,
                    "last_seen": r.last_seen,
                    "handle": r.handle,
                    "participant": r.token is not None,
                }
                for r in rooms
            ]
        )
        return
    if not rooms:
        print("No rooms yet")
        return
    for r in rooms:
        role = "participant" if r.token else "lobby"
        handle = f" as {r.handle}" if r.handle else ""
        print(f"{r.room_hash[:12]}  {role}{handle}  last seen {r.last_seen}")


@room_app.command
def forget(room: str):
    """Forget a room: its secret, token, handle and local history.

    ROOM may be a room hash, a hash prefix, a share link or a secret.
    """
    book = RoomBook()
    room_hash = _resolve_room(book, room)
    if room_hash is None:
        print(f"Error: no stored room matches {room!r}", file=sys.stderr)
        sys.exit(1)
    book.remove(room_hash)
    with MessageLog() as log:
        removed = log.clear_room(room_hash)
    print(f"Forgot room {room_hash[:12]} ({removed} messages removed)")


def _resolve_room(book: RoomBook, room: str) -> str | None:
    try:
        derived = derive_room_hash(secret_from_link(room))
    except InvalidSecret:
        derived = None
    matches = [
        r.room_hash
        for r in book.list()
        if r.room_hash == derived or r.room_hash.startswith(room.lower())
    ]
    return matches[0] if len(matches) == 1 else None


if __name__ == "__main__":
    app()
