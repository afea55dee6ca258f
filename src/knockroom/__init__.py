"""knockroom - Knock-to-enter, end-to-end encrypted chat rooms.

Usage:
    from knockroom import RoomClient, RoomSession, RoomBook, generate_room_secret

    secret = generate_room_secret()
    with RoomClient("https://chat.example.com") as client:
        session = RoomSession(secret, client, RoomBook())
        session.open()          # PARTICIPANT: first caller creates the room
        session.send("hello")

Server:
    from knockroom import create_app, ServerOptions

    app = create_app(ServerOptions())
"""

from knockroom._version import __version__
from knockroom.api import create_app
from knockroom.client import RoomClient
from knockroom.crypto import derive_message_key, derive_room_hash, generate_room_secret
from knockroom.errors import (
    AuthenticationFailure,
    InvalidInput,
    InvalidSecret,
    KnockroomError,
    RoomNotFound,
    Unauthenticated,
    Unauthorized,
)
from knockroom.options import ConfigError, ServerOptions
from knockroom.session import RoomSession, RoomState
from knockroom.storage import MessageLog, RoomBook

__all__ = [
    "__version__",
    "create_app",
    "RoomClient",
    "RoomSession",
    "RoomState",
    "RoomBook",
    "MessageLog",
    "ServerOptions",
    "ConfigError",
    "generate_room_secret",
    "derive_room_hash",
    "derive_message_key",
    "KnockroomError",
    "InvalidInput",
    "InvalidSecret",
    "Unauthenticated",
    "Unauthorized",
    "RoomNotFound",
    "AuthenticationFailure",
]
