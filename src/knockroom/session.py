"""Client room state machine.

A RoomSession walks one room through its lifecycle:

    INIT -> LOBBY_WAITING | LOBBY_EMPTY | PARTICIPANT -> DESTROYED

INIT resolves from local state and the server's registration answer.
LOBBY_WAITING waits for an approve event; LOBBY_EMPTY has to knock first.
A participant chats, approves and rejects knockers, and heartbeats.
DESTROYED is terminal and is reached by a destroy event or by disbanding.

Events are applied one at a time under the session lock, in stream order.
The heartbeat runs on its own thread so it never blocks sending or
receiving. Once a session is closed every late network result is ignored.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from .auth import hash_token
from .client import RoomClient
from .crypto import (
    ChatPlaintext,
    EncryptedPayload,
    bytes_to_base64url,
    decrypt_text,
    derive_message_key,
    derive_room_hash,
    encrypt_text,
    generate_message_id,
    random_bytes,
)
from .errors import AuthenticationFailure, InvalidInput, KnockroomError, RoomNotFound, Unauthorized
from .events import ChatEvent, RoomEvent
from .presence import HEARTBEAT_INTERVAL
from .storage import ChatMessage, MessageLog, RoomBook

logger = logging.getLogger(__name__)

MAX_HANDLE_LENGTH = 24
CHAT_TYPE = "chat"
WAITING_NOTICE = "Waiting for approval…"
REJECTED_NOTICE = "Request rejected. Try again when someone is online."

_IAM_RE = re.compile(r"^/iam\s+(.+)", re.IGNORECASE | re.DOTALL)


class RoomState(str, enum.Enum):
    INIT = "INIT"
    LOBBY_WAITING = "LOBBY_WAITING"
    LOBBY_EMPTY = "LOBBY_EMPTY"
    PARTICIPANT = "PARTICIPANT"
    DESTROYED = "DESTROYED"


LOBBY_STATES = (RoomState.LOBBY_WAITING, RoomState.LOBBY_EMPTY)


@dataclass
class PendingKnock:
    """A knock seen by a participant, waiting for a decision."""

    id: str
    ts: int
    message: str | None = None


class Heartbeat:
    """Calls ``beat`` now and then every ``interval`` seconds until stopped.

    A failing beat is logged and the loop carries on; the next beat is the
    retry.
    """

    def __init__(self, beat: Callable[[], Any], interval: float = HEARTBEAT_INTERVAL):
        self._beat = beat
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="knockroom-heartbeat", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self) -> None:
        while True:
            try:
                self._beat()
            except Exception:
                logger.warning("Heartbeat failed", exc_info=True)
            if self._stop.wait(self._interval):
                break


class RoomSession:
    """One open room on one device.

    Args:
        secret: The room secret from the share link
        client: Server transport
        book: Local room book (tokens, handles)
        log: Local message history; optional
        on_change: Called with the session after every state change or
            new message
        clock: Time source for local message timestamps
        heartbeat_interval: Seconds between background heartbeats; None
            leaves heartbeating to the caller
    """

    def __init__(
        self,
        secret: str,
        client: RoomClient,
        book: RoomBook,
        log: MessageLog | None = None,
        on_change: Callable[["RoomSession"], None] | None = None,
        clock: Callable[[], float] = time.time,
        heartbeat_interval: float | None = HEARTBEAT_INTERVAL,
    ):
        # Raises InvalidSecret before anything touches the network.
        self.room_hash = derive_room_hash(secret)
        self._key = derive_message_key(secret)
        self._secret = secret
        self._client = client
        self._book = book
        self._log = log
        self._on_change = on_change
        self._clock = clock
        self._lock = threading.RLock()

        self.state = RoomState.INIT
        self.token: str | None = None
        self.token_hash: str | None = None
        self.handle: str | None = None
        self.notice: str | None = None
        self.knock_sent = False
        self.pending_knocks: list[PendingKnock] = []
        self.messages: list[ChatMessage] = []
        self._message_ids: set[str] = set()
        self._closed = False
        self._heartbeat = (
            Heartbeat(self.heartbeat, heartbeat_interval) if heartbeat_interval else None
        )
        self._stop_events = threading.Event()
        self._event_thread: threading.Thread | None = None

    def __repr__(self) -> str:
        return f"RoomSession(room_hash={self.room_hash[:12]}…, state={self.state.value})"

    @property
    def closed(self) -> bool:
        return self._closed

    def _now(self) -> int:
        return int(self._clock())

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self)

    def _set_state(self, state: RoomState) -> None:
        if state is self.state:
            return
        logger.info("Room %s: %s -> %s", self.room_hash[:12], self.state.value, state.value)
        self.state = state
        if state is RoomState.PARTICIPANT and self._heartbeat is not None:
            self._heartbeat.start()
        elif state is RoomState.DESTROYED:
            if self._heartbeat is not None:
                self._heartbeat.stop(wait=False)
            self._stop_events.set()
        self._changed()

    def _adopt_token(self, token: str) -> None:
        self.token = token
        self.token_hash = hash_token(token)
        self._book.set_token(self.room_hash, token)

    def _discard_token(self) -> None:
        self.token = None
        self.token_hash = None
        self._book.clear_token(self.room_hash)

    def _destroy(self) -> None:
        self._discard_token()
        self.pending_knocks.clear()
        self._set_state(RoomState.DESTROYED)

    # --- Lifecycle ---

    def open(self) -> RoomState:
        """Resolve INIT into a lobby state or PARTICIPANT.

        A locally held token is trusted without asking the server; the
        first heartbeat finds out if it has gone stale.
        """
        with self._lock:
            if self.state is not RoomState.INIT:
                return self.state
            stored = self._book.upsert(self.room_hash, self._secret)
            self.handle = stored.handle
            if self._log is not None:
                for message in self._log.list_room(self.room_hash):
                    self._remember(message)
            if stored.token:
                self.token = stored.token
                self.token_hash = hash_token(stored.token)
                self._set_state(RoomState.PARTICIPANT)
                return self.state

        registration = self._client.create_room(self.room_hash)

        with self._lock:
            if self._closed or self.state is not RoomState.INIT:
                return self.state
            if registration.status == "created" and registration.participant_token:
                self._adopt_token(registration.participant_token)
                self._set_state(RoomState.PARTICIPANT)
            elif registration.has_participants:
                self._set_state(RoomState.LOBBY_WAITING)
            else:
                self._set_state(RoomState.LOBBY_EMPTY)
            return self.state

    def start(self) -> None:
        """Follow the room's event stream on a background thread."""
        if self._event_thread is not None:
            return
        self._event_thread = threading.Thread(
            target=self.follow, name="knockroom-events", daemon=True
        )
        self._event_thread.start()

    def follow(self) -> None:
        """Apply events from the stream until the room is destroyed or closed."""
        try:
            for event in self._client.events(self.room_hash, stop=self._stop_events):
                self.handle_event(event)
                if self._closed or self.state is RoomState.DESTROYED:
                    break
        except RoomNotFound:
            with self._lock:
                if not self._closed:
                    self._destroy()

    def close(self) -> None:
        """Stop the heartbeat and the event stream. Local state is kept."""
        with self._lock:
            self._closed = True
        self._stop_events.set()
        if self._heartbeat is not None:
            self._heartbeat.stop()

    # --- Events ---

    def handle_event(self, event: RoomEvent) -> None:
        """Apply one event from the room stream."""
        with self._lock:
            if self._closed or self.state is RoomState.DESTROYED:
                return
            if event.room_hash != self.room_hash:
                return

            if event.type == "knock":
                if self.state is RoomState.PARTICIPANT:
                    knock_id = f"{event.ts}-{bytes_to_base64url(random_bytes(6))}"
                    self.pending_knocks.insert(
                        0, PendingKnock(id=knock_id, ts=event.ts, message=event.body.message)
                    )
                    self._changed()
            elif event.type == "approve":
                if self.token is None and self.state is RoomState.LOBBY_WAITING:
                    self._adopt_token(event.body.new_participant_token)
                    self.notice = None
                    self._set_state(RoomState.PARTICIPANT)
            elif event.type == "reject":
                if self.state is RoomState.LOBBY_WAITING:
                    self.notice = REJECTED_NOTICE
                    self._changed()
            elif event.type == "destroy":
                self._destroy()
            elif event.type == "chat":
                self._receive_chat(event)

    def _receive_chat(self, event: ChatEvent) -> None:
        msg_id = event.body.msg_id
        if not msg_id or msg_id in self._message_ids:
            return
        try:
            payload = EncryptedPayload.parse(event.body.encrypted_payload)
            plaintext = decrypt_text(self._key, self.room_hash, CHAT_TYPE, msg_id, payload)
        except (AuthenticationFailure, InvalidInput):
            logger.warning("Dropping undecryptable message %s in room %s", msg_id, self.room_hash[:12])
            return
        chat = ChatPlaintext.decode(plaintext)
        direction = "out" if self.token_hash and event.from_ == self.token_hash else "in"
        self._record(
            ChatMessage(
                id=msg_id,
                room_hash=self.room_hash,
                timestamp=event.ts,
                content=chat.text,
                type="chat",
                direction=direction,
                from_hash=event.from_,
                handle=chat.handle,
            )
        )

    def _remember(self, message: ChatMessage) -> bool:
        if message.id in self._message_ids:
            return False
        self._message_ids.add(message.id)
        self.messages.append(message)
        self.messages.sort(key=lambda m: m.timestamp)
        return True

    def _record(self, message: ChatMessage) -> None:
        if not self._remember(message):
            return
        if self._log is not None:
            self._log.put(message)
        self._changed()

    def _system_message(self, text: str) -> ChatMessage:
        message = ChatMessage(
            id=f"sys-{bytes_to_base64url(random_bytes(9))}",
            room_hash=self.room_hash,
            timestamp=self._now(),
            content=text,
            type="system",
            direction="in",
        )
        self._record(message)
        return message

    # --- Actions ---

    def knock(self, message: str | None = None) -> None:
        """Ask the room's participants to let us in."""
        with self._lock:
            if self.state not in LOBBY_STATES:
                raise InvalidInput(f"Cannot knock from {self.state.value}")
        try:
            self._client.knock(self.room_hash, message)
        except RoomNotFound:
            with self._lock:
                if not self._closed:
                    self._destroy()
            raise
        with self._lock:
            if self._closed or self.state not in LOBBY_STATES:
                return
            self.knock_sent = True
            self.notice = WAITING_NOTICE
            if self.state is RoomState.LOBBY_EMPTY:
                self._set_state(RoomState.LOBBY_WAITING)
            else:
                self._changed()

    def _require_participant(self) -> str:
        if self.state is not RoomState.PARTICIPANT or self.token is None:
            raise InvalidInput(f"Not a participant (state {self.state.value})")
        return self.token

    def _take_knock(self, knock_id: str | None) -> None:
        if knock_id is None:
            if self.pending_knocks:
                self.pending_knocks.pop()
            return
        self.pending_knocks = [k for k in self.pending_knocks if k.id != knock_id]

    def approve(self, knock_id: str | None = None) -> str:
        """Admit a knocker. Without an id the oldest pending knock is taken.

        Returns the token that was broadcast to the lobby.
        """
        with self._lock:
            token = self._require_participant()
        try:
            new_token = self._client.approve(self.room_hash, token)
        except RoomNotFound:
            with self._lock:
                self._destroy()
            raise
        with self._lock:
            if not self._closed:
                self._take_knock(knock_id)
                self._changed()
        return new_token

    def reject(self, knock_id: str | None = None, message: str | None = None) -> None:
        with self._lock:
            token = self._require_participant()
        try:
            self._client.reject(self.room_hash, token, message)
        except RoomNotFound:
            with self._lock:
                if not self._closed:
                    self._destroy()
            raise
        with self._lock:
            if not self._closed:
                self._take_knock(knock_id)
                self._changed()

    def set_handle(self, handle: str) -> ChatMessage:
        """Set the display handle sent with our messages."""
        handle = handle.strip()[:MAX_HANDLE_LENGTH]
        with self._lock:
            if not handle:
                return self._system_message("Handle cannot be empty.")
            self.handle = handle
            self._book.set_handle(self.room_hash, handle)
            return self._system_message(f"Handle set to {handle}.")

    def send(self, text: str) -> ChatMessage | None:
        """Send a chat line, or run it as a command if it starts with /iam.

        Returns the message recorded locally, or None for blank input.
        """
        trimmed = text.strip()
        if not trimmed:
            return None
        if trimmed.lower().startswith("/iam"):
            match = _IAM_RE.match(trimmed)
            if not match:
                with self._lock:
                    return self._system_message("Usage: /iam your_handle")
            return self.set_handle(match.group(1))

        with self._lock:
            token = self._require_participant()
            handle = self.handle
            token_hash = self.token_hash
        self._book.upsert(self.room_hash, self._secret, handle)

        msg_id = generate_message_id()
        body = ChatPlaintext(text=trimmed, handle=handle).encode()
        encrypted = encrypt_text(self._key, self.room_hash, CHAT_TYPE, msg_id, body)
        try:
            self._client.send_message(self.room_hash, token, msg_id, encrypted.to_json())
        except RoomNotFound:
            with self._lock:
                self._destroy()
            raise

        message = ChatMessage(
            id=msg_id,
            room_hash=self.room_hash,
            timestamp=self._now(),
            content=trimmed,
            type="chat",
            direction="out",
            from_hash=token_hash,
            handle=handle,
        )
        with self._lock:
            if not self._closed:
                self._record(message)
        return message

    def heartbeat(self) -> int | None:
        """Refresh our presence. Returns the live count, or None if not a participant.

        A vanished room means DESTROYED. A rejected token is discarded and
        the session drops back to the lobby.
        """
        with self._lock:
            if self._closed or self.state is not RoomState.PARTICIPANT or self.token is None:
                return None
            token = self.token
        try:
            return self._client.presence(self.room_hash, token)
        except RoomNotFound:
            with self._lock:
                if not self._closed:
                    self._destroy()
            return None
        except Unauthorized:
            with self._lock:
                if not self._closed and self.token == token:
                    logger.warning("Room %s rejected our token; discarding it", self.room_hash[:12])
                    self._discard_token()
                    if self._heartbeat is not None:
                        self._heartbeat.stop(wait=False)
                    self._set_state(RoomState.LOBBY_WAITING)
            return None

    def disband(self) -> None:
        """Delete the room for everyone."""
        with self._lock:
            token = self._require_participant()
        try:
            self._client.disband(self.room_hash, token)
        except RoomNotFound:
            logger.info("Room %s was already gone", self.room_hash[:12])
        with self._lock:
            self._book.remove(self.room_hash)
            self.token = None
            self.token_hash = None
            self.pending_knocks.clear()
            self._set_state(RoomState.DESTROYED)


def open_session(
    secret: str,
    client: RoomClient,
    book: RoomBook,
    log: MessageLog | None = None,
    **kwargs: Any,
) -> RoomSession:
    """Create a session and resolve its initial state."""
    session = RoomSession(secret, client, book, log, **kwargs)
    try:
        session.open()
    except KnockroomError:
        session.close()
        raise
    return session
