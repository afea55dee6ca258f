"""Cryptographic utilities for knockroom.

Includes:
- Room secret generation and room hash derivation (public room identifier)
- Message key derivation (HKDF-SHA256 -> AES-256-GCM)
- The encrypted chat envelope, bound to (room_hash, msg_type, msg_id) via AAD

None of this runs on the server. The server only ever sees room hashes and
envelopes it cannot open.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationFailure, InvalidInput, InvalidSecret

ROOM_HASH_LABEL = b"cfa.room_hash"
MESSAGE_KEY_INFO = b"cfa.k_msg"

SECRET_BYTES = 32
NONCE_BYTES = 12
MSG_ID_BYTES = 12

ENVELOPE_VERSION = 0
ENVELOPE_ALG = "A256GCM"


def random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes."""
    return os.urandom(length)


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64url string to bytes (handles missing padding)."""
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)


# =============================================================================
# Identity derivation
# =============================================================================


def generate_room_secret() -> str:
    """Generate a new room secret: 256 random bits, base64url encoded.

    The secret is the room. Whoever holds it can derive the room hash and
    the message key, so it only ever travels inside the share link.
    """
    return bytes_to_base64url(random_bytes(SECRET_BYTES))


def generate_message_id() -> str:
    """Generate a message ID (96 random bits, base64url)."""
    return bytes_to_base64url(random_bytes(MSG_ID_BYTES))


def decode_room_secret(secret: str) -> bytes:
    """Decode a room secret, enforcing encoding and length.

    Raises:
        InvalidSecret: If the secret is not base64url or not 32 bytes.
    """
    if not isinstance(secret, str) or not secret:
        raise InvalidSecret("Room secret is empty")
    try:
        raw = base64.urlsafe_b64decode(secret + "=" * (-len(secret) % 4))
    except (binascii.Error, ValueError) as e:
        raise InvalidSecret(f"Room secret is not valid base64url: {e}") from e
    if len(raw) != SECRET_BYTES:
        raise InvalidSecret(f"Room secret must be {SECRET_BYTES} bytes, got {len(raw)}")
    return raw


def derive_room_hash(secret: str) -> str:
    """Derive the public room identifier from a room secret.

    room_hash = hex(SHA-256("cfa.room_hash" || secret_bytes))

    Returns:
        64-character lowercase hex string
    """
    secret_bytes = decode_room_secret(secret)
    return hashlib.sha256(ROOM_HASH_LABEL + secret_bytes).hexdigest()


class MessageKey:
    """AES-256-GCM key derived from a room secret.

    Only encrypt/decrypt are exposed; the key bytes are not kept on the
    instance after the cipher is constructed.
    """

    __slots__ = ("_aead",)

    def __init__(self, key_bytes: bytes):
        if len(key_bytes) != 32:
            raise ValueError("Message key must be 32 bytes")
        self._aead = AESGCM(key_bytes)

    def encrypt(self, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        return self._aead.encrypt(nonce, plaintext, aad)

    def decrypt(self, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
        return self._aead.decrypt(nonce, ciphertext, aad)

    def __repr__(self) -> str:
        return "MessageKey(<redacted>)"


def derive_message_key(secret: str) -> MessageKey:
    """Derive the room message key with HKDF.

    Uses a different label from derive_room_hash, so knowing the room hash
    gives nothing towards the key.
    """
    secret_bytes = decode_room_secret(secret)
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,  # RFC 5869: equivalent to an empty salt
        info=MESSAGE_KEY_INFO,
    )
    return MessageKey(hkdf.derive(secret_bytes))


# =============================================================================
# Message envelope
# =============================================================================


def build_aad(room_hash: str, msg_type: str, msg_id: str) -> bytes:
    """Additional authenticated data for a message.

    Plain concatenation, no delimiters. Peers must produce exactly these
    bytes or decryption fails.
    """
    return f"{room_hash}{msg_type}{msg_id}".encode("utf-8")


@dataclass
class EncryptedPayload:
    """The only chat content that crosses the network."""

    nonce: bytes
    aad: bytes
    ct: bytes  # ciphertext + 16-byte GCM tag
    v: int = ENVELOPE_VERSION
    alg: str = ENVELOPE_ALG

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "v": self.v,
            "alg": self.alg,
            "nonce": bytes_to_base64url(self.nonce),
            "aad": bytes_to_base64url(self.aad),
            "ct": bytes_to_base64url(self.ct),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedPayload":
        """Reconstruct from dictionary.

        Raises:
            InvalidInput: If a field is missing or not base64url.
        """
        try:
            return cls(
                v=int(data.get("v", ENVELOPE_VERSION)),
                alg=str(data.get("alg", ENVELOPE_ALG)),
                nonce=base64url_to_bytes(data["nonce"]),
                aad=base64url_to_bytes(data.get("aad", "")),
                ct=base64url_to_bytes(data["ct"]),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise InvalidInput(f"Malformed encrypted payload: {e}", error="invalid_payload") from e

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, json_str: str) -> "EncryptedPayload":
        """Deserialize from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise InvalidInput(f"Malformed encrypted payload: {e}", error="invalid_payload") from e
        if not isinstance(data, dict):
            raise InvalidInput("Encrypted payload must be an object", error="invalid_payload")
        return cls.from_dict(data)

    @classmethod
    def parse(cls, raw: "str | dict") -> "EncryptedPayload":
        """Accept either the JSON string form or an inline object."""
        if isinstance(raw, dict):
            return cls.from_dict(raw)
        return cls.from_json(raw)


def encrypt_text(
    key: MessageKey,
    room_hash: str,
    msg_type: str,
    msg_id: str,
    plaintext: str,
) -> EncryptedPayload:
    """
    Encrypt a message for a room.

    Args:
        key: Room message key
        room_hash: Room identifier (bound via AAD)
        msg_type: Message type, e.g. "chat" (bound via AAD)
        msg_id: Unique message ID (bound via AAD)
        plaintext: Text to encrypt

    Returns:
        EncryptedPayload with a fresh 12-byte nonce
    """
    nonce = random_bytes(NONCE_BYTES)
    aad = build_aad(room_hash, msg_type, msg_id)
    ct = key.encrypt(nonce, plaintext.encode("utf-8"), aad)
    return EncryptedPayload(nonce=nonce, aad=aad, ct=ct)


def decrypt_text(
    key: MessageKey,
    room_hash: str,
    msg_type: str,
    msg_id: str,
    payload: EncryptedPayload,
) -> str:
    """
    Decrypt a message envelope.

    The AAD is rebuilt from the caller's context, never taken from
    payload.aad, so an envelope lifted from another room or message fails
    authentication here.

    Raises:
        AuthenticationFailure: If the tag does not verify or the
            plaintext is not valid UTF-8.
    """
    aad = build_aad(room_hash, msg_type, msg_id)
    try:
        plaintext = key.decrypt(payload.nonce, payload.ct, aad)
    except (InvalidTag, ValueError) as e:
        raise AuthenticationFailure("Message failed authentication") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationFailure("Message is not valid UTF-8") from e


# =============================================================================
# Chat plaintext
# =============================================================================


@dataclass
class ChatPlaintext:
    """Structured chat body: {text, handle?}."""

    text: str
    handle: str | None = None

    def encode(self) -> str:
        return json.dumps({"text": self.text, "handle": self.handle})

    @classmethod
    def decode(cls, plaintext: str) -> "ChatPlaintext":
        """Decode a decrypted chat body.

        Structured path: a JSON object with a string "text".
        Fallback path: anything else is shown as raw text.
        """
        structured = cls._parse_structured(plaintext)
        if structured is not None:
            return structured
        return cls(text=plaintext)

    @classmethod
    def _parse_structured(cls, plaintext: str) -> "ChatPlaintext | None":
        if not plaintext.strip().startswith("{"):
            return None
        try:
            obj = json.loads(plaintext)
        except json.JSONDecodeError:
            return None
        if not isinstance(obj, dict) or not isinstance(obj.get("text"), str):
            return None
        handle = obj.get("handle")
        return cls(text=obj["text"], handle=handle if isinstance(handle, str) else None)
