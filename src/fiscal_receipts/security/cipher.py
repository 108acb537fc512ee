"""
Authenticated encryption for portal credentials at rest.

Envelope (base64): [1 byte key version][12 byte nonce][16 byte GCM tag][ciphertext]
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fiscal_receipts.config.settings import parse_encryption_keys
from fiscal_receipts.utils.errors import CipherError

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
VERSION_LENGTH = 1
HEADER_LENGTH = VERSION_LENGTH + NONCE_LENGTH + TAG_LENGTH


@dataclass(frozen=True)
class KeyRing:
    """
    What it does:
    - Holds every key version that may still appear in stored envelopes, plus the one used for new writes.

    Behavior:
    - Construction validates key sizes, versions (1..255) and that the active version is present.
    - Rotation: add the new key, re-encrypt stored rows, then drop the old version.
      Dropping a version first makes its rows undecryptable.
    """

    active_version: int
    keys: dict[int, bytes] = field(repr=False)

    def __post_init__(self) -> None:
        for version, key in self.keys.items():
            if not 1 <= version <= 255:
                raise CipherError(f"Key version must be 1-255, got {version}")
            if len(key) != KEY_LENGTH:
                raise CipherError(f"Key for version {version} must be {KEY_LENGTH} bytes")
        if self.active_version not in self.keys:
            raise CipherError(f"Active key version {self.active_version} has no key")

    @property
    def active_key(self) -> bytes:
        return self.keys[self.active_version]

    def __repr__(self) -> str:
        return f"KeyRing(active_version={self.active_version}, versions={sorted(self.keys)})"

    @classmethod
    def from_settings(cls, raw_keys: object, active_version: int) -> KeyRing:
        try:
            keys = parse_encryption_keys(raw_keys)
        except RuntimeError as exc:
            raise CipherError(str(exc)) from exc
        return cls(active_version=active_version, keys=keys)


def encrypt(plaintext: str, key: bytes, key_version: int = 1) -> str:
    if len(key) != KEY_LENGTH:
        raise CipherError(f"Key must be {KEY_LENGTH} bytes")
    if not 1 <= key_version <= 255:
        raise CipherError("Key version must be 1-255")

    nonce = os.urandom(NONCE_LENGTH)
    # AESGCM appends the tag to the ciphertext; the envelope stores it in front.
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    packed = bytes([key_version]) + nonce + tag + ciphertext
    return base64.b64encode(packed).decode("ascii")


def decrypt(envelope: str, keys: dict[int, bytes]) -> str:
    try:
        packed = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError):
        raise CipherError("Invalid encrypted data: not base64") from None

    if len(packed) < HEADER_LENGTH:
        raise CipherError("Invalid encrypted data: too short")

    version = packed[0]
    nonce = packed[VERSION_LENGTH : VERSION_LENGTH + NONCE_LENGTH]
    tag = packed[VERSION_LENGTH + NONCE_LENGTH : HEADER_LENGTH]
    ciphertext = packed[HEADER_LENGTH:]

    key = keys.get(version)
    if key is None:
        raise CipherError(f"Unknown key version: {version}")

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except (InvalidTag, ValueError):
        raise CipherError("Decryption failed: data was tampered with or the key is wrong") from None
    return plaintext.decode("utf-8")


def envelope_version(envelope: str) -> int:
    try:
        packed = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError):
        raise CipherError("Invalid encrypted data: not base64") from None
    if not packed:
        raise CipherError("Invalid encrypted data: empty")
    return packed[0]


def encrypt_with(ring: KeyRing, plaintext: str) -> str:
    return encrypt(plaintext, ring.active_key, ring.active_version)


def decrypt_with(ring: KeyRing, envelope: str) -> str:
    return decrypt(envelope, ring.keys)


def generate_key() -> str:
    """Random 256-bit key as 64 hex characters."""
    return os.urandom(KEY_LENGTH).hex()
