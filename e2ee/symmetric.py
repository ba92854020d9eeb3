"""AES-256-GCM helpers and password-based key derivation.

Session keys are 32 random bytes. :func:`seal` encrypts a payload under a
session key with a fresh 96-bit nonce drawn from :func:`os.urandom` on every
call; nonces are never derived from counters so two processes sharing a key
cannot collide. The 128-bit authentication tag is returned separately from
the ciphertext because that is how the message wire format carries it.

:func:`derive_key` stretches a low-entropy secret (a recovery code) into an
AES key with PBKDF2-HMAC-SHA256.

Example usage:

>>> key = generate_session_key()
>>> box = seal(b"hello", key)
>>> open_sealed(box, key)
b'hello'
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionFailure, MalformedEnvelope

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 16


@dataclass(frozen=True)
class SealedPayload:
    """Raw AES-GCM output split into its three wire fields."""

    ciphertext: bytes
    nonce: bytes
    tag: bytes


def generate_session_key() -> bytes:
    """Return a new random 256-bit session key."""
    return os.urandom(KEY_SIZE)


def _cipher(key: bytes) -> AESGCM:
    if len(key) != KEY_SIZE:
        raise MalformedEnvelope(f"AES key must be {KEY_SIZE} bytes, got {len(key)}")
    return AESGCM(key)


def seal(plaintext: bytes, key: bytes, associated_data: Optional[bytes] = None) -> SealedPayload:
    """Encrypt ``plaintext`` under ``key`` with a freshly drawn nonce."""

    nonce = os.urandom(NONCE_SIZE)
    combined = _cipher(key).encrypt(nonce, plaintext, associated_data)
    return SealedPayload(
        ciphertext=combined[:-TAG_SIZE], nonce=nonce, tag=combined[-TAG_SIZE:]
    )


def open_sealed(
    payload: SealedPayload, key: bytes, associated_data: Optional[bytes] = None
) -> bytes:
    """Verify and decrypt ``payload``.

    Raises
    ------
    MalformedEnvelope
        If the nonce or tag has the wrong length or the key is not 32 bytes.
    DecryptionFailure
        If the tag does not verify, which covers both a wrong key and any
        modification of the ciphertext, nonce or tag.
    """

    if len(payload.nonce) != NONCE_SIZE:
        raise MalformedEnvelope(f"nonce must be {NONCE_SIZE} bytes")
    if len(payload.tag) != TAG_SIZE:
        raise MalformedEnvelope(f"authentication tag must be {TAG_SIZE} bytes")
    aes = _cipher(key)
    try:
        return aes.decrypt(payload.nonce, payload.ciphertext + payload.tag, associated_data)
    except InvalidTag as exc:
        raise DecryptionFailure("authentication failed") from exc


def encrypt_combined(plaintext: bytes, key: bytes) -> bytes:
    """Return ``nonce || ciphertext || tag`` for storage as a single blob."""

    box = seal(plaintext, key)
    return box.nonce + box.ciphertext + box.tag


def decrypt_combined(blob: bytes, key: bytes) -> bytes:
    """Inverse of :func:`encrypt_combined`."""

    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise MalformedEnvelope("encrypted blob is truncated")
    nonce, body = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    return open_sealed(
        SealedPayload(ciphertext=body[:-TAG_SIZE], nonce=nonce, tag=body[-TAG_SIZE:]),
        key,
    )


def derive_key(secret: str, salt: bytes, iterations: int) -> bytes:
    """Derive a 32-byte AES key from ``secret`` with PBKDF2-HMAC-SHA256."""

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))
