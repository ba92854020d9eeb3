"""Cryptography helper tests.

These unit tests exercise the primitives used for end-to-end encryption:
RSA-OAEP wrapping of session keys and AES-GCM sealing of payloads. They
confirm that normal round trips succeed and that tampering or using the
wrong key fails as expected. Run with ``pytest``.
"""

import dataclasses

import pytest

from e2ee import asymmetric, symmetric
from e2ee.errors import DecryptionFailure, MalformedEnvelope


@pytest.fixture(scope="module")
def pair():
    return asymmetric.generate_identity_keypair(2048)


def test_wrap_unwrap_roundtrip(pair):
    """A wrapped session key unwraps to the same bytes."""
    key = symmetric.generate_session_key()
    wrapped = asymmetric.wrap_session_key(key, pair.public_key)
    assert asymmetric.unwrap_session_key(wrapped, pair.private_key) == key


def test_unwrap_with_wrong_private_key_fails(pair):
    other = asymmetric.generate_identity_keypair(2048)
    wrapped = asymmetric.wrap_session_key(b"k" * 32, pair.public_key)
    with pytest.raises(DecryptionFailure):
        asymmetric.unwrap_session_key(wrapped, other.private_key)


def test_unwrap_rejects_invalid_base64(pair):
    with pytest.raises(MalformedEnvelope):
        asymmetric.unwrap_session_key("not base64!!", pair.private_key)


def test_public_key_import_accepts_bare_body(pair):
    """Keys published without PEM armour should still import."""
    pem = pair.public_pem
    body = "".join(line for line in pem.splitlines() if not line.startswith("-----"))
    imported = asymmetric.import_public_key(body)
    assert asymmetric.fingerprint(imported) == pair.fingerprint


def test_private_key_export_import(pair):
    pem = asymmetric.export_private_key(pair.private_key)
    restored = asymmetric.import_private_key(pem)
    assert asymmetric.fingerprint(restored.public_key()) == pair.fingerprint


def test_import_garbage_public_key():
    with pytest.raises(MalformedEnvelope):
        asymmetric.import_public_key("hello world")


def test_seal_roundtrip():
    key = symmetric.generate_session_key()
    box = symmetric.seal(b"top secret", key)
    assert len(box.nonce) == symmetric.NONCE_SIZE
    assert len(box.tag) == symmetric.TAG_SIZE
    assert symmetric.open_sealed(box, key) == b"top secret"


def test_seal_uses_fresh_nonce():
    key = symmetric.generate_session_key()
    first = symmetric.seal(b"same", key)
    second = symmetric.seal(b"same", key)
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


@pytest.mark.parametrize("field", ["ciphertext", "tag", "nonce"])
@pytest.mark.parametrize(
    "position, bit",
    [(0, 0x01), (-1, 0x80), ("middle", 0x10)],
    ids=["first-byte", "last-byte", "middle-bit"],
)
def test_tampering_detected(field, position, bit):
    """Flipping a bit anywhere in any field must fail authentication."""
    key = symmetric.generate_session_key()
    box = symmetric.seal(b"a payload long enough to have a middle", key)
    value = bytearray(getattr(box, field))
    index = len(value) // 2 if position == "middle" else position
    value[index] ^= bit
    tampered = dataclasses.replace(box, **{field: bytes(value)})
    with pytest.raises(DecryptionFailure):
        symmetric.open_sealed(tampered, key)


def test_open_with_wrong_key_fails():
    box = symmetric.seal(b"payload", symmetric.generate_session_key())
    with pytest.raises(DecryptionFailure):
        symmetric.open_sealed(box, symmetric.generate_session_key())


def test_short_nonce_is_malformed():
    key = symmetric.generate_session_key()
    box = symmetric.seal(b"payload", key)
    with pytest.raises(MalformedEnvelope):
        symmetric.open_sealed(
            symmetric.SealedPayload(box.ciphertext, box.nonce[:8], box.tag), key
        )


def test_wrong_key_length_is_malformed():
    with pytest.raises(MalformedEnvelope):
        symmetric.seal(b"payload", b"short")


def test_combined_layout():
    """Combined blobs are nonce || ciphertext || tag."""
    key = symmetric.generate_session_key()
    blob = symmetric.encrypt_combined(b"abc", key)
    assert len(blob) == symmetric.NONCE_SIZE + 3 + symmetric.TAG_SIZE
    assert symmetric.decrypt_combined(blob, key) == b"abc"


def test_derive_key_is_deterministic_per_salt():
    salt = b"s" * symmetric.SALT_SIZE
    first = symmetric.derive_key("secret", salt, 100_000)
    assert first == symmetric.derive_key("secret", salt, 100_000)
    assert first != symmetric.derive_key("secret", b"t" * symmetric.SALT_SIZE, 100_000)
    assert len(first) == symmetric.KEY_SIZE
