"""Encryption of message bodies under a channel session key.

Messages are UTF-8 text sealed with AES-256-GCM (:mod:`e2ee.symmetric`). The
result carries ciphertext, nonce and tag as separate fields; on the wire they
travel base64 encoded under the names produced by
:meth:`~e2ee.wire.EncryptedMessage.to_wire`.

Decryption never raises for bad input. It returns a :class:`DecryptResult`
whose ``failure`` explains what went wrong, and the UI shows
:data:`LOCKED_PLACEHOLDER` instead of the message.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from . import symmetric
from .errors import DecryptionFailure, MalformedEnvelope
from .symmetric import SealedPayload
from .wire import EncryptedMessage, load_encrypted_message

logger = logging.getLogger(__name__)

LOCKED_PLACEHOLDER = "\U0001F512 Encrypted message"


class DecryptFailureReason(enum.Enum):
    MALFORMED = "malformed"
    AUTHENTICATION = "authentication"
    ENCODING = "encoding"
    NO_KEY = "no_key"


@dataclass(frozen=True)
class DecryptResult:
    plaintext: Optional[str] = None
    failure: Optional[DecryptFailureReason] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def display_text(self) -> str:
        """Plaintext on success, the locked placeholder otherwise."""
        return self.plaintext if self.ok else LOCKED_PLACEHOLDER


class MessageCipher:
    """Seal and open message bodies."""

    def encrypt(self, plaintext: Union[str, bytes], session_key: bytes) -> EncryptedMessage:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        box = symmetric.seal(data, session_key)
        return EncryptedMessage(ciphertext=box.ciphertext, nonce=box.nonce, auth_tag=box.tag)

    def decrypt(self, envelope: Any, session_key: bytes) -> DecryptResult:
        """Open ``envelope`` (an :class:`EncryptedMessage` or a wire mapping)."""

        try:
            message = load_encrypted_message(envelope)
            data = symmetric.open_sealed(
                SealedPayload(
                    ciphertext=message.ciphertext,
                    nonce=message.nonce,
                    tag=message.auth_tag,
                ),
                session_key,
            )
        except MalformedEnvelope as exc:
            logger.info("Rejected malformed message envelope: %s", exc)
            return DecryptResult(failure=DecryptFailureReason.MALFORMED)
        except DecryptionFailure:
            logger.info("Message failed authentication")
            return DecryptResult(failure=DecryptFailureReason.AUTHENTICATION)

        try:
            return DecryptResult(plaintext=data.decode("utf-8"))
        except UnicodeDecodeError:
            return DecryptResult(failure=DecryptFailureReason.ENCODING)
