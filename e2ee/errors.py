"""Exception taxonomy for the E2EE core.

Every failure the core can report derives from :class:`E2EEError` so callers
may catch the whole family at once. Cryptographic failures are normally
converted into sentinels by the public façade (see
:mod:`e2ee.orchestrator`); the exceptions below are what the lower layers
raise before that conversion happens.
"""

from __future__ import annotations

from typing import Optional


class E2EEError(Exception):
    """Base class for all errors raised by the package."""


class StorageUnavailable(E2EEError):
    """The secure key store could not be read or written."""


class IdentityNotInitialized(E2EEError):
    """An operation needed the identity key pair before it was loaded."""


class NoEligibleRecipients(E2EEError):
    """No channel member has a registered public identity."""


class WrapFailure(E2EEError):
    """The session key could not be wrapped for any eligible member."""


class DistributionRejected(E2EEError):
    """The directory refused a batch of session key envelopes.

    ``configuration_defect`` is ``True`` when the server error points at a
    missing relation on its side rather than at anything the user did.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        configuration_defect: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.configuration_defect = configuration_defect


class MalformedEnvelope(E2EEError):
    """An encrypted payload is missing fields or is not valid base64."""


class DecryptionFailure(E2EEError):
    """Authenticated decryption failed (wrong key or tampered data)."""


class InvalidRecoveryCode(E2EEError):
    """The recovery code does not unlock the escrowed private key."""


class DirectoryUnauthorized(E2EEError):
    """The directory rejected the request because auth is not ready yet."""


class DirectoryConflict(E2EEError):
    """The directory already holds the submitted value."""
