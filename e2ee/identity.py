"""Identity key pair and per-channel session key management.

:class:`IdentityKeyManager` owns the user's RSA identity and the cache of
channel session keys. Persisted layout in the :class:`~e2ee.keystore.KeyStore`:

``e2ee_identity_public``
    PEM public key.
``e2ee_identity_private``
    Escrow blob: the PKCS8 private key wrapped under the recovery code (see
    :mod:`e2ee.recovery`). This is the only persisted form of the private key.
``e2ee_session_keys``
    JSON list of ``{"channel_id", "key"}`` with base64 session keys.
``e2ee_recovery_code``
    Only written when ``Settings.remember_recovery_code`` is enabled.

Without a remembered recovery code the escrow cannot be opened on the next
process start. :meth:`IdentityKeyManager.initialize` then reports
:attr:`IdentityStatus.LOCKED` and the user unlocks the identity by entering
the code, which goes through :meth:`IdentityKeyManager.recover_with_code`.

Concurrency
-----------
All methods run on one event loop. Concurrent :meth:`fetch_session_key` calls
for the same channel share a single in-flight task so the directory sees one
request and the cache is written once. A reset bumps an internal epoch so a
lookup that started before :meth:`clear_all_keys` cannot repopulate the
cache afterwards.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import enum
import logging
from typing import Dict, Iterable, Optional

import sentry_sdk

from . import asymmetric, symmetric
from .asymmetric import IdentityKeyPair
from .config import Settings
from .directory import Directory, RegistrationOutcome, RegistrationResult
from .distribution import SessionKeyDistributor
from .errors import (
    DecryptionFailure,
    DirectoryConflict,
    DirectoryUnauthorized,
    IdentityNotInitialized,
    InvalidRecoveryCode,
    MalformedEnvelope,
)
from .keystore import KeyStore, get_json, set_json
from .recovery import RecoveryCodec

logger = logging.getLogger(__name__)

PUBLIC_KEY_STORAGE_KEY = "e2ee_identity_public"
PRIVATE_KEY_STORAGE_KEY = "e2ee_identity_private"
SESSION_KEYS_STORAGE_KEY = "e2ee_session_keys"
RECOVERY_CODE_STORAGE_KEY = "e2ee_recovery_code"


class IdentityStatus(enum.Enum):
    CREATED = "created"
    LOADED = "loaded"
    LOCKED = "locked"


class IdentityKeyManager:
    """Load, create, escrow and use the identity key pair."""

    def __init__(
        self,
        store: KeyStore,
        settings: Optional[Settings] = None,
        *,
        codec: Optional[RecoveryCodec] = None,
        distributor: Optional[SessionKeyDistributor] = None,
    ) -> None:
        self.settings = settings or Settings()
        self._store = store
        self._codec = codec or RecoveryCodec(
            words=self.settings.recovery_words,
            separator=self.settings.recovery_separator,
            iterations=self.settings.pbkdf2_iterations,
        )
        self._distributor = distributor or SessionKeyDistributor()
        self._identity: Optional[IdentityKeyPair] = None
        self._recovery_code: Optional[str] = None
        self._session_keys: Dict[str, bytes] = {}
        self._inflight: Dict[str, "asyncio.Task[Optional[bytes]]"] = {}
        self._registered = False
        self._registration_lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._epoch = 0
        self._locked = False

    # -- state ------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._identity is not None

    @property
    def is_locked(self) -> bool:
        return self._locked

    @property
    def recovery_code(self) -> Optional[str]:
        """The recovery code, known only right after creation or recovery."""
        return self._recovery_code

    @property
    def public_key_pem(self) -> Optional[str]:
        return self._identity.public_pem if self._identity else None

    @property
    def fingerprint(self) -> Optional[str]:
        return self._identity.fingerprint if self._identity else None

    def _require_identity(self) -> IdentityKeyPair:
        if self._identity is None:
            raise IdentityNotInitialized("identity key pair is not loaded")
        return self._identity

    # -- initialization ---------------------------------------------------

    async def initialize(self, recovery_code: Optional[str] = None) -> IdentityStatus:
        """Load the stored identity or create a new one.

        Parameters
        ----------
        recovery_code:
            Code used to open an existing escrow. When omitted, the
            remembered code is used if the legacy setting allows it.

        Returns
        -------
        IdentityStatus
            ``LOADED`` for an existing identity (including repeated calls),
            ``CREATED`` when a new key pair was generated and ``LOCKED`` when
            an escrow exists but no code was available to open it.

        Raises
        ------
        StorageUnavailable
            If the key store cannot be used. Nothing is cached in that case,
            so a later call may retry.
        InvalidRecoveryCode
            If an explicit ``recovery_code`` does not open the stored escrow.
        """

        if self._identity is not None:
            return IdentityStatus.LOADED

        public_pem = await self._store.get(PUBLIC_KEY_STORAGE_KEY)
        escrow = await self._store.get(PRIVATE_KEY_STORAGE_KEY)

        if public_pem and escrow:
            code = recovery_code
            if code is None and self.settings.remember_recovery_code:
                code = await self._store.get(RECOVERY_CODE_STORAGE_KEY)
            if code is None:
                self._locked = True
                logger.info("Stored identity found; waiting for the recovery code")
                return IdentityStatus.LOCKED
            try:
                await self._open_escrow(escrow, code, public_pem)
                return IdentityStatus.LOADED
            except InvalidRecoveryCode:
                if recovery_code is not None:
                    self._locked = True
                    raise
                logger.warning("Stored identity is corrupt; generating a new one")
            except MalformedEnvelope:
                logger.warning("Stored identity is unreadable; generating a new one")

        await self._generate_identity()
        return IdentityStatus.CREATED

    async def _generate_identity(self) -> None:
        identity = await asyncio.to_thread(
            asymmetric.generate_identity_keypair, self.settings.rsa_key_size
        )
        code = self._codec.generate_code()
        escrow = await asyncio.to_thread(
            self._codec.wrap, asymmetric.export_private_key(identity.private_key), code
        )

        await self._store.set(PUBLIC_KEY_STORAGE_KEY, identity.public_pem)
        await self._store.set(PRIVATE_KEY_STORAGE_KEY, escrow)
        if self.settings.remember_recovery_code:
            await self._store.set(RECOVERY_CODE_STORAGE_KEY, code)
        else:
            await self._store.remove(RECOVERY_CODE_STORAGE_KEY)

        self._identity = identity
        self._recovery_code = code
        self._locked = False
        self._registered = False
        await self._load_session_keys()
        logger.info("Generated new identity key %s", identity.fingerprint)

    async def _open_escrow(
        self, escrow: str, code: str, public_pem: Optional[str]
    ) -> None:
        private_pem = await asyncio.to_thread(self._codec.unwrap, escrow, code)
        private_key = asymmetric.import_private_key(private_pem)
        identity = IdentityKeyPair(private_key.public_key(), private_key)

        stored_fp = None
        if public_pem:
            try:
                stored_fp = asymmetric.fingerprint(asymmetric.import_public_key(public_pem))
            except MalformedEnvelope:
                stored_fp = None
        if stored_fp != identity.fingerprint:
            logger.warning("Stored public key did not match escrow; rewriting it")
            await self._store.set(PUBLIC_KEY_STORAGE_KEY, identity.public_pem)

        self._identity = identity
        self._recovery_code = self._codec.normalize(code)
        self._locked = False
        await self._load_session_keys()
        logger.info("Loaded identity key %s", identity.fingerprint)

    # -- directory registration -------------------------------------------

    def _registration_guard(self) -> asyncio.Lock:
        # Locks belong to one event loop; the manager may outlive several.
        loop = asyncio.get_running_loop()
        if self._registration_lock is None or self._lock_loop is not loop:
            self._registration_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._registration_lock

    async def register_on_server(self, directory: Directory) -> bool:
        """Publish the public identity once per process lifetime.

        Returns ``True`` once the directory holds the key (fresh registration
        or conflict). An unauthenticated session returns ``False`` quietly so
        the caller can retry after login; other failures are logged and
        reported but never raised.
        """

        identity = self._require_identity()
        if self._registered:
            return True

        async with self._registration_guard():
            if self._registered:
                return True
            try:
                result = await directory.register_public_identity(identity.public_pem)
            except DirectoryConflict:
                result = RegistrationResult(RegistrationOutcome.CONFLICT)
            except DirectoryUnauthorized:
                result = RegistrationResult(RegistrationOutcome.UNAUTHORIZED)
            except Exception as exc:
                logger.warning("Identity registration failed: %s", exc)
                sentry_sdk.capture_exception(exc)
                return False

            if result.outcome in (RegistrationOutcome.SUCCESS, RegistrationOutcome.CONFLICT):
                self._registered = True
                logger.info("Identity %s registered with directory", identity.fingerprint)
                return True
            if result.outcome is RegistrationOutcome.UNAUTHORIZED:
                logger.debug("Directory not authenticated yet; registration deferred")
                return False

            logger.warning(
                "Identity registration rejected (status %s): %s",
                result.status,
                result.message,
            )
            sentry_sdk.capture_message(
                f"identity registration rejected with status {result.status}",
                level="warning",
            )
            return False

    # -- session keys -----------------------------------------------------

    def get_session_key(self, channel_id: str) -> Optional[bytes]:
        return self._session_keys.get(str(channel_id))

    async def set_session_key(self, channel_id: str, key: bytes) -> None:
        if len(key) != symmetric.KEY_SIZE:
            raise ValueError(f"session keys must be {symmetric.KEY_SIZE} bytes")
        self._session_keys[str(channel_id)] = key
        await self._save_session_keys()

    async def clear_session_key(self, channel_id: str) -> None:
        if self._session_keys.pop(str(channel_id), None) is not None:
            await self._save_session_keys()

    async def create_and_distribute_session_key(
        self, directory: Directory, channel_id: str, member_ids: Iterable[str]
    ) -> bytes:
        """Mint a session key for ``channel_id`` and share it with members.

        Errors from :meth:`SessionKeyDistributor.distribute` propagate and
        leave the cache untouched.
        """

        self._require_identity()
        epoch = self._epoch
        key = await self._distributor.distribute(directory, str(channel_id), member_ids)
        if epoch == self._epoch:
            await self.set_session_key(channel_id, key)
        return key

    async def fetch_session_key(
        self, directory: Directory, channel_id: str
    ) -> Optional[bytes]:
        """Return the session key for ``channel_id``, asking the directory if needed.

        ``None`` means encryption is unavailable for the channel: there is no
        envelope for this user or it could not be unwrapped.
        """

        channel_id = str(channel_id)
        cached = self._session_keys.get(channel_id)
        if cached is not None:
            return cached
        self._require_identity()

        task = self._inflight.get(channel_id)
        if task is None:
            task = asyncio.ensure_future(self._resolve_session_key(directory, channel_id))
            self._inflight[channel_id] = task
            task.add_done_callback(lambda t, cid=channel_id: self._forget_inflight(cid, t))
        return await asyncio.shield(task)

    def _forget_inflight(self, channel_id: str, task: "asyncio.Task") -> None:
        if self._inflight.get(channel_id) is task:
            del self._inflight[channel_id]

    async def _resolve_session_key(
        self, directory: Directory, channel_id: str
    ) -> Optional[bytes]:
        epoch = self._epoch
        try:
            envelope = await directory.fetch_session_key_envelope(channel_id)
        except Exception:
            logger.warning("Fetching session key for channel %s failed", channel_id, exc_info=True)
            return None
        if envelope is None:
            logger.info("No session key envelope for channel %s", channel_id)
            return None
        if epoch != self._epoch or self._identity is None:
            return None

        try:
            key = asymmetric.unwrap_session_key(
                envelope.wrapped_session_key, self._identity.private_key
            )
        except (MalformedEnvelope, DecryptionFailure):
            logger.warning("Session key envelope for channel %s could not be unwrapped", channel_id)
            return None
        if len(key) != symmetric.KEY_SIZE:
            logger.warning("Session key for channel %s has the wrong length", channel_id)
            return None

        # A distribution that finished meanwhile wins over the fetched key.
        current = self._session_keys.get(channel_id)
        if current is not None:
            return current
        await self.set_session_key(channel_id, key)
        return key

    async def _load_session_keys(self) -> None:
        raw = await get_json(self._store, SESSION_KEYS_STORAGE_KEY)
        self._session_keys.clear()
        if not isinstance(raw, list):
            return
        for item in raw:
            try:
                key = base64.b64decode(item["key"], validate=True)
                channel_id = str(item["channel_id"])
            except (KeyError, TypeError, binascii.Error, ValueError):
                logger.warning("Skipping corrupt stored session key entry")
                continue
            if len(key) == symmetric.KEY_SIZE:
                self._session_keys[channel_id] = key
        logger.debug("Loaded %d session keys from storage", len(self._session_keys))

    async def _save_session_keys(self) -> None:
        payload = [
            {"channel_id": cid, "key": base64.b64encode(key).decode("ascii")}
            for cid, key in self._session_keys.items()
        ]
        await set_json(self._store, SESSION_KEYS_STORAGE_KEY, payload)

    # -- recovery and reset -----------------------------------------------

    async def export_escrow(self) -> Optional[str]:
        """Return the escrow blob so it can be carried to another device."""
        return await self._store.get(PRIVATE_KEY_STORAGE_KEY)

    async def recover_with_code(self, code: str, escrow: Optional[str] = None) -> bool:
        """Replace the in-memory identity with the one escrowed under ``code``.

        Parameters
        ----------
        code:
            The user's recovery code.
        escrow:
            Escrow blob brought from another device. When given and valid it
            is persisted as this device's escrow; otherwise the stored blob
            is used.

        Returns ``False`` without touching any state when the code is wrong
        or no escrow is available.
        """

        blob = escrow or await self._store.get(PRIVATE_KEY_STORAGE_KEY)
        if not blob:
            logger.info("Recovery requested but no escrow is available")
            return False
        try:
            private_pem = await asyncio.to_thread(self._codec.unwrap, blob, code)
            private_key = asymmetric.import_private_key(private_pem)
        except (InvalidRecoveryCode, MalformedEnvelope):
            logger.warning("Recovery code rejected")
            return False

        identity = IdentityKeyPair(private_key.public_key(), private_key)
        if self._identity is None or self._identity.fingerprint != identity.fingerprint:
            self._registered = False
        if escrow:
            await self._store.set(PRIVATE_KEY_STORAGE_KEY, escrow)
        await self._store.set(PUBLIC_KEY_STORAGE_KEY, identity.public_pem)
        normalized = self._codec.normalize(code)
        if self.settings.remember_recovery_code:
            await self._store.set(RECOVERY_CODE_STORAGE_KEY, normalized)

        self._identity = identity
        self._recovery_code = normalized
        self._locked = False
        await self._load_session_keys()
        logger.info("Recovered identity key %s", identity.fingerprint)
        return True

    async def clear_all_keys(self) -> None:
        """Forget the identity, recovery code and every session key."""

        self._epoch += 1
        self._identity = None
        self._recovery_code = None
        self._session_keys.clear()
        self._inflight.clear()
        self._registered = False
        self._locked = False
        for key in (
            PUBLIC_KEY_STORAGE_KEY,
            PRIVATE_KEY_STORAGE_KEY,
            SESSION_KEYS_STORAGE_KEY,
            RECOVERY_CODE_STORAGE_KEY,
        ):
            await self._store.remove(key)
        logger.info("All E2EE keys cleared")
