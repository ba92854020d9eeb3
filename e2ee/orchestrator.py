"""Top-level façade used by the UI and transport layers.

:class:`E2EEOrchestrator` is constructed once per signed-in user and passed to
whatever needs it; there is no module-level instance. It ties the identity
manager, the directory and the message cipher together and converts
cryptographic failures into sentinels so callers can always fall back to a
safe display.

Lifecycle (identity)::

    UNINITIALIZED -> INITIALIZING -> READY
                                  -> LOCKED -> READY (after recover)

Per channel toggle::

    DISABLED -> ENABLING -> ENABLED -> DISABLED

Only the user recorded as ``enabled_by`` may disable a channel, and the
remote state is re-read before any transition because another member may
have changed it since the last push notification. Before minting a new
session key the orchestrator checks whether one is already discoverable for
the channel and reuses it, so two members enabling at the same time do not
shadow each other's keys.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

from marshmallow import ValidationError

from . import events
from .channel_state import ChannelE2EEState, ChannelStateBook, ToggleRights
from .config import Settings
from .directory import Directory
from .errors import (
    DistributionRejected,
    IdentityNotInitialized,
    InvalidRecoveryCode,
    NoEligibleRecipients,
    StorageUnavailable,
    WrapFailure,
)
from .events import EventBus
from .identity import IdentityKeyManager, IdentityStatus
from .keystore import KeyStore
from .message_cipher import DecryptFailureReason, DecryptResult, MessageCipher
from .wire import ChannelStateSchema

logger = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], Awaitable[Any]]


class Lifecycle(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    LOCKED = "locked"
    READY = "ready"


class ChannelPhase(enum.Enum):
    DISABLED = "disabled"
    ENABLING = "enabling"
    ENABLED = "enabled"


@dataclass(frozen=True)
class ToggleResult:
    """Outcome of an enable or disable request.

    ``reason`` is a stable machine-readable code on failure; ``message``
    carries the directory's own text when there is one.
    """

    success: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    created_key: bool = False


class E2EEOrchestrator:
    """Coordinate identity, session keys and message encryption for one user."""

    def __init__(
        self,
        user_id: str,
        directory: Directory,
        store: KeyStore,
        settings: Optional[Settings] = None,
        *,
        identity: Optional[IdentityKeyManager] = None,
        cipher: Optional[MessageCipher] = None,
        bus: Optional[EventBus] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        self.user_id = str(user_id)
        self.settings = settings or Settings()
        self.directory = directory
        self.identity = identity or IdentityKeyManager(store, self.settings)
        self.cipher = cipher or MessageCipher()
        self.events = bus or EventBus()
        self._transport = transport
        self._states = ChannelStateBook(store)
        self._phases: Dict[str, ChannelPhase] = {}
        self._enabling: Dict[str, "asyncio.Task[ToggleResult]"] = {}
        self._init_task: Optional["asyncio.Task[bool]"] = None
        self.lifecycle = Lifecycle.UNINITIALIZED

    # -- status -----------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self.lifecycle is Lifecycle.READY and self.identity.is_initialized

    @property
    def recovery_code(self) -> Optional[str]:
        return self.identity.recovery_code

    def channel_phase(self, channel_id: str) -> ChannelPhase:
        return self._phases.get(str(channel_id), ChannelPhase.DISABLED)

    def channel_state(self, channel_id: str) -> ChannelE2EEState:
        return self._states.get(channel_id)

    def is_channel_encrypted(self, channel_id: str) -> bool:
        return self._states.get(channel_id).enabled

    def can_toggle(self, channel_id: str) -> ToggleRights:
        return self._states.get(channel_id).can_toggle(self.user_id)

    # -- identity lifecycle ----------------------------------------------

    async def initialize(self, recovery_code: Optional[str] = None) -> bool:
        """Establish the identity and register it with the directory.

        Concurrent calls share one attempt. Returns ``False`` when storage is
        unavailable (retry later) or the identity is locked pending its
        recovery code.
        """

        if self.is_ready:
            return True
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize(recovery_code))
            self._init_task.add_done_callback(self._clear_init_task)
        return await asyncio.shield(self._init_task)

    def _clear_init_task(self, task: "asyncio.Task[bool]") -> None:
        if self._init_task is task:
            self._init_task = None

    async def _initialize(self, recovery_code: Optional[str]) -> bool:
        self.lifecycle = Lifecycle.INITIALIZING
        try:
            status = await self.identity.initialize(recovery_code)
            await self._states.load()
        except StorageUnavailable:
            logger.exception("Key storage unavailable during initialization")
            self.lifecycle = Lifecycle.UNINITIALIZED
            return False
        except InvalidRecoveryCode:
            logger.warning("Recovery code supplied at start-up was rejected")
            self.lifecycle = Lifecycle.LOCKED
            await self.events.emit(events.IDENTITY_LOCKED, reason="invalid_recovery_code")
            return False

        if status is IdentityStatus.LOCKED:
            self.lifecycle = Lifecycle.LOCKED
            await self.events.emit(events.IDENTITY_LOCKED, reason="recovery_code_required")
            return False

        self._sync_phases()
        if status is IdentityStatus.CREATED:
            await self.events.emit(
                events.RECOVERY_CODE_ISSUED, recovery_code=self.identity.recovery_code
            )
        await self._become_ready()
        return True

    async def _become_ready(self) -> None:
        self.lifecycle = Lifecycle.READY
        await self.events.emit(events.IDENTITY_READY, fingerprint=self.identity.fingerprint)
        await self.register()

    def _sync_phases(self) -> None:
        for channel_id, state in self._states.items():
            self._phases[channel_id] = (
                ChannelPhase.ENABLED if state.enabled else ChannelPhase.DISABLED
            )

    async def register(self) -> bool:
        """Publish the public identity; safe to call repeatedly."""

        if not self.identity.is_initialized:
            return False
        return await self.identity.register_on_server(self.directory)

    async def recover(self, code: str, escrow: Optional[str] = None) -> bool:
        """Unlock or replace the identity with ``code``."""

        try:
            recovered = await self.identity.recover_with_code(code, escrow)
            if recovered:
                await self._states.load()
        except StorageUnavailable:
            logger.exception("Key storage unavailable during recovery")
            return False
        if not recovered:
            return False
        self._sync_phases()
        await self._become_ready()
        return True

    async def reset(self) -> bool:
        """Destroy every key and toggle mirror. Requires a new initialize."""

        try:
            await self.identity.clear_all_keys()
            await self._states.clear()
        except StorageUnavailable:
            logger.exception("Key storage unavailable during reset")
            return False
        self._phases.clear()
        self._enabling.clear()
        self.lifecycle = Lifecycle.UNINITIALIZED
        await self.events.emit(events.KEYS_RESET)
        return True

    async def reset_keys(self) -> bool:
        """Reset, then create a fresh identity."""
        if not await self.reset():
            return False
        return await self.initialize()

    # -- channel toggle ---------------------------------------------------

    async def _refresh_remote_state(self, channel_id: str) -> ChannelE2EEState:
        try:
            remote = await self.directory.get_channel_state(channel_id)
        except Exception:
            logger.warning("Could not read remote state of channel %s", channel_id, exc_info=True)
            remote = None
        if remote is not None and remote != self._states.get(channel_id):
            # The directory is authoritative, so its answer replaces the mirror
            # whatever the timestamps say.
            await self._states.set(channel_id, remote)
        return self._states.get(channel_id)

    async def enable_for_channel(
        self, channel_id: str, member_ids: Optional[Iterable[str]] = None
    ) -> ToggleResult:
        """Turn encryption on for ``channel_id``.

        ``member_ids`` defaults to the directory's membership listing. An
        existing distributable session key is reused; otherwise a new one is
        generated and distributed.
        """

        channel_id = str(channel_id)
        if not self.is_ready:
            return ToggleResult(False, reason="not_initialized")

        task = self._enabling.get(channel_id)
        if task is None:
            task = asyncio.ensure_future(self._enable(channel_id, member_ids))
            self._enabling[channel_id] = task
            task.add_done_callback(lambda t, cid=channel_id: self._forget_enable(cid, t))
        return await asyncio.shield(task)

    def _forget_enable(self, channel_id: str, task: "asyncio.Task") -> None:
        if self._enabling.get(channel_id) is task:
            del self._enabling[channel_id]

    async def _enable(
        self, channel_id: str, member_ids: Optional[Iterable[str]]
    ) -> ToggleResult:
        previous = self.channel_phase(channel_id)
        state = await self._refresh_remote_state(channel_id)
        if state.enabled and state.enabled_by not in (None, self.user_id):
            self._phases[channel_id] = ChannelPhase.ENABLED
            return ToggleResult(
                False,
                reason="enabled_by_other",
                message=f"encryption was enabled by user {state.enabled_by}",
            )

        self._phases[channel_id] = ChannelPhase.ENABLING
        if member_ids is None:
            try:
                member_ids = await self.directory.list_members(channel_id)
            except Exception:
                logger.warning("Listing members of channel %s failed", channel_id, exc_info=True)
                member_ids = []
        members = [str(m) for m in member_ids]
        if not members:
            return await self._enable_failed(channel_id, previous, "no_members")
        if self.user_id not in members:
            # The enabler needs its own envelope to re-fetch the key later.
            members.append(self.user_id)

        created = False
        try:
            key = await self.identity.fetch_session_key(self.directory, channel_id)
            if key is None:
                await self.identity.create_and_distribute_session_key(
                    self.directory, channel_id, members
                )
                created = True
        except IdentityNotInitialized:
            # Keys were reset while the request was in flight.
            return await self._enable_failed(channel_id, previous, "not_initialized")
        except NoEligibleRecipients as exc:
            return await self._enable_failed(
                channel_id, previous, "no_eligible_recipients", str(exc)
            )
        except WrapFailure as exc:
            return await self._enable_failed(channel_id, previous, "wrap_failure", str(exc))
        except DistributionRejected as exc:
            reason = "configuration_defect" if exc.configuration_defect else "distribution_rejected"
            return await self._enable_failed(channel_id, previous, reason, exc.message)
        except StorageUnavailable as exc:
            return await self._enable_failed(
                channel_id, previous, "storage_unavailable", str(exc)
            )

        await self.events.emit(events.SESSION_KEY_READY, channel_id=channel_id, created=created)

        if not await self._save_remote_state(channel_id, True):
            return await self._enable_failed(channel_id, previous, "state_not_saved")

        await self._states.set(channel_id, ChannelE2EEState(True, self.user_id))
        self._phases[channel_id] = ChannelPhase.ENABLED
        await self.events.emit(
            events.ENCRYPTION_ENABLED,
            channel_id=channel_id,
            enabled_by=self.user_id,
            created_key=created,
        )
        return ToggleResult(True, created_key=created)

    async def _save_remote_state(self, channel_id: str, enabled: bool) -> bool:
        enabled_by = self.user_id if enabled else None
        try:
            return await self.directory.set_channel_state(channel_id, enabled, enabled_by)
        except Exception:
            logger.warning(
                "Saving the e2ee state of channel %s failed", channel_id, exc_info=True
            )
            return False

    async def _enable_failed(
        self,
        channel_id: str,
        previous: ChannelPhase,
        reason: str,
        message: Optional[str] = None,
    ) -> ToggleResult:
        logger.warning("Enabling encryption on channel %s failed: %s", channel_id, reason)
        self._phases[channel_id] = previous
        await self.events.emit(
            events.ENCRYPTION_ENABLE_FAILED,
            channel_id=channel_id,
            reason=reason,
            message=message,
        )
        return ToggleResult(False, reason=reason, message=message)

    async def disable_for_channel(self, channel_id: str) -> ToggleResult:
        """Turn encryption off; only the user who enabled it may do so.

        The channel's session key stays cached so earlier messages remain
        readable.
        """

        channel_id = str(channel_id)
        if not self.is_ready:
            return ToggleResult(False, reason="not_initialized")

        state = await self._refresh_remote_state(channel_id)
        if not state.enabled:
            self._phases[channel_id] = ChannelPhase.DISABLED
            return ToggleResult(True)
        rights = state.can_toggle(self.user_id)
        if not rights.can_disable:
            return ToggleResult(False, reason="not_owner", message=rights.reason)

        if not await self._save_remote_state(channel_id, False):
            return ToggleResult(False, reason="state_not_saved")

        await self._states.set(channel_id, ChannelE2EEState(False, None))
        self._phases[channel_id] = ChannelPhase.DISABLED
        await self.events.emit(events.ENCRYPTION_DISABLED, channel_id=channel_id)
        return ToggleResult(True)

    async def apply_remote_state(self, channel_id: str, payload: Mapping[str, Any]) -> bool:
        """Handle a pushed ``e2ee_status_changed`` notification.

        Returns ``True`` when the local mirror changed. Unreadable payloads are
        logged and ignored.
        """

        channel_id = str(channel_id)
        try:
            state = ChannelStateSchema().load(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed e2ee status for channel %s: %s", channel_id, exc.messages)
            return False
        if not await self._states.apply_remote(channel_id, state):
            return False

        if self.channel_phase(channel_id) is not ChannelPhase.ENABLING:
            self._phases[channel_id] = (
                ChannelPhase.ENABLED if state.enabled else ChannelPhase.DISABLED
            )
        name = events.ENCRYPTION_ENABLED if state.enabled else events.ENCRYPTION_DISABLED
        await self.events.emit(
            name, channel_id=channel_id, enabled_by=state.enabled_by, remote=True
        )
        return True

    # -- messages ---------------------------------------------------------

    async def _session_key(self, channel_id: str) -> Optional[bytes]:
        key = self.identity.get_session_key(channel_id)
        if key is None:
            key = await self.identity.fetch_session_key(self.directory, channel_id)
        return key

    async def send_encrypted_message(
        self, channel_id: str, plaintext: str
    ) -> Optional[Dict[str, Any]]:
        """Encrypt ``plaintext`` for ``channel_id`` and hand it to the transport.

        Returns the wire payload (``channel_id``, ``encrypted_content``, ``iv``,
        ``auth_tag``) or ``None`` when no session key is available.
        """

        channel_id = str(channel_id)
        if not self.is_ready:
            logger.error("Cannot encrypt for channel %s: identity not ready", channel_id)
            return None
        key = await self._session_key(channel_id)
        if key is None:
            logger.error("No session key available for channel %s", channel_id)
            return None

        payload: Dict[str, Any] = {"channel_id": channel_id}
        payload.update(self.cipher.encrypt(plaintext, key).to_wire())
        if self._transport is not None:
            await self._transport(payload)
        return payload

    async def decrypt_message(self, channel_id: str, envelope: Any) -> DecryptResult:
        """Decrypt an inbound message; never raises for bad input."""

        channel_id = str(channel_id)
        if not self.is_ready:
            return DecryptResult(failure=DecryptFailureReason.NO_KEY)
        key = await self._session_key(channel_id)
        if key is None:
            return DecryptResult(failure=DecryptFailureReason.NO_KEY)
        return self.cipher.decrypt(envelope, key)

    async def render_message(self, channel_id: str, envelope: Any) -> str:
        """Plaintext of ``envelope`` or the locked placeholder."""
        return (await self.decrypt_message(channel_id, envelope)).display_text()
