"""Local mirror of each channel's encryption toggle.

The directory is the source of truth for ``{enabled, enabled_by}``. This
module keeps a local copy per channel so the UI can render the toggle
without a round trip, applies updates pushed by the server, and answers who
may flip the toggle. Only the user recorded in ``enabled_by`` may disable
encryption once it is on.

Servers encode the enabled flag inconsistently (``true``, ``1``, ``"1"``...),
so :func:`decode_enabled_flag` accepts an explicit list of literals and
rejects anything else instead of relying on truthiness.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .keystore import KeyStore, get_json, set_json

logger = logging.getLogger(__name__)

STATE_STORAGE_KEY = "e2ee_channel_states"

_TRUE_LITERALS = frozenset({"1", "true", "yes", "on"})
_FALSE_LITERALS = frozenset({"0", "false", "no", "off", ""})


def decode_enabled_flag(value: Any) -> bool:
    """Decode a boolean flag received from a server or the environment.

    Accepted true values: ``True``, ``1``, ``"1"``, ``"true"``, ``"yes"``,
    ``"on"``. Accepted false values: ``False``, ``0``, ``"0"``, ``"false"``,
    ``"no"``, ``"off"``, ``""`` and ``None``. String comparison ignores case
    and surrounding whitespace.

    Raises
    ------
    ValueError
        For any other value.
    """

    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"unrecognised flag value: {value!r}")
    if isinstance(value, str):
        literal = value.strip().lower()
        if literal in _TRUE_LITERALS:
            return True
        if literal in _FALSE_LITERALS:
            return False
    raise ValueError(f"unrecognised flag value: {value!r}")


@dataclass(frozen=True)
class ToggleRights:
    can_enable: bool
    can_disable: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ChannelE2EEState:
    """Encryption toggle of one channel."""

    enabled: bool = False
    enabled_by: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.enabled and self.enabled_by is not None:
            object.__setattr__(self, "enabled_by", None)

    def can_toggle(self, user_id: str) -> ToggleRights:
        """Return what ``user_id`` may do with the toggle right now."""

        if not self.enabled:
            return ToggleRights(can_enable=True, can_disable=False)
        if self.enabled_by is None or self.enabled_by == user_id:
            # A server-side override may leave ``enabled_by`` empty; anyone
            # may then take ownership by disabling.
            return ToggleRights(can_enable=False, can_disable=True)
        return ToggleRights(
            can_enable=False,
            can_disable=False,
            reason=f"encryption was enabled by user {self.enabled_by}",
        )


class ChannelStateBook:
    """Per-channel toggle states, persisted in a :class:`KeyStore`."""

    def __init__(self, store: KeyStore) -> None:
        self._store = store
        self._states: Dict[str, ChannelE2EEState] = {}

    async def load(self) -> None:
        raw = await get_json(self._store, STATE_STORAGE_KEY)
        self._states.clear()
        if not isinstance(raw, dict):
            return
        for channel_id, item in raw.items():
            try:
                self._states[str(channel_id)] = ChannelE2EEState(
                    enabled=decode_enabled_flag(item.get("enabled")),
                    enabled_by=item.get("enabled_by"),
                    timestamp=float(item.get("timestamp", 0.0)),
                )
            except (AttributeError, TypeError, ValueError):
                logger.warning("Skipping corrupt toggle state for channel %s", channel_id)

    async def _persist(self) -> None:
        await set_json(
            self._store,
            STATE_STORAGE_KEY,
            {cid: asdict(state) for cid, state in self._states.items()},
        )

    def items(self) -> List[Tuple[str, ChannelE2EEState]]:
        return list(self._states.items())

    def get(self, channel_id: str) -> ChannelE2EEState:
        return self._states.get(str(channel_id), ChannelE2EEState(timestamp=0.0))

    async def set(self, channel_id: str, state: ChannelE2EEState) -> None:
        self._states[str(channel_id)] = state
        await self._persist()

    async def apply_remote(self, channel_id: str, state: ChannelE2EEState) -> bool:
        """Adopt ``state`` unless it is older than what is already known.

        Returns ``True`` when the local mirror changed.
        """

        current = self._states.get(str(channel_id))
        if current is not None and state.timestamp < current.timestamp:
            logger.debug("Ignoring stale toggle update for channel %s", channel_id)
            return False
        if current == state:
            return False
        await self.set(channel_id, state)
        return True

    async def clear(self) -> None:
        self._states.clear()
        await self._store.remove(STATE_STORAGE_KEY)
