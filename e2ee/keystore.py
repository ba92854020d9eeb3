"""Persistent key-value stores for identity and session key material.

The core treats storage as an opaque asynchronous mapping of string keys to
string values. Two implementations are provided:

``MemoryKeyStore``
    Process-local dictionary, used by tests and ephemeral sessions.
``KeyringKeyStore``
    Backed by the operating system credential vault through :mod:`keyring`,
    which gives encrypted-at-rest semantics on every supported platform.
    Blocking keyring calls run in a worker thread so the event loop never
    stalls.

Stores raise :class:`~e2ee.errors.StorageUnavailable` when the backend cannot
be reached. A missing key is not an error; ``get`` returns ``None``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)


class KeyStore(Protocol):
    """Interface every key store implements."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryKeyStore:
    """Dictionary-backed store living only as long as the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        """Return a copy of the stored values."""
        return dict(self._data)


class KeyringKeyStore:
    """Store values in the platform keyring under ``service``."""

    def __init__(self, service: str = "channel_e2ee") -> None:
        self.service = service

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(keyring.get_password, self.service, key)
        except KeyringError as exc:
            raise StorageUnavailable(f"keyring read failed for {key!r}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(keyring.set_password, self.service, key, value)
        except KeyringError as exc:
            raise StorageUnavailable(f"keyring write failed for {key!r}") from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(keyring.delete_password, self.service, key)
        except PasswordDeleteError:
            # Already absent
            logger.debug("keyring entry %s was not present", key)
        except KeyringError as exc:
            raise StorageUnavailable(f"keyring delete failed for {key!r}") from exc


async def get_json(store: KeyStore, key: str) -> Any:
    """Return the JSON document stored under ``key`` or ``None``.

    A value that is not valid JSON is logged and treated as absent so a
    corrupt entry never blocks start-up.
    """

    raw = await store.get(key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding corrupt JSON entry %s", key)
        return None


async def set_json(store: KeyStore, key: str, data: Any) -> None:
    await store.set(key, json.dumps(data, ensure_ascii=True, sort_keys=True))
