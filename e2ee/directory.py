"""Boundary with the remote key directory.

The directory stores public identities, wrapped session keys and each
channel's toggle state. :class:`Directory` is the interface the core depends
on; :class:`HttpDirectory` implements it over the REST API with
:mod:`httpx`. Response bodies are normalized through :mod:`e2ee.wire`, so no
other module needs to know about the server's field names.

REST routes used (relative to ``base_url``)::

    POST /e2ee/keys/register              {public_key}
    GET  /e2ee/keys/user/{user_id}
    POST /e2ee/session-keys/distribute    {channel_id, encrypted_keys}
    GET  /e2ee/session-keys/{channel_id}
    GET  /channel/{channel_id}/user
    GET  /channel/{channel_id}
    PUT  /channel/{channel_id}/e2ee       {e2ee_enabled, e2ee_enabled_by}
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence

import httpx
from marshmallow import ValidationError

from .channel_state import ChannelE2EEState
from .wire import (
    ChannelStateSchema,
    PublicIdentity,
    PublicIdentitySchema,
    SessionKeyEnvelope,
    SessionKeyEnvelopeSchema,
    first_present,
    load_member_ids,
    wire_id,
)

logger = logging.getLogger(__name__)

# Server errors caused by a missing table/relation on the directory side.
_MISSING_RELATION_RE = re.compile(
    r"(table .* doesn't exist|relation .* does not exist|undefined relationship"
    r"|no such table|channel_user)",
    re.IGNORECASE,
)


class RegistrationOutcome(enum.Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    OTHER = "other"


@dataclass(frozen=True)
class RegistrationResult:
    outcome: RegistrationOutcome
    status: Optional[int] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class DistributionResult:
    success: bool
    status: Optional[int] = None
    message: Optional[str] = None
    configuration_defect: bool = False


class Directory(Protocol):
    """Operations the core needs from the remote directory.

    Implementations may report registration outcomes either through
    :class:`RegistrationResult` or by raising
    :class:`~e2ee.errors.DirectoryConflict` /
    :class:`~e2ee.errors.DirectoryUnauthorized`.
    """

    async def register_public_identity(self, public_key: str) -> RegistrationResult: ...

    async def get_public_identity(self, user_id: str) -> Optional[PublicIdentity]: ...

    async def distribute_session_key_envelopes(
        self, channel_id: str, envelopes: Sequence[SessionKeyEnvelope]
    ) -> DistributionResult: ...

    async def fetch_session_key_envelope(
        self, channel_id: str
    ) -> Optional[SessionKeyEnvelope]: ...

    async def list_members(self, channel_id: str) -> List[str]: ...

    async def get_channel_state(self, channel_id: str) -> Optional[ChannelE2EEState]: ...

    async def set_channel_state(
        self, channel_id: str, enabled: bool, enabled_by: Optional[str]
    ) -> bool: ...


def is_missing_relation_error(message: Optional[str]) -> bool:
    """Return ``True`` when ``message`` describes a server schema defect."""
    return bool(message) and bool(_MISSING_RELATION_RE.search(message))


@dataclass(frozen=True)
class ApiResponse:
    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def message(self) -> Optional[str]:
        if isinstance(self.body, dict):
            value = first_present(self.body, ("message", "error", "data.message"))
            return None if value is None else str(value)
        return None


class HttpDirectory:
    """:class:`Directory` backed by the chat API over HTTPS.

    Parameters
    ----------
    base_url:
        Root of the API, e.g. ``https://chat.example.com/chatappAPI``.
    token_provider:
        Callable returning the current bearer token or ``None`` while the
        user is not authenticated yet.
    client:
        Optional pre-built :class:`httpx.AsyncClient`; tests pass one with a
        :class:`httpx.MockTransport`.
    timeout:
        Per-request timeout in seconds for the client created here.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], Optional[str]],
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpDirectory":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, json: Any = None) -> ApiResponse:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method, url, json=json, headers=self._headers()
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            return ApiResponse(status=0, body={"message": str(exc)})
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        return ApiResponse(status=response.status_code, body=body)

    async def register_public_identity(self, public_key: str) -> RegistrationResult:
        if not self._token_provider():
            return RegistrationResult(RegistrationOutcome.UNAUTHORIZED)
        resp = await self._request(
            "POST", "/e2ee/keys/register", json={"public_key": public_key}
        )
        if resp.ok:
            return RegistrationResult(RegistrationOutcome.SUCCESS, resp.status)
        if resp.status == 409:
            return RegistrationResult(RegistrationOutcome.CONFLICT, resp.status, resp.message)
        if resp.status == 401:
            return RegistrationResult(
                RegistrationOutcome.UNAUTHORIZED, resp.status, resp.message
            )
        return RegistrationResult(RegistrationOutcome.OTHER, resp.status, resp.message)

    async def get_public_identity(self, user_id: str) -> Optional[PublicIdentity]:
        resp = await self._request("GET", f"/e2ee/keys/user/{user_id}")
        if not resp.ok:
            return None
        try:
            identity = PublicIdentitySchema().load(resp.body)
        except ValidationError:
            logger.info("No usable public identity for user %s", user_id)
            return None
        if identity.user_id is None:
            identity = PublicIdentity(user_id=str(user_id), public_key=identity.public_key)
        return identity

    async def distribute_session_key_envelopes(
        self, channel_id: str, envelopes: Sequence[SessionKeyEnvelope]
    ) -> DistributionResult:
        payload = {
            "channel_id": wire_id(str(channel_id)),
            "encrypted_keys": [env.to_wire() for env in envelopes],
        }
        resp = await self._request("POST", "/e2ee/session-keys/distribute", json=payload)
        if resp.ok:
            return DistributionResult(True, resp.status)
        return DistributionResult(
            False,
            resp.status,
            resp.message,
            configuration_defect=resp.status >= 500
            and is_missing_relation_error(resp.message),
        )

    async def fetch_session_key_envelope(
        self, channel_id: str
    ) -> Optional[SessionKeyEnvelope]:
        resp = await self._request("GET", f"/e2ee/session-keys/{channel_id}")
        if not resp.ok:
            return None
        try:
            return SessionKeyEnvelopeSchema().load(resp.body)
        except ValidationError:
            logger.warning("Session key response for channel %s is malformed", channel_id)
            return None

    async def list_members(self, channel_id: str) -> List[str]:
        resp = await self._request("GET", f"/channel/{channel_id}/user")
        if not resp.ok:
            return []
        return load_member_ids(resp.body)

    async def get_channel_state(self, channel_id: str) -> Optional[ChannelE2EEState]:
        resp = await self._request("GET", f"/channel/{channel_id}")
        if not resp.ok:
            return None
        try:
            return ChannelStateSchema().load(resp.body)
        except ValidationError:
            logger.warning("Channel %s returned an unreadable e2ee state", channel_id)
            return None

    async def set_channel_state(
        self, channel_id: str, enabled: bool, enabled_by: Optional[str]
    ) -> bool:
        payload = {
            "e2ee_enabled": enabled,
            "e2ee_enabled_by": wire_id(enabled_by) if enabled and enabled_by else None,
        }
        resp = await self._request("PUT", f"/channel/{channel_id}/e2ee", json=payload)
        if not resp.ok:
            logger.warning(
                "Saving e2ee state for channel %s failed with status %s",
                channel_id,
                resp.status,
            )
        return resp.ok
