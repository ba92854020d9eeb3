"""Normalization of payloads exchanged with the directory and transport.

Clients and server versions disagree on field names (``iv`` vs ``nonce``,
``authTag`` vs ``auth_tag``) and on nesting (``{"data": {"data": {...}}}``).
All of that tolerance lives here, in marshmallow schemas that resolve each
logical field from a fixed priority list of aliases before validation. Code
outside this module only ever sees the canonical dataclasses.

Alias paths may be dotted (``"user.id"``) to reach into nested objects.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_load, pre_load

from .channel_state import ChannelE2EEState, decode_enabled_flag
from .errors import MalformedEnvelope

_MISSING = object()


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def first_present(
    data: Mapping[str, Any], aliases: Tuple[str, ...], allow_empty: bool = False
) -> Any:
    """Return the value of the first alias that is present and not empty.

    With ``allow_empty`` an empty string is returned when no alias carries a
    non-empty value but at least one is present.
    """

    empty_seen = False
    for alias in aliases:
        value = _lookup(data, alias)
        if value is _MISSING or value is None:
            continue
        if value == "":
            empty_seen = True
            continue
        return value
    return "" if allow_empty and empty_seen else None


def _unwrap(data: Any, aliases: Dict[str, Tuple[str, ...]]) -> Any:
    """Descend through ``data`` envelopes until a known field appears."""

    while isinstance(data, Mapping):
        if any(first_present(data, names) is not None for names in aliases.values()):
            return data
        inner = data.get("data")
        if not isinstance(inner, Mapping):
            return data
        data = inner
    return data


class AliasSchema(Schema):
    """Base schema resolving ``ALIASES`` before field validation."""

    ALIASES: Dict[str, Tuple[str, ...]] = {}
    # Fields where "" is a real value rather than a missing alias.
    ALLOW_EMPTY: Tuple[str, ...] = ()

    class Meta:
        unknown = EXCLUDE

    @pre_load
    def resolve_aliases(self, data, **kwargs):
        if not isinstance(data, Mapping):
            raise ValidationError("payload must be an object")
        data = _unwrap(data, self.ALIASES)
        resolved = {}
        for name, aliases in self.ALIASES.items():
            value = first_present(data, aliases, name in self.ALLOW_EMPTY)
            if value is not None:
                resolved[name] = value
        return resolved


def _b64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{name} is not valid base64", name) from exc


def _b64_text(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


# --- Encrypted messages ----------------------------------------------------


@dataclass(frozen=True)
class EncryptedMessage:
    """Message body encrypted under a channel session key."""

    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes

    def to_wire(self) -> Dict[str, str]:
        """Return the base64 fields in the format the message API expects."""
        return {
            "encrypted_content": _b64_text(self.ciphertext),
            "iv": _b64_text(self.nonce),
            "auth_tag": _b64_text(self.auth_tag),
        }


class EncryptedMessageSchema(AliasSchema):
    ALIASES = {
        "ciphertext": ("ciphertext", "encryptedContent", "encrypted_content"),
        "nonce": ("nonce", "iv", "content_iv"),
        "auth_tag": ("authTag", "auth_tag", "content_auth_tag", "tag"),
    }
    ALLOW_EMPTY = ("ciphertext",)

    ciphertext = fields.Str(required=True)
    nonce = fields.Str(required=True)
    auth_tag = fields.Str(required=True)

    @post_load
    def make_message(self, data, **kwargs):
        return EncryptedMessage(
            ciphertext=_b64(data["ciphertext"], "ciphertext"),
            nonce=_b64(data["nonce"], "nonce"),
            auth_tag=_b64(data["auth_tag"], "auth_tag"),
        )


def load_encrypted_message(payload: Any) -> EncryptedMessage:
    """Parse an inbound message envelope or raise :class:`MalformedEnvelope`."""

    if isinstance(payload, EncryptedMessage):
        return payload
    try:
        return EncryptedMessageSchema().load(payload)
    except ValidationError as exc:
        raise MalformedEnvelope(f"encrypted message rejected: {exc.messages}") from exc


# --- Directory payloads ----------------------------------------------------


@dataclass(frozen=True)
class PublicIdentity:
    user_id: Optional[str]
    public_key: str


class PublicIdentitySchema(AliasSchema):
    ALIASES = {
        "user_id": ("user_id", "userId"),
        "public_key": ("public_key", "publicKey", "identity_public_key"),
    }

    user_id = fields.Raw(load_default=None)
    public_key = fields.Str(required=True)

    @post_load
    def make_identity(self, data, **kwargs):
        user_id = data.get("user_id")
        return PublicIdentity(
            user_id=None if user_id is None else str(user_id),
            public_key=data["public_key"],
        )


@dataclass(frozen=True)
class SessionKeyEnvelope:
    """A session key wrapped for one recipient."""

    recipient_user_id: str
    wrapped_session_key: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "user_id": wire_id(self.recipient_user_id),
            "encrypted_session_key": self.wrapped_session_key,
        }


class SessionKeyEnvelopeSchema(AliasSchema):
    ALIASES = {
        "wrapped_session_key": (
            "encrypted_session_key",
            "encryptedSessionKey",
            "wrapped_session_key",
        ),
        "recipient_user_id": ("user_id", "userId", "recipient_user_id"),
    }

    wrapped_session_key = fields.Str(required=True)
    recipient_user_id = fields.Raw(load_default=None)

    @post_load
    def make_envelope(self, data, **kwargs):
        recipient = data.get("recipient_user_id")
        return SessionKeyEnvelope(
            recipient_user_id="" if recipient is None else str(recipient),
            wrapped_session_key=data["wrapped_session_key"],
        )


class ChannelStateSchema(AliasSchema):
    ALIASES = {
        "enabled": ("e2ee_enabled", "enabled", "e2eeEnabled"),
        "enabled_by": ("e2ee_enabled_by", "enabled_by", "enabledBy"),
        "timestamp": ("timestamp",),
    }

    enabled = fields.Raw(load_default=False)
    enabled_by = fields.Raw(load_default=None)
    timestamp = fields.Float(load_default=None)

    @post_load
    def make_state(self, data, **kwargs):
        try:
            enabled = decode_enabled_flag(data.get("enabled"))
        except ValueError as exc:
            raise ValidationError(str(exc), "enabled") from exc
        enabled_by = data.get("enabled_by")
        extra = {}
        if data.get("timestamp") is not None:
            extra["timestamp"] = data["timestamp"]
        return ChannelE2EEState(
            enabled=enabled,
            enabled_by=str(enabled_by) if enabled and enabled_by is not None else None,
            **extra,
        )


MEMBER_ID_ALIASES = ("user_id", "user.id", "id")


def load_member_ids(payload: Any) -> List[str]:
    """Extract member ids from a membership listing.

    Entries without a recognisable id are skipped.
    """

    while isinstance(payload, Mapping):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    ids = []
    for member in payload:
        if isinstance(member, Mapping):
            value = first_present(member, MEMBER_ID_ALIASES)
        else:
            value = member
        if value is not None:
            ids.append(str(value))
    return ids


def wire_id(user_id: str) -> Any:
    """Send numeric identifiers as integers, everything else verbatim."""
    return int(user_id) if user_id.isdigit() else user_id
