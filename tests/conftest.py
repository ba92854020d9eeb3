"""Shared fixtures and helpers for E2EE tests.

The directory service is replaced by :class:`FakeServer`, an in-memory model
of the REST backend. Each user talks to it through a :class:`FakeDirectory`
bound to that user, mirroring how the HTTP client is bound to a bearer token.
Identities are 2048-bit so key generation stays fast.
"""

import time
from collections import Counter

import pytest

from e2ee.asymmetric import generate_identity_keypair
from e2ee.channel_state import ChannelE2EEState
from e2ee.config import Settings
from e2ee.directory import DistributionResult, RegistrationOutcome, RegistrationResult
from e2ee.identity import IdentityKeyManager
from e2ee.keystore import MemoryKeyStore
from e2ee.orchestrator import E2EEOrchestrator
from e2ee.wire import PublicIdentity, SessionKeyEnvelope


class FakeServer:
    """Backend state shared by every :class:`FakeDirectory`."""

    def __init__(self):
        self.identities = {}
        self.envelopes = {}
        self.members = {}
        self.states = {}
        self.calls = Counter()
        self.distribution_failure = None
        self.registration_override = None
        self.fetch_gate = None

    def add_identity(self, user_id, public_pem):
        self.identities[str(user_id)] = public_pem


class FakeDirectory:
    """:class:`~e2ee.directory.Directory` for one authenticated user."""

    def __init__(self, server, user_id):
        self.server = server
        self.user_id = str(user_id)

    async def register_public_identity(self, public_key):
        self.server.calls["register"] += 1
        if self.server.registration_override is not None:
            return self.server.registration_override
        if self.user_id in self.server.identities:
            return RegistrationResult(RegistrationOutcome.CONFLICT, 409, "already registered")
        self.server.identities[self.user_id] = public_key
        return RegistrationResult(RegistrationOutcome.SUCCESS, 201)

    async def get_public_identity(self, user_id):
        self.server.calls["get_identity"] += 1
        pem = self.server.identities.get(str(user_id))
        return PublicIdentity(str(user_id), pem) if pem else None

    async def distribute_session_key_envelopes(self, channel_id, envelopes):
        self.server.calls["distribute"] += 1
        if self.server.distribution_failure is not None:
            return self.server.distribution_failure
        for envelope in envelopes:
            self.server.envelopes[(str(channel_id), envelope.recipient_user_id)] = (
                envelope.wrapped_session_key
            )
        return DistributionResult(True, 201)

    async def fetch_session_key_envelope(self, channel_id):
        self.server.calls["fetch_envelope"] += 1
        if self.server.fetch_gate is not None:
            await self.server.fetch_gate.wait()
        wrapped = self.server.envelopes.get((str(channel_id), self.user_id))
        return SessionKeyEnvelope(self.user_id, wrapped) if wrapped else None

    async def list_members(self, channel_id):
        self.server.calls["list_members"] += 1
        return list(self.server.members.get(str(channel_id), []))

    async def get_channel_state(self, channel_id):
        self.server.calls["get_state"] += 1
        return self.server.states.get(str(channel_id))

    async def set_channel_state(self, channel_id, enabled, enabled_by):
        self.server.calls["set_state"] += 1
        self.server.states[str(channel_id)] = ChannelE2EEState(
            enabled=enabled, enabled_by=enabled_by, timestamp=time.time()
        )
        return True


@pytest.fixture
def settings():
    """Settings with a small modulus for speed."""
    return Settings(rsa_key_size=2048)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def store():
    return MemoryKeyStore()


@pytest.fixture
def manager(store, settings):
    """Identity manager over an empty in-memory store."""
    return IdentityKeyManager(store, settings)


@pytest.fixture
def make_user(server, settings):
    """Factory returning an orchestrator for ``user_id`` on the shared server."""

    def _make(user_id, store=None, **kwargs):
        return E2EEOrchestrator(
            str(user_id),
            FakeDirectory(server, user_id),
            store or MemoryKeyStore(),
            settings,
            **kwargs,
        )

    return _make


@pytest.fixture
def foreign_identity():
    """A key pair belonging to a user outside the system under test."""
    return generate_identity_keypair(2048)

