"""Session key distribution tests."""

import pytest

from e2ee import asymmetric
from e2ee.directory import DistributionResult
from e2ee.distribution import SessionKeyDistributor
from e2ee.errors import DistributionRejected, NoEligibleRecipients, WrapFailure
from e2ee.wire import PublicIdentity

from .conftest import FakeDirectory


@pytest.fixture(scope="module")
def members():
    """Key pairs for three channel members."""
    return {uid: asymmetric.generate_identity_keypair(2048) for uid in ("1", "2", "3")}


@pytest.fixture
def directory(server, members):
    for uid, pair in members.items():
        server.add_identity(uid, pair.public_pem)
    return FakeDirectory(server, "1")


@pytest.mark.asyncio
async def test_every_member_gets_an_envelope(directory, server, members):
    key = await SessionKeyDistributor().distribute(directory, "7", ["1", "2", "3"])
    assert len(key) == 32
    assert server.calls["distribute"] == 1
    for uid, pair in members.items():
        wrapped = server.envelopes[("7", uid)]
        assert asymmetric.unwrap_session_key(wrapped, pair.private_key) == key


@pytest.mark.asyncio
async def test_members_without_identity_are_skipped(directory, server):
    del server.identities["2"]
    await SessionKeyDistributor().distribute(directory, "7", ["1", "2", "3"])
    assert sorted(uid for _, uid in server.envelopes) == ["1", "3"]


@pytest.mark.asyncio
async def test_duplicate_member_ids_collapse(directory, server):
    await SessionKeyDistributor().distribute(directory, "7", ["1", "1", 1, "3"])
    assert server.calls["get_identity"] == 2


@pytest.mark.asyncio
async def test_no_eligible_recipients(server):
    directory = FakeDirectory(server, "1")
    with pytest.raises(NoEligibleRecipients):
        await SessionKeyDistributor().distribute(directory, "7", ["8", "9"])
    assert server.calls["distribute"] == 0


@pytest.mark.asyncio
async def test_unusable_public_keys_raise_wrap_failure(server):
    server.add_identity("1", "not a key")
    with pytest.raises(WrapFailure):
        await SessionKeyDistributor().distribute(FakeDirectory(server, "1"), "7", ["1"])
    assert server.calls["distribute"] == 0


@pytest.mark.asyncio
async def test_one_bad_key_does_not_block_others(directory, server):
    server.add_identity("2", "garbage")
    await SessionKeyDistributor().distribute(directory, "7", ["1", "2", "3"])
    assert ("7", "2") not in server.envelopes
    assert ("7", "3") in server.envelopes


@pytest.mark.asyncio
async def test_identity_lookup_errors_are_tolerated(directory, server):
    class FlakyDirectory(FakeDirectory):
        async def get_public_identity(self, user_id):
            if user_id == "3":
                raise ConnectionError("reset by peer")
            return await super().get_public_identity(user_id)

    flaky = FlakyDirectory(server, "1")
    await SessionKeyDistributor().distribute(flaky, "7", ["1", "3"])
    assert list(server.envelopes) == [("7", "1")]


@pytest.mark.asyncio
async def test_rejection_passes_server_message(directory, server):
    server.distribution_failure = DistributionResult(False, 403, "not a channel member")
    with pytest.raises(DistributionRejected) as excinfo:
        await SessionKeyDistributor().distribute(directory, "7", ["1"])
    assert excinfo.value.message == "not a channel member"
    assert excinfo.value.status == 403
    assert not excinfo.value.configuration_defect


@pytest.mark.asyncio
async def test_configuration_defect_is_reported(directory, server, monkeypatch):
    reported = []
    monkeypatch.setattr(
        "e2ee.distribution.sentry_sdk.capture_message",
        lambda message, level=None: reported.append(level),
    )
    server.distribution_failure = DistributionResult(
        False,
        500,
        "Base table or view not found: table 'chat.channel_user' doesn't exist",
        configuration_defect=True,
    )
    with pytest.raises(DistributionRejected) as excinfo:
        await SessionKeyDistributor().distribute(directory, "7", ["1"])
    assert excinfo.value.configuration_defect
    assert reported == ["error"]


def test_wrap_for_members_skips_bad_keys(members):
    identities = [
        ("1", PublicIdentity("1", members["1"].public_pem)),
        ("2", PublicIdentity("2", "junk")),
    ]
    envelopes = SessionKeyDistributor().wrap_for_members(b"k" * 32, identities)
    assert [env.recipient_user_id for env in envelopes] == ["1"]


@pytest.mark.asyncio
async def test_submission_error_becomes_rejection(directory, server):
    class DroppingDirectory(FakeDirectory):
        async def distribute_session_key_envelopes(self, channel_id, envelopes):
            raise ConnectionError("connection reset")

    with pytest.raises(DistributionRejected) as excinfo:
        await SessionKeyDistributor().distribute(DroppingDirectory(server, "1"), "7", ["1"])
    assert "connection reset" in excinfo.value.message
    assert isinstance(excinfo.value.__cause__, ConnectionError)
