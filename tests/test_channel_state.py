"""Channel toggle state tests."""

import pytest

from e2ee.channel_state import (
    STATE_STORAGE_KEY,
    ChannelE2EEState,
    ChannelStateBook,
    decode_enabled_flag,
)
from e2ee.keystore import MemoryKeyStore


@pytest.mark.parametrize("value", [True, 1, "1", "true", "TRUE", " yes ", "on"])
def test_true_literals(value):
    assert decode_enabled_flag(value) is True


@pytest.mark.parametrize("value", [False, 0, "0", "false", "no", "off", "", None])
def test_false_literals(value):
    assert decode_enabled_flag(value) is False


@pytest.mark.parametrize("value", [2, -1, "enabled", "t", 1.0, [], {}])
def test_unknown_literals_rejected(value):
    with pytest.raises(ValueError):
        decode_enabled_flag(value)


def test_disabled_state_has_no_owner():
    assert ChannelE2EEState(enabled=False, enabled_by="7").enabled_by is None


def test_toggle_rights():
    disabled = ChannelE2EEState()
    assert disabled.can_toggle("a").can_enable
    assert not disabled.can_toggle("a").can_disable

    owned = ChannelE2EEState(enabled=True, enabled_by="a")
    assert owned.can_toggle("a").can_disable
    rights = owned.can_toggle("b")
    assert not rights.can_disable
    assert not rights.can_enable
    assert "a" in rights.reason


def test_enabled_without_owner_may_be_disabled_by_anyone():
    assert ChannelE2EEState(enabled=True).can_toggle("z").can_disable


@pytest.mark.asyncio
async def test_book_persists_and_reloads():
    store = MemoryKeyStore()
    book = ChannelStateBook(store)
    await book.set("7", ChannelE2EEState(True, "a", timestamp=10.0))

    reloaded = ChannelStateBook(store)
    await reloaded.load()
    state = reloaded.get("7")
    assert state.enabled and state.enabled_by == "a"
    assert state.timestamp == 10.0
    assert reloaded.items() == [("7", state)]


@pytest.mark.asyncio
async def test_stale_remote_update_ignored():
    book = ChannelStateBook(MemoryKeyStore())
    await book.set("7", ChannelE2EEState(True, "a", timestamp=20.0))
    assert not await book.apply_remote("7", ChannelE2EEState(False, timestamp=10.0))
    assert book.get("7").enabled

    assert await book.apply_remote("7", ChannelE2EEState(False, timestamp=30.0))
    assert not book.get("7").enabled


@pytest.mark.asyncio
async def test_identical_remote_update_is_not_a_change():
    book = ChannelStateBook(MemoryKeyStore())
    state = ChannelE2EEState(True, "a", timestamp=5.0)
    assert await book.apply_remote("1", state)
    assert not await book.apply_remote("1", state)


@pytest.mark.asyncio
async def test_corrupt_entries_skipped():
    store = MemoryKeyStore(
        {STATE_STORAGE_KEY: '{"1": {"enabled": "weird"}, "2": {"enabled": 1, "enabled_by": "b"}}'}
    )
    book = ChannelStateBook(store)
    await book.load()
    assert not book.get("1").enabled
    assert book.get("2").enabled_by == "b"


@pytest.mark.asyncio
async def test_clear_removes_storage():
    store = MemoryKeyStore()
    book = ChannelStateBook(store)
    await book.set("1", ChannelE2EEState(True, "a"))
    await book.clear()
    assert STATE_STORAGE_KEY not in store.snapshot()
    assert not book.get("1").enabled
