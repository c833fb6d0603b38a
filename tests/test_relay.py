import asyncio

import pytest

from couchlogin.service.errors import NotFoundError
from couchlogin.service.relay import CHANNEL_LIFE_MS, CHANNEL_PREFIX, LoginRelay

from conftest import FakeClock


def _relay(clock=None, wait_seconds=0.2):
    return LoginRelay(wait_seconds=wait_seconds, clock=clock or FakeClock())


def test_open_issues_prefixed_channel_with_secret():
    clock = FakeClock()
    relay = _relay(clock)
    channel = relay.open()
    assert channel.id.startswith(CHANNEL_PREFIX)
    assert channel.secret
    assert channel.expires == clock.now + CHANNEL_LIFE_MS
    assert relay.get(channel.id) is channel
    assert len(relay) == 1


async def test_event_published_before_poll_is_delivered_once():
    relay = _relay()
    channel = relay.open()
    assert relay.publish(channel.id, {"token": "abc", "callback": "https://x"})
    event = await relay.wait(channel.id, channel.secret)
    assert event == {"token": "abc", "channelId": channel.id}
    assert len(relay) == 0
    with pytest.raises(NotFoundError):
        await relay.wait(channel.id, channel.secret)


async def test_waiting_poll_receives_later_event():
    relay = _relay(wait_seconds=2)
    channel = relay.open()
    poll = asyncio.create_task(relay.wait(channel.id, channel.secret))
    await asyncio.sleep(0)
    relay.publish(channel.id, {"error": "denied"})
    assert await poll == {"error": "denied", "channelId": channel.id}
    assert relay.get(channel.id) is None


async def test_poll_times_out_with_none_and_channel_survives():
    relay = _relay(wait_seconds=0.05)
    channel = relay.open()
    assert await relay.wait(channel.id, channel.secret) is None
    assert relay.get(channel.id) is channel
    assert channel.waiter is None


async def test_newer_poll_releases_older_one():
    relay = _relay(wait_seconds=2)
    channel = relay.open()
    first = asyncio.create_task(relay.wait(channel.id, channel.secret))
    await asyncio.sleep(0)
    second = asyncio.create_task(relay.wait(channel.id, channel.secret))
    await asyncio.sleep(0)
    assert await first is None
    relay.publish(channel.id, {"token": "t"})
    assert (await second)["token"] == "t"


async def test_wrong_secret_looks_like_missing_channel():
    relay = _relay()
    channel = relay.open()
    with pytest.raises(NotFoundError) as wrong:
        await relay.wait(channel.id, "not-the-secret")
    with pytest.raises(NotFoundError) as missing:
        await relay.wait("ec:nope", channel.secret)
    assert wrong.value.message == missing.value.message
    with pytest.raises(NotFoundError):
        await relay.wait(channel.id, None)


def test_publish_to_unknown_channel_and_empty_event():
    relay = _relay()
    assert relay.publish("ec:unknown", {"token": "t"}) is False
    channel = relay.open()
    with pytest.raises(ValueError):
        relay.publish(channel.id, {})


async def test_destroy_requires_the_secret():
    relay = _relay(wait_seconds=2)
    channel = relay.open()
    relay.destroy(channel.id, "wrong")
    assert relay.get(channel.id) is channel
    poll = asyncio.create_task(relay.wait(channel.id, channel.secret))
    await asyncio.sleep(0)
    relay.destroy(channel.id, channel.secret)
    assert await poll is None
    assert relay.get(channel.id) is None
    relay.destroy("ec:gone", "whatever")


async def test_sweep_expires_old_channels():
    clock = FakeClock()
    relay = _relay(clock)
    old = relay.open()
    clock.advance(CHANNEL_LIFE_MS - 1000)
    fresh = relay.open()
    assert relay.sweep() == 0
    clock.advance(2000)
    assert relay.sweep() == 1
    assert relay.get(old.id) is None
    assert relay.get(fresh.id) is fresh
    with pytest.raises(NotFoundError):
        await relay.wait(old.id, old.secret)
