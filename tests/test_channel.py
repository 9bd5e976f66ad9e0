import asyncio

import pytest

from tradelab.events.channel import Broadcast, ChannelClosed, Overflowed


@pytest.mark.asyncio
async def test_every_receiver_gets_every_message_in_order():
    channel = Broadcast(10)
    first = channel.new_receiver()
    second = channel.new_receiver()
    for item in ["a", "b", "c"]:
        await channel.broadcast(item)
    assert [await first.recv() for _ in range(3)] == ["a", "b", "c"]
    assert [await second.recv() for _ in range(3)] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_new_receiver_does_not_see_earlier_messages():
    channel = Broadcast(10)
    early = channel.new_receiver()
    await channel.broadcast("old")
    late = channel.new_receiver()
    await channel.broadcast("new")
    assert await early.recv() == "old"
    assert await late.recv() == "new"


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Broadcast(0)


@pytest.mark.asyncio
async def test_sender_waits_until_receiver_makes_room():
    channel = Broadcast(1)
    receiver = channel.new_receiver()
    await channel.broadcast(1)
    pending = asyncio.ensure_future(channel.broadcast(2))
    for _ in range(5):
        await asyncio.sleep(0)
    assert not pending.done()
    assert await receiver.recv() == 1
    await asyncio.wait_for(pending, 1)
    assert await receiver.recv() == 2


@pytest.mark.asyncio
async def test_overflow_drops_oldest_and_reports_once():
    channel = Broadcast(1, overflow=True)
    receiver = channel.new_receiver()
    await channel.broadcast("x")
    await channel.broadcast("y")
    with pytest.raises(Overflowed) as info:
        await receiver.recv()
    assert info.value.missed == 1
    assert await receiver.recv() == "y"


@pytest.mark.asyncio
async def test_close_drains_then_raises():
    channel = Broadcast(5)
    receiver = channel.new_receiver()
    await channel.broadcast("last")
    await channel.close()
    assert channel.closed
    assert await receiver.recv() == "last"
    with pytest.raises(ChannelClosed):
        await receiver.recv()


@pytest.mark.asyncio
async def test_broadcast_after_close_raises():
    channel = Broadcast(5)
    channel.new_receiver()
    await channel.close()
    with pytest.raises(ChannelClosed):
        await channel.broadcast("late")


@pytest.mark.asyncio
async def test_receiver_close_closes_channel():
    channel = Broadcast(5)
    receiver = channel.new_receiver()
    await receiver.close()
    assert channel.closed
    with pytest.raises(ChannelClosed):
        await receiver.recv()


@pytest.mark.asyncio
async def test_waiting_receiver_wakes_on_close():
    channel = Broadcast(5)
    receiver = channel.new_receiver()
    waiting = asyncio.ensure_future(receiver.recv())
    await asyncio.sleep(0)
    assert not waiting.done()
    await channel.close()
    with pytest.raises(ChannelClosed):
        await asyncio.wait_for(waiting, 1)
    assert waiting.done()
    assert isinstance(waiting.exception(), ChannelClosed)
    assert channel.closed


@pytest.mark.asyncio
async def test_clone_shares_position():
    channel = Broadcast(5)
    receiver = channel.new_receiver()
    await channel.broadcast("a")
    await channel.broadcast("b")
    assert await receiver.recv() == "a"
    copy = receiver.clone()
    assert channel.receiver_count == 2
    assert await copy.recv() == "b"
    assert await receiver.recv() == "b"


@pytest.mark.asyncio
async def test_is_empty_tracks_pending_messages():
    channel = Broadcast(5)
    receiver = channel.new_receiver()
    assert channel.is_empty()
    await channel.broadcast("m")
    assert not channel.is_empty()
    assert len(receiver) == 1
    await receiver.recv()
    assert channel.is_empty()