"""Tests for the event channel and consumer loop."""

import asyncio

import pytest

from pulseprint.channel import (
    ChannelClosedError,
    EventChannel,
    EventProcessor,
    Interrupted,
    guarded,
)
from pulseprint.models import Connected, Disconnected, DeviceMessage, Message


@pytest.mark.asyncio
async def test_fifo_order() -> None:
    """Events come out in the order they went in."""
    channel = EventChannel(capacity=10)
    events = [Connected(), Message(DeviceMessage(sequence_id="1")), Disconnected("lost")]
    for event in events:
        await channel.send(event)
    channel.close()

    received = [event async for event in channel]
    assert received == events


@pytest.mark.asyncio
async def test_close_drains_buffer_then_ends() -> None:
    """close() still delivers buffered events before end-of-stream."""
    channel = EventChannel(capacity=2)
    await channel.send(Connected())
    channel.close()

    assert await channel.recv() == Connected()
    with pytest.raises(ChannelClosedError):
        await channel.recv()


@pytest.mark.asyncio
async def test_close_wakes_waiting_receiver() -> None:
    """A receiver blocked on an empty channel sees end-of-stream on close()."""
    channel = EventChannel(capacity=1)
    receiver = asyncio.create_task(channel.recv())
    await asyncio.sleep(0)
    channel.close()
    with pytest.raises(ChannelClosedError):
        await asyncio.wait_for(receiver, timeout=1.0)


@pytest.mark.asyncio
async def test_send_after_receiver_gone() -> None:
    """Sending to a channel with no receiver raises ChannelClosedError."""
    channel = EventChannel(capacity=1)
    channel.close_receiver()
    with pytest.raises(ChannelClosedError):
        await channel.send(Connected())


@pytest.mark.asyncio
async def test_blocked_sender_released_when_receiver_gone() -> None:
    """A sender suspended on a full channel fails once the receiver leaves."""
    channel = EventChannel(capacity=1)
    await channel.send(Connected())
    sender = asyncio.create_task(channel.send(Disconnected("x")))
    await asyncio.sleep(0.01)
    assert not sender.done()

    channel.close_receiver()
    with pytest.raises(ChannelClosedError):
        await asyncio.wait_for(sender, timeout=1.0)


@pytest.mark.asyncio
async def test_backpressure_with_slow_consumer() -> None:
    """With capacity 1 the second send suspends until the consumer takes one."""
    channel = EventChannel(capacity=1)
    timeline: list[str] = []

    async def producer() -> None:
        await channel.send(Connected())
        timeline.append("sent-1")
        await channel.send(Disconnected("second"))
        timeline.append("sent-2")
        channel.close()

    async def slow_consumer() -> list:
        received = []
        await asyncio.sleep(0.05)
        async for event in channel:
            timeline.append(f"recv-{len(received) + 1}")
            received.append(event)
            await asyncio.sleep(0.05)
        return received

    producer_task = asyncio.create_task(producer())
    await asyncio.sleep(0.02)
    # first event fills the only slot; the second send is parked
    assert timeline == ["sent-1"]
    assert not producer_task.done()
    assert channel.qsize() == 1

    received = await slow_consumer()
    await producer_task

    assert received == [Connected(), Disconnected("second")]
    assert timeline.index("sent-2") > timeline.index("recv-1")


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventChannel(capacity=0)


@pytest.mark.asyncio
async def test_guarded_interrupts_on_event() -> None:
    """guarded() cancels the operation when the event fires first."""
    stop = asyncio.Event()
    op = asyncio.create_task(asyncio.sleep(10))
    asyncio.get_running_loop().call_later(0.01, stop.set)
    with pytest.raises(Interrupted):
        await guarded(op, stop)
    assert op.cancelled()


@pytest.mark.asyncio
async def test_guarded_returns_result() -> None:
    async def answer() -> int:
        return 42

    assert await guarded(answer(), asyncio.Event()) == 42


class TestEventProcessor:
    """Tests for :class:`EventProcessor`."""

    @pytest.mark.asyncio
    async def test_processes_in_order(self) -> None:
        channel = EventChannel(capacity=10)
        await channel.send(Connected())
        await channel.send(Disconnected("Test"))
        channel.close()

        seen: list[str] = []
        processor = EventProcessor(channel)
        await processor.run(lambda event: seen.append(type(event).__name__))

        assert seen == ["Connected", "Disconnected"]
        assert processor.processed == 2

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_loop(self) -> None:
        """A failing handler is logged per event; later events still arrive."""
        channel = EventChannel(capacity=10)
        await channel.send(Connected())
        await channel.send(Disconnected("after"))
        channel.close()

        calls: list[object] = []

        def handler(event: object) -> None:
            calls.append(event)
            if isinstance(event, Connected):
                raise RuntimeError("Test error")

        processor = EventProcessor(channel)
        await processor.run(handler)

        assert len(calls) == 2
        assert processor.failed == 1

    @pytest.mark.asyncio
    async def test_async_handler(self) -> None:
        channel = EventChannel(capacity=1)
        await channel.send(Connected())
        channel.close()

        seen: list[object] = []

        async def handler(event: object) -> None:
            await asyncio.sleep(0)
            seen.append(event)

        await EventProcessor(channel).run(handler)
        assert seen == [Connected()]

    @pytest.mark.asyncio
    async def test_closes_receiver_on_exit(self) -> None:
        """After the processor stops, the producer gets ChannelClosedError."""
        channel = EventChannel(capacity=1)
        consumer = asyncio.create_task(EventProcessor(channel).run(lambda event: None))
        await asyncio.sleep(0.01)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        with pytest.raises(ChannelClosedError):
            await channel.send(Connected())
