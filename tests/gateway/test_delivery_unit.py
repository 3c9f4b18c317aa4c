"""Unit tests for session mailboxes and the observer hub."""

import asyncio
import json

import pytest

from src.gateway.delivery import (
    ConsumerAttachedError,
    DeliveryError,
    MailboxFullError,
    ObserverHub,
    SessionDeliveryChannel,
    SessionNotFoundError,
    format_sse_event,
)
from src.gateway.notifications.models import Notification, NotificationType


def run_async(coro):
    return asyncio.run(coro)


def _notification(subject_id="sub-1"):
    return Notification(
        type=NotificationType.SUBSCRIPTION_CREATED,
        subject_id=subject_id,
        details={"session_id": "sess-1"},
    )


class TestPush:
    def test_receipt_reports_depth(self, channel):
        first = channel.push("sess-1", "a")
        second = channel.push("sess-1", "b")

        assert first.depth == 1
        assert second.depth == 2
        assert not second.live

    def test_drain_is_fifo(self, channel):
        for text in ["a", "b", "c"]:
            channel.push("sess-1", text)

        assert channel.drain("sess-1") == ["a", "b", "c"]
        assert channel.drain("sess-1") == []

    def test_sessions_are_isolated(self, channel):
        channel.push("sess-1", "a")
        channel.push("sess-2", "b")

        assert channel.drain("sess-2") == ["b"]
        assert channel.pending("sess-1") == 1

    def test_full_mailbox_rejects_new_message(self, channel):
        for index in range(channel.mailbox_capacity):
            channel.push("sess-1", str(index))

        with pytest.raises(MailboxFullError) as exc_info:
            channel.push("sess-1", "overflow")

        assert isinstance(exc_info.value, DeliveryError)
        assert exc_info.value.session_id == "sess-1"
        assert channel.drain("sess-1") == [str(i) for i in range(channel.mailbox_capacity)]

    def test_session_limit(self, channel):
        for index in range(channel.max_sessions):
            channel.push(f"sess-{index}", "x")

        with pytest.raises(SessionNotFoundError):
            channel.push("sess-new", "x")

        channel.drain("sess-0")
        assert channel.push("sess-new", "x").depth == 1

    def test_empty_mailboxes_are_reclaimed(self, channel):
        channel.push("sess-1", "a")
        channel.drain("sess-1")

        assert channel.sessions() == []


class TestConsume:
    def test_consumer_receives_in_order(self, channel):
        async def scenario():
            consumer = channel.consume("sess-1")
            received = []

            async def reader():
                async for text in consumer:
                    received.append(text)
                    if len(received) == 3:
                        break

            task = asyncio.create_task(reader())
            await asyncio.sleep(0)
            receipts = [channel.push("sess-1", text) for text in ["a", "b", "c"]]
            await asyncio.wait_for(task, timeout=1.0)
            await consumer.aclose()
            return received, receipts

        received, receipts = run_async(scenario())

        assert received == ["a", "b", "c"]
        assert all(r.live for r in receipts)

    def test_queued_messages_are_delivered_on_attach(self, channel):
        channel.push("sess-1", "early")

        async def scenario():
            async with channel.consume("sess-1") as consumer:
                return await consumer.__anext__()

        assert run_async(scenario()) == "early"

    def test_second_consumer_is_rejected(self, channel):
        consumer = channel.consume("sess-1")

        with pytest.raises(ConsumerAttachedError):
            channel.consume("sess-1")

        run_async(consumer.aclose())
        assert not channel.has_consumer("sess-1")
        run_async(channel.consume("sess-1").aclose())

    def test_held_message_is_redelivered(self, channel):
        channel.push("sess-1", "a")
        channel.push("sess-1", "b")

        async def scenario():
            async with channel.consume("sess-1") as consumer:
                first = await consumer.__anext__()
                second = await consumer.__anext__()
            # "b" was never acknowledged
            async with channel.consume("sess-1") as consumer:
                again = await consumer.__anext__()
            return first, second, again

        assert run_async(scenario()) == ("a", "b", "b")
        assert channel.pending("sess-1") == 1

    def test_aclose_wakes_waiting_consumer(self, channel):
        async def scenario():
            consumer = channel.consume("sess-1")
            received = []

            async def reader():
                async for text in consumer:
                    received.append(text)

            task = asyncio.create_task(reader())
            await asyncio.sleep(0)
            await consumer.aclose()
            await asyncio.wait_for(task, timeout=1.0)
            return received

        assert run_async(scenario()) == []
        assert channel.sessions() == []

    def test_drain_while_holding_does_not_drop_next(self, channel):
        channel.push("sess-1", "a")

        async def scenario():
            consumer = channel.consume("sess-1")
            held = await consumer.__anext__()
            channel.drain("sess-1")
            channel.push("sess-1", "b")
            following = await consumer.__anext__()
            await consumer.aclose()
            return held, following

        assert run_async(scenario()) == ("a", "b")


class TestObserverHub:
    def test_connect_and_disconnect(self):
        hub = ObserverHub()
        observer_id = hub.connect()

        assert hub.snapshot() == [observer_id]
        assert hub.disconnect(observer_id)
        assert not hub.disconnect(observer_id)
        assert hub.snapshot() == []

    def test_emit_reaches_every_observer(self):
        async def scenario():
            hub = ObserverHub()
            first, second = hub.connect(), hub.connect()
            await hub.emit(_notification())
            frames = []
            for observer_id in (first, second):
                stream = hub.stream(observer_id)
                frames.append(await stream.__anext__())
                await stream.aclose()
            return hub, frames

        hub, frames = run_async(scenario())

        for frame in frames:
            assert frame.startswith("event: subscription_created\ndata: ")
            payload = json.loads(frame.split("data: ", 1)[1])
            assert payload["subject_id"] == "sub-1"
        assert hub.snapshot() == []

    def test_full_queue_disconnects_observer(self):
        async def scenario():
            hub = ObserverHub(queue_size=2)
            slow = hub.connect()
            await hub.emit(_notification("n1"))
            await hub.emit(_notification("n2"))
            fresh = hub.connect()
            await hub.emit(_notification("n3"))
            return hub, slow, fresh

        hub, slow, fresh = run_async(scenario())

        assert slow not in hub.snapshot()
        assert fresh in hub.snapshot()

    def test_stream_of_disconnected_observer_raises(self):
        async def scenario():
            hub = ObserverHub()
            observer_id = hub.connect()
            hub.disconnect(observer_id)
            await hub.stream(observer_id).__anext__()

        with pytest.raises(KeyError):
            run_async(scenario())

    def test_disconnect_ends_active_stream(self):
        async def scenario():
            hub = ObserverHub()
            observer_id = hub.connect()
            frames = []

            async def reader():
                async for frame in hub.stream(observer_id):
                    frames.append(frame)

            task = asyncio.create_task(reader())
            await hub.emit(_notification())
            await asyncio.sleep(0.01)
            hub.disconnect(observer_id)
            await asyncio.wait_for(task, timeout=1.0)
            return frames

        assert len(run_async(scenario())) == 1


class TestSseFormatting:
    def test_multiline_data(self):
        frame = format_sse_event("line1\nline2", event="webhook-event")

        assert frame == "event: webhook-event\ndata: line1\ndata: line2\n\n"

    def test_json_data_with_id(self):
        frame = format_sse_event({"a": 1}, id="7")

        assert frame == 'id: 7\ndata: {"a": 1}\n\n'
