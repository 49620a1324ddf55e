"""
Tests for progress delivery to session subscribers.
"""

import asyncio

import pytest

from mp3maker.errors import NotFound
from mp3maker.schemas import ProgressEvent
from mp3maker.services.broadcaster import ChannelClosed, SubscriberChannel, format_sse

URL = "https://soundcloud.com/artist/track"


def drain(channel):
    """Items currently queued on a channel, without waiting."""
    items = []
    while not channel._queue.empty():
        item = channel._queue.get_nowait()
        if item is SubscriberChannel._CLOSED:
            break
        items.append(item)
    return items


class TestSubscriberChannel:

    @pytest.mark.asyncio
    async def test_queued_items_delivered_before_close(self):
        channel = SubscriberChannel()
        channel.send(1)
        channel.send(2)
        channel.close()

        assert [item async for item in channel] == [1, 2]
        with pytest.raises(ChannelClosed):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self):
        channel = SubscriberChannel()
        channel.close()

        assert channel.send(1) is False
        assert channel.closed

    @pytest.mark.asyncio
    async def test_receive_timeout(self):
        channel = SubscriberChannel()
        with pytest.raises(asyncio.TimeoutError):
            await channel.receive(timeout=0.01)


class TestProgressBroadcaster:

    @pytest.mark.asyncio
    async def test_subscribe_replays_preparing_event(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")

        channel = broadcaster.subscribe(session.id)

        first = await channel.receive(timeout=1)
        assert first.status == "fetching"
        assert first.percent == 0
        assert first.message == "Preparing..."
        assert session.subscriber_ready.is_set()

    def test_subscribe_unknown_session(self, broadcaster):
        with pytest.raises(NotFound):
            broadcaster.subscribe("missing")

    @pytest.mark.asyncio
    async def test_subscribe_replays_last_event(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        broadcaster.publish(session.id, ProgressEvent(status="downloading", percent=40, message="Downloading..."))

        channel = broadcaster.subscribe(session.id)

        assert (await channel.receive(timeout=1)).percent == 40

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_terminal_event_and_close(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        broadcaster.publish(session.id, ProgressEvent(status="complete", percent=100, message="Complete!"))

        channel = broadcaster.subscribe(session.id)

        events = [event async for event in channel]
        assert [event.status for event in events] == ["complete"]

    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        channel = broadcaster.subscribe(session.id)

        for percent in (10, 45.2, 30, 60, 5):
            broadcaster.publish(session.id, ProgressEvent(status="downloading", percent=percent))

        percents = [event.percent for event in drain(channel)]
        assert percents == [0, 10, 45.2, 45.2, 60, 60]

    @pytest.mark.asyncio
    async def test_terminal_event_closes_channel(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        channel = broadcaster.subscribe(session.id)

        broadcaster.publish(session.id, ProgressEvent(status="error", percent=0, message="x", error="x"))
        broadcaster.publish(session.id, ProgressEvent(status="downloading", percent=50))

        events = [event async for event in channel]
        assert events[-1].status == "error"
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_new_subscriber_replaces_old(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        old = broadcaster.subscribe(session.id)
        new = broadcaster.subscribe(session.id)

        assert old.closed
        assert session.channel is new
        assert broadcaster.unsubscribe(session.id, old) is False
        assert session.channel is new

    def test_unsubscribe_current_channel(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        channel = broadcaster.subscribe(session.id)

        assert broadcaster.unsubscribe(session.id, channel) is True
        assert session.channel is None
        assert not session.subscriber_ready.is_set()

    def test_publish_without_subscriber_keeps_last_event(self, registry, broadcaster):
        session = registry.create(URL, "soundcloud")
        event = ProgressEvent(status="downloading", percent=12)

        broadcaster.publish(session.id, event)

        assert session.last_event == event

    def test_publish_unknown_session_is_ignored(self, broadcaster):
        assert broadcaster.publish("missing", ProgressEvent(status="fetching")) is None


def test_format_sse():
    event = ProgressEvent(status="downloading", percent=45.2, message="Downloading...", speed="1.20MiB/s")
    assert format_sse(event.to_payload()) == (
        'data: {"status": "downloading", "percent": 45.2, "message": "Downloading...", "speed": "1.20MiB/s"}\n\n'
    )
