"""
Progress Broadcaster

Delivers progress events to the single subscriber of a session. Each
session has one channel slot; a new subscriber replaces the old one, and a
session without a subscriber keeps only its most recent event.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

import structlog

from mp3maker.schemas import ProgressEvent
from mp3maker.services.session_registry import SessionRegistry

logger = structlog.get_logger()

PREPARING_EVENT = ProgressEvent(status="fetching", percent=0, message="Preparing...")


def format_sse(payload: Dict[str, Any]) -> str:
    """Render one Server-Sent Events frame."""
    return f"data: {json.dumps(payload)}\n\n"


class ChannelClosed(Exception):
    """Raised by SubscriberChannel.receive() once the channel is closed and drained."""


class SubscriberChannel:
    """
    Mailbox between the publisher and one streaming HTTP response.

    Iterating the channel yields items until it is closed; items already
    queued when close() is called are still delivered.
    """

    _CLOSED = object()

    def __init__(self, name: str = ""):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: Any) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def receive(self, timeout: Optional[float] = None) -> Any:
        """
        Wait for the next item.

        Raises:
            ChannelClosed: Once the channel is closed and every queued item was delivered
            asyncio.TimeoutError: If nothing arrived within `timeout` seconds
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is self._CLOSED:
            # keep the marker so every later receive() also sees the close
            self._queue.put_nowait(self._CLOSED)
            raise ChannelClosed(self.name)
        return item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosed:
                return


class ProgressBroadcaster:
    """
    Publishes ProgressEvents to session subscribers.

    Percent is clamped so that the sequence a subscriber sees never goes
    down, whatever order the parser produced values in.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    def subscribe(self, session_id: str) -> SubscriberChannel:
        """
        Attach a new channel to the session, replacing any existing one.

        The session's last event (or a "Preparing..." event when nothing has
        been published yet) is replayed first.

        Raises:
            NotFound: If the session does not exist
        """
        session = self.registry.require(session_id)

        channel = SubscriberChannel(name=session_id)
        previous, session.channel = session.channel, channel
        if previous is not None:
            previous.close()
            logger.info("sse_subscriber_replaced", session_id=session_id)

        if session.last_event is None:
            session.last_event = PREPARING_EVENT
        channel.send(session.last_event)
        if session.last_event.is_terminal:
            channel.close()

        session.subscriber_ready.set()
        logger.info("sse_connected", session_id=session_id, state=session.state.value)
        return channel

    def unsubscribe(self, session_id: str, channel: SubscriberChannel) -> bool:
        """
        Detach `channel` if it is still the session's current channel.

        Returns:
            True if the channel was current (the subscriber really left)
        """
        channel.close()
        session = self.registry.get(session_id)
        if session is None or session.channel is not channel:
            return False

        session.channel = None
        session.subscriber_ready.clear()
        return True

    def publish(self, session_id: str, event: ProgressEvent) -> Optional[ProgressEvent]:
        """
        Deliver an event to the session's subscriber, or keep it as last_event.

        Returns:
            The event as delivered (after clamping), or None for unknown sessions
        """
        session = self.registry.get(session_id)
        if session is None:
            logger.debug("publish_to_unknown_session", session_id=session_id, status=event.status)
            return None

        if event.percent < session.last_percent:
            event = event.model_copy(update={"percent": session.last_percent})
        session.last_percent = event.percent
        session.last_event = event

        channel = session.channel
        if channel is not None:
            channel.send(event)
            if event.is_terminal:
                channel.close()
        return event
