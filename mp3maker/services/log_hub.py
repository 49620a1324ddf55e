"""
Log Hub

Keeps the most recent log records and streams new ones to any number of
admin viewers. Each new viewer first receives the retained history.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set

from mp3maker.schemas import LogRecord
from mp3maker.services.broadcaster import SubscriberChannel

# structlog level names mapped to the labels shown in the admin panel
LEVEL_LABELS = {
    "debug": "DEBUG",
    "info": "INFO",
    "warning": "WARN",
    "warn": "WARN",
    "error": "ERROR",
    "critical": "ERROR",
    "exception": "ERROR",
}

# keys rendered by structlog itself, not part of the event context
_RESERVED_KEYS = {"event", "level", "timestamp", "exc_info", "stack_info"}


class LogHub:
    """
    Bounded log history plus live fan-out to viewers.

    Example:
        >>> hub = LogHub(max_history=500)
        >>> hub.append("Server running", level="SUCCESS")
        >>> hub.history()[-1].level
        'SUCCESS'
    """

    def __init__(self, max_history: int = 500):
        self.max_history = max_history
        self._history: Deque[LogRecord] = deque(maxlen=max_history)
        self._viewers: Set[SubscriberChannel] = set()

    def append(self, message: str, level: str = "INFO", timestamp: Optional[str] = None) -> LogRecord:
        timestamp = timestamp or datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        record = LogRecord(
            timestamp=timestamp,
            level=level,
            message=message,
            full=f"[{timestamp}] [{level}] {message}",
        )
        self._history.append(record)

        for viewer in list(self._viewers):
            if not viewer.send(record):
                self._viewers.discard(viewer)
        return record

    def history(self) -> List[LogRecord]:
        return list(self._history)

    def subscribe(self) -> SubscriberChannel:
        channel = SubscriberChannel(name="admin-logs")
        for record in self._history:
            channel.send(record)
        self._viewers.add(channel)
        return channel

    def unsubscribe(self, channel: SubscriberChannel) -> None:
        channel.close()
        self._viewers.discard(channel)

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def close(self) -> None:
        for viewer in list(self._viewers):
            viewer.close()
        self._viewers.clear()

    def structlog_processor(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        structlog processor that copies every record into the hub.

        Must run after `add_log_level` and before the renderer.
        """
        level = LEVEL_LABELS.get(str(event_dict.get("level", method_name)).lower(), "INFO")
        context = " ".join(
            f"{key}={value}" for key, value in event_dict.items() if key not in _RESERVED_KEYS
        )
        message = str(event_dict.get("event", ""))
        if context:
            message = f"{message} {context}"
        self.append(message, level=level)
        return event_dict
