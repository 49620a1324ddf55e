"""
Session Registry

Process-wide, in-memory map from session id to Session state. Every
operation is synchronous and never awaits, so on the event loop no caller
can observe a half-updated Session.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional

import structlog

from mp3maker.errors import NotFound, SessionLimitReached
from mp3maker.schemas import ProgressEvent

if TYPE_CHECKING:
    from mp3maker.services.broadcaster import SubscriberChannel
    from mp3maker.services.process_supervisor import ProcessHandle

logger = structlog.get_logger()


class SessionState(str, Enum):
    """Lifecycle states, in transition order."""
    CREATED = "created"
    FETCHING_METADATA = "fetching_metadata"
    AWAITING_SUBSCRIBER = "awaiting_subscriber"
    CONVERTING = "converting"
    COMPLETE = "complete"
    FAILED = "failed"


_STATE_ORDER = {state: index for index, state in enumerate(SessionState)}
TERMINAL_STATES = (SessionState.COMPLETE, SessionState.FAILED)


class InvalidStateTransition(ValueError):
    """Raised when a Session would move backwards or leave a terminal state."""


@dataclass
class Session:
    """One URL-to-MP3 conversion request and its ephemeral state."""

    id: str
    url: str
    platform: str
    state: SessionState = SessionState.CREATED
    channel: Optional["SubscriberChannel"] = None
    process: Optional["ProcessHandle"] = None
    temp_base: Optional[Path] = None
    result_file: Optional[Path] = None
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None
    last_event: Optional[ProgressEvent] = None
    last_percent: float = 0.0
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    subscriber_ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: SessionState) -> None:
        """Move to `state`; transitions are monotonic and terminal states are final."""
        if self.is_terminal or _STATE_ORDER[state] < _STATE_ORDER[self.state]:
            raise InvalidStateTransition(
                f"Session {self.id}: cannot move from {self.state.value} to {state.value}"
            )
        self.state = state
        if self.is_terminal:
            self.finished_at = time.monotonic()

    def take_result(self) -> Optional[Path]:
        """
        Detach and return the artifact path.

        Whoever takes the path owns deleting it; later callers get None.
        """
        result, self.result_file = self.result_file, None
        return result


class SessionRegistry:
    """
    Owns every live Session for the lifetime of the application.

    Example:
        >>> registry = SessionRegistry(max_sessions=10)
        >>> session = registry.create("https://youtu.be/x", "youtube")
        >>> registry.get(session.id) is session
        True
    """

    def __init__(self, max_sessions: int = 50):
        self.max_sessions = max_sessions
        self._sessions: Dict[str, Session] = {}

    def create(self, url: str, platform: str) -> Session:
        if self.max_sessions and len(self._sessions) >= self.max_sessions:
            logger.warning("session_limit_reached", limit=self.max_sessions)
            raise SessionLimitReached(self.max_sessions)

        session = Session(id=uuid.uuid4().hex, url=url, platform=platform)
        self._sessions[session.id] = session
        logger.info("session_created", session_id=session.id, platform=platform, active_sessions=len(self._sessions))
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        """
        Drop a session from the registry.

        A session that still has a subprocess attached is never removed.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.process is not None:
            raise RuntimeError(f"Session {session_id} still has a running subprocess")

        del self._sessions[session_id]
        logger.info("session_removed", session_id=session_id, state=session.state.value,
                    active_sessions=len(self._sessions))
        return session

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def expired(self, ttl: float, now: Optional[float] = None) -> List[Session]:
        """Sessions older than `ttl` that have no channel and no subprocess."""
        now = time.monotonic() if now is None else now
        return [
            session for session in self._sessions.values()
            if session.channel is None
            and session.process is None
            and now - (session.finished_at or session.created_at) > ttl
        ]

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
