"""
Download Orchestrator

Drives one session from request to MP3:
1. Best-effort metadata fetch (title, thumbnail)
2. Bounded wait for the progress subscriber
3. yt-dlp conversion with live progress
4. Finalization: artifact on success, classified error event on failure

Features:
- One asyncio task per session, tracked for cancellation and shutdown
- Subprocess termination and temp-file cleanup on every exit path
- Monotonic progress via the broadcaster
"""

import asyncio
import re
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Set

import structlog

from mp3maker.config import settings
from mp3maker.errors import (
    ArtifactMissing,
    ChannelTimeout,
    ConversionTimeout,
    InvalidInput,
    MetadataTimeout,
    MP3MakerError,
    SubprocessFailure,
    SubprocessSignal,
    classify_failure,
)
from mp3maker.schemas import ProgressEvent
from mp3maker.services.broadcaster import ProgressBroadcaster, SubscriberChannel
from mp3maker.services.process_supervisor import ConversionOptions, ProcessHandle, ProcessSupervisor
from mp3maker.services.progress_parser import Countdown, ProgressParser
from mp3maker.services.session_registry import Session, SessionRegistry, SessionState

logger = structlog.get_logger()

PLATFORM_PATTERNS = [
    ("youtube", re.compile(r"(?:youtube\.com|youtu\.be)", re.IGNORECASE)),
    ("soundcloud", re.compile(r"soundcloud\.com", re.IGNORECASE)),
    ("bandcamp", re.compile(r"bandcamp\.com", re.IGNORECASE)),
]

TEMP_PREFIX = "temp-"

# Early progress band for the metadata phase
METADATA_START_PERCENT = 2.0
METADATA_FOUND_PERCENT = 5.0
PREPARING_PERCENT = 8.0


def detect_platform(url: str) -> str:
    """
    Detect the hosting platform from a URL.

    Example:
        >>> detect_platform("https://youtu.be/dQw4w9WgXcQ")
        'youtube'
        >>> detect_platform("https://example.com/page")
        'unknown'
    """
    for platform, pattern in PLATFORM_PATTERNS:
        if pattern.search(url):
            return platform
    return "unknown"


def validate_url(url: Optional[str]) -> str:
    """
    Check that a URL is present and supported.

    Returns:
        The detected platform

    Raises:
        InvalidInput: For empty or unsupported URLs
    """
    if not url or not url.strip():
        raise InvalidInput("URL is required", user_message="Please provide a valid URL")

    platform = detect_platform(url)
    if platform == "unknown":
        raise InvalidInput(
            f"Unsupported URL: {url[:100]}",
            user_message="Unsupported URL. Please use YouTube, SoundCloud or Bandcamp links.",
        )
    return platform


def delete_artifacts(temp_base: Optional[Path]) -> int:
    """
    Delete every file sharing the session's temp base name.

    Covers the base itself, the MP3, partial downloads and thumbnail
    side files (.webp, .png, .jpg, .part, ...).

    Returns:
        Number of files removed
    """
    if temp_base is None or not temp_base.parent.exists():
        return 0

    removed = 0
    for path in temp_base.parent.glob(f"{temp_base.name}*"):
        try:
            path.unlink()
            removed += 1
            logger.info("orphaned_file_cleaned", file=path.name)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error("orphaned_file_cleanup_failed", file=path.name, error=str(e))
    return removed


def cleanup_orphans(temp_dir: Path) -> int:
    """Remove temp files left behind by a previous run; creates the directory if needed."""
    if not temp_dir.exists():
        temp_dir.mkdir(parents=True, exist_ok=True)
        return 0

    cleaned = 0
    for path in temp_dir.glob(f"{TEMP_PREFIX}*"):
        if not path.is_file():
            continue
        try:
            path.unlink()
            cleaned += 1
        except OSError as e:
            logger.warning("orphaned_temp_file_not_removed", file=path.name, error=str(e))
    if cleaned:
        logger.info("orphaned_temp_files_cleaned", count=cleaned, temp_dir=str(temp_dir))
    return cleaned


class DownloadOrchestrator:
    """
    Ties the supervisor, parser, registry and broadcaster together.

    Example:
        >>> orchestrator = DownloadOrchestrator(registry, broadcaster, ProcessSupervisor(), temp_dir)
        >>> session = orchestrator.start("https://www.youtube.com/watch?v=...")
        >>> channel = broadcaster.subscribe(session.id)
    """

    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: ProgressBroadcaster,
        supervisor: ProcessSupervisor,
        temp_dir: Path,
        parser_factory: Callable[[], ProgressParser] = ProgressParser,
        metadata_timeout: Optional[float] = None,
        subscriber_wait_timeout: Optional[float] = None,
        conversion_timeout: Optional[float] = None,
        audio_format: Optional[str] = None,
        audio_quality: Optional[str] = None,
        tick_interval: float = 1.0,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.supervisor = supervisor
        self.temp_dir = Path(temp_dir)
        self.parser_factory = parser_factory
        self.metadata_timeout = settings.METADATA_TIMEOUT if metadata_timeout is None else metadata_timeout
        self.subscriber_wait_timeout = (
            settings.SUBSCRIBER_WAIT_TIMEOUT if subscriber_wait_timeout is None else subscriber_wait_timeout
        )
        self.conversion_timeout = settings.CONVERSION_TIMEOUT if conversion_timeout is None else conversion_timeout
        self.audio_format = audio_format or settings.AUDIO_FORMAT
        self.audio_quality = audio_quality or settings.AUDIO_QUALITY
        self.tick_interval = tick_interval

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cleanups: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self, url: Optional[str]) -> Session:
        """
        Validate the URL, create a session and schedule its pipeline.

        Raises:
            InvalidInput: For empty or unsupported URLs (no session is created)
            SessionLimitReached: When too many sessions are active
        """
        platform = validate_url(url)
        url = url.strip()
        session = self.registry.create(url, platform)
        session.temp_base = self.temp_dir / f"{TEMP_PREFIX}{session.id}"

        task = asyncio.create_task(self.run(session), name=f"download-{session.id}")
        self._tasks[session.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session.id, None))

        logger.info("download_request", session_id=session.id, platform=platform, url=url[:100])
        return session

    def subscriber_disconnected(self, session_id: str, channel: SubscriberChannel) -> None:
        """
        Handle a closed progress stream.

        Synchronous so it can run from a cancelled streaming response. A
        completed session stays for retrieval, a failed one is evicted, and
        an in-flight one is cancelled and cleaned up in the background.
        """
        if not self.broadcaster.unsubscribe(session_id, channel):
            return

        session = self.registry.get(session_id)
        logger.info("sse_connection_closed", session_id=session_id,
                    state=session.state.value if session else None)
        if session is None or session.state == SessionState.COMPLETE:
            return

        if session.state == SessionState.FAILED:
            if session.process is None:
                self.registry.remove(session_id)
            return

        logger.warning("client_disconnected_midway", session_id=session_id, state=session.state.value)
        cleanup = asyncio.create_task(self.cancel(session_id), name=f"cancel-{session_id}")
        self._cleanups.add(cleanup)
        cleanup.add_done_callback(self._cleanups.discard)

    async def cancel(self, session_id: str) -> None:
        """Terminate a session's pipeline, delete its files and evict it."""
        task = self._tasks.get(session_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        session = self.registry.get(session_id)
        if session is None or session.state == SessionState.COMPLETE:
            return

        delete_artifacts(session.temp_base)
        if session.process is None:
            self.registry.remove(session_id)

    async def shutdown(self) -> None:
        """Cancel every pipeline, delete all session files and clear the registry."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, *self._cleanups, return_exceptions=True)

        for session in self.registry.sessions():
            result = session.take_result()
            if result is not None:
                result.unlink(missing_ok=True)
            delete_artifacts(session.temp_base)
            if session.channel is not None:
                session.channel.close()
        self.registry.clear()
        logger.info("orchestrator_shutdown", cancelled_tasks=len(tasks))

    def evict_expired(self, ttl: float) -> int:
        """
        Evict stale sessions whose pipeline is no longer running.

        Unretrieved artifacts of evicted sessions are deleted.
        """
        stale = [session for session in self.registry.expired(ttl) if session.id not in self._tasks]
        for session in stale:
            result = session.take_result()
            if result is not None:
                result.unlink(missing_ok=True)
                logger.info("unclaimed_artifact_deleted", session_id=session.id, file=result.name)
            delete_artifacts(session.temp_base)
            self.registry.remove(session.id)
        if stale:
            logger.info("sessions_evicted", count=len(stale), ttl=ttl)
        return len(stale)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(self, session: Session) -> Optional[Path]:
        """
        Execute the full pipeline for one session.

        Returns:
            Path to the MP3 on success, None on failure or cancellation
        """
        log = logger.bind(session_id=session.id, platform=session.platform)
        started = time.monotonic()
        try:
            await self._fetch_metadata(session, log)
            self._publish(session, ProgressEvent(
                status="fetching", percent=PREPARING_PERCENT, message="Preparing download..."
            ))
            await self._await_subscriber(session, log)
            result = await self._convert(session, log)
        except asyncio.CancelledError:
            log.warning("download_cancelled", state=session.state.value)
            delete_artifacts(session.temp_base)
            raise
        except SubprocessSignal as e:
            # The process was stopped on purpose; nobody is waiting for an error
            log.info("download_stopped", error=str(e))
            delete_artifacts(session.temp_base)
            return None
        except Exception as e:
            self._fail(session, e, log)
            return None

        session.result_file = result
        session.advance(SessionState.COMPLETE)
        self._publish(session, ProgressEvent(status="complete", percent=100, message="Complete!"))
        log.info("download_completed", duration=f"{time.monotonic() - started:.2f}s", title=session.title)
        return result

    def _publish(self, session: Session, event: ProgressEvent) -> None:
        self.broadcaster.publish(session.id, event)

    async def _tick(self, session: Session, message: str, low: float, high: float, total: float) -> None:
        """Publish a countdown event every tick_interval until cancelled."""
        remaining = int(total)
        while remaining > 1:
            await asyncio.sleep(self.tick_interval)
            remaining -= 1
            fraction = (total - remaining) / total
            self._publish(session, ProgressEvent(
                status="fetching",
                percent=round(low + fraction * (high - low), 2),
                message=f"{message} ({remaining}s)",
            ))

    async def _fetch_metadata(self, session: Session, log) -> None:
        """Best-effort title/thumbnail lookup; never fails the session."""
        session.advance(SessionState.FETCHING_METADATA)
        self._publish(session, ProgressEvent(
            status="fetching", percent=METADATA_START_PERCENT, message="Fetching video info..."
        ))

        strategy = self.supervisor.resolve_strategy(session.platform)
        ticker = asyncio.create_task(self._tick(
            session, "Fetching video info...", METADATA_START_PERCENT, METADATA_FOUND_PERCENT, self.metadata_timeout
        ))
        try:
            metadata = await self.supervisor.fetch_metadata(session.url, self.metadata_timeout, strategy)
        except MetadataTimeout as e:
            log.warning("metadata_fetch_timeout", error=str(e))
            return
        except MP3MakerError as e:
            log.warning("metadata_fetch_failed", error=str(e), details=e.details)
            return
        except Exception as e:
            log.warning("metadata_fetch_failed", error=str(e), error_type=type(e).__name__)
            return
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)

        session.title = metadata.title
        session.thumbnail_url = metadata.thumbnail_url
        if metadata.title:
            title = metadata.title
            shown = title[:40] + ("..." if len(title) > 40 else "")
            self._publish(session, ProgressEvent(
                status="fetching", percent=METADATA_FOUND_PERCENT, message=f"Found: {shown}"
            ))
        log.info("metadata_recorded", title=session.title, thumbnail_url=session.thumbnail_url)

    async def _await_subscriber(self, session: Session, log) -> bool:
        """Wait (bounded) for a progress subscriber; proceeds either way."""
        session.advance(SessionState.AWAITING_SUBSCRIBER)
        if session.channel is not None:
            return True
        try:
            await asyncio.wait_for(session.subscriber_ready.wait(), timeout=self.subscriber_wait_timeout)
            return True
        except asyncio.TimeoutError:
            log.warning("sse_connection_timeout",
                        error=str(ChannelTimeout(session.id, self.subscriber_wait_timeout)))
            return False

    async def _convert(self, session: Session, log) -> Path:
        if session.id not in self.registry:
            raise SubprocessSignal()

        strategy = self.supervisor.resolve_strategy(session.platform)
        options = ConversionOptions(
            output_base=session.temp_base,
            audio_format=self.audio_format,
            audio_quality=self.audio_quality,
            cookie_file=strategy.cookie_file,
            client_strategy=strategy.client_strategy,
        )

        session.advance(SessionState.CONVERTING)
        handle = await self.supervisor.start(session.url, options)
        session.process = handle
        parser = self.parser_factory()
        countdowns: Set[asyncio.Task] = set()
        try:
            try:
                exit_code = await asyncio.wait_for(
                    self._drive(session, handle, parser, countdowns, log),
                    timeout=self.conversion_timeout,
                )
            except asyncio.TimeoutError:
                raise ConversionTimeout(self.conversion_timeout)
        finally:
            if parser.countdown is not None:
                parser.countdown.cancel()
            for task in countdowns:
                task.cancel()
            await asyncio.gather(*countdowns, return_exceptions=True)
            if handle.returncode is None:
                await handle.cancel()
            session.process = None

        if handle.cancelled:
            raise SubprocessSignal(exit_code)
        if exit_code != 0:
            raise SubprocessFailure(exit_code, handle.stderr_text())

        result = Path(f"{session.temp_base}.{self.audio_format}")
        if not result.exists():
            raise ArtifactMissing(str(result))
        return result

    async def _drive(
        self,
        session: Session,
        handle: ProcessHandle,
        parser: ProgressParser,
        countdowns: Set[asyncio.Task],
        log,
    ) -> int:
        """Feed yt-dlp output through the parser until the process exits."""
        current: Optional[Countdown] = None
        async for line in handle.lines():
            if line.stream == "stderr":
                log.warning("ytdlp_stderr", line=line.text)
                continue

            log.info("ytdlp_output", line=line.text)
            event = parser.parse(line.text)
            if event is None:
                continue
            self._publish(session, event)

            if parser.countdown is not None and parser.countdown is not current:
                current = parser.countdown
                task = asyncio.create_task(self._run_countdown(session, current))
                countdowns.add(task)
                task.add_done_callback(countdowns.discard)

        return await handle.wait()

    async def _run_countdown(self, session: Session, countdown: Countdown) -> None:
        async for event in countdown.ticks():
            self._publish(session, event)

    def _fail(self, session: Session, error: Exception, log) -> None:
        exit_code = getattr(error, "exit_code", None)
        message = classify_failure(error, exit_code)
        log.error(
            "download_failed",
            error=str(error),
            error_type=type(error).__name__,
            exit_code=exit_code,
            stderr_tail=getattr(error, "stderr_tail", None),
            user_message=message,
            exc_info=not isinstance(error, MP3MakerError),
        )

        delete_artifacts(session.temp_base)
        session.error_message = message
        if not session.is_terminal:
            session.advance(SessionState.FAILED)
        self._publish(session, ProgressEvent(status="error", percent=0, message=message, error=message))
