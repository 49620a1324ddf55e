"""
Process Supervisor

Runs yt-dlp as a child process, one process per call. Conversion runs
expose their output as tagged lines and can be cancelled; metadata runs are
bounded by a timeout.
"""

import asyncio
import json
import re
import signal
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Sequence

import structlog
from yt_dlp.version import __version__ as YTDLP_VERSION

from mp3maker.config import settings
from mp3maker.errors import MetadataTimeout, SubprocessFailure

logger = structlog.get_logger()

STDERR_TAIL_LINES = 20


@dataclass
class ConversionOptions:
    """Option set for one conversion run, rendered to yt-dlp CLI flags."""

    output_base: Path
    extract_audio: bool = True
    audio_format: str = "mp3"
    audio_quality: str = "320k"
    format: str = "bestaudio/best"
    no_playlist: bool = True
    add_metadata: bool = True
    embed_thumbnail: bool = True
    cookie_file: Optional[str] = None
    client_strategy: Optional[str] = None

    def to_args(self) -> List[str]:
        args = ["--newline", "-f", self.format, "-o", f"{self.output_base}.%(ext)s"]
        if self.extract_audio:
            args += ["-x", "--audio-format", self.audio_format, "--audio-quality", self.audio_quality]
        if self.add_metadata:
            args.append("--add-metadata")
        if self.embed_thumbnail:
            args.append("--embed-thumbnail")
        if self.no_playlist:
            args.append("--no-playlist")
        if self.client_strategy:
            args += ["--extractor-args", self.client_strategy]
        if self.cookie_file:
            args += ["--cookies", self.cookie_file]
        return args


@dataclass
class Metadata:
    title: Optional[str] = None
    thumbnail_url: Optional[str] = None


@dataclass
class OutputLine:
    stream: str  # "stdout" or "stderr"
    text: str


@dataclass
class DownloadStrategy:
    """Authentication material and client override for one platform/environment."""

    cookie_file: Optional[str] = None
    client_strategy: Optional[str] = None
    description: str = "default"


def sanitize_filename(name: str) -> str:
    """
    Strip everything but word characters, whitespace and dashes.

    Example:
        >>> sanitize_filename("Artist - Song (Official Video) | 4K")
        'Artist - Song Official Video  4K'
    """
    return re.sub(r"[^\w\s-]", "", name).strip()[:100]


def pick_thumbnail(info: Dict[str, Any]) -> Optional[str]:
    """Best available thumbnail: `thumbnail`, else the last (largest) of `thumbnails`."""
    if info.get("thumbnail"):
        return info["thumbnail"]
    thumbnails = info.get("thumbnails") or []
    for candidate in reversed(thumbnails):
        if isinstance(candidate, dict) and candidate.get("url"):
            return candidate["url"]
    return None


class ProcessHandle:
    """
    A running yt-dlp process.

    The caller owns cancellation: every handle must either run to
    completion or be cancelled.
    """

    def __init__(self, process: asyncio.subprocess.Process, grace_period: float = 5.0):
        self.process = process
        self.grace_period = grace_period
        self.stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.cancelled = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def lines(self) -> AsyncIterator[OutputLine]:
        """Yield stdout and stderr lines, tagged, as they arrive."""
        queue: asyncio.Queue = asyncio.Queue()
        streams = {"stdout": self.process.stdout, "stderr": self.process.stderr}

        async def pump(name: str, reader: asyncio.StreamReader) -> None:
            try:
                while True:
                    raw = await reader.readline()
                    if not raw:
                        break
                    await queue.put(OutputLine(name, raw.decode("utf-8", errors="replace").rstrip("\r\n")))
            finally:
                await queue.put(None)

        pumps = [asyncio.create_task(pump(name, reader)) for name, reader in streams.items() if reader is not None]
        remaining = len(pumps)
        try:
            while remaining:
                item = await queue.get()
                if item is None:
                    remaining -= 1
                    continue
                if item.stream == "stderr" and item.text.strip():
                    self.stderr_tail.append(item.text)
                yield item
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

    async def wait(self) -> int:
        return await self.process.wait()

    async def cancel(self) -> None:
        """
        Ask the process to stop: SIGTERM, then SIGKILL after the grace period.
        """
        if self.process.returncode is not None:
            return
        self.cancelled = True
        try:
            self.process.send_signal(signal.SIGTERM)
            logger.info("ytdlp_process_terminating", pid=self.pid)
            await asyncio.wait_for(self.process.wait(), timeout=self.grace_period)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("ytdlp_process_kill", pid=self.pid, grace_period=self.grace_period)
            try:
                self.process.kill()
            except ProcessLookupError:
                return
            await self.process.wait()

    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)


class ProcessSupervisor:
    """
    Launches yt-dlp for conversions and metadata lookups.

    Example:
        >>> supervisor = ProcessSupervisor()
        >>> handle = await supervisor.start(url, ConversionOptions(output_base=Path("/tmp/temp-1")))
        >>> async for line in handle.lines():
        ...     print(line.stream, line.text)
        >>> exit_code = await handle.wait()
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        cookies_file: Optional[str] = None,
        is_production: Optional[bool] = None,
        grace_period: Optional[float] = None,
    ):
        if command is None:
            command = [settings.YTDLP_PATH] if settings.YTDLP_PATH else [sys.executable, "-m", "yt_dlp"]
        self.command = list(command)
        self.cookies_file = cookies_file if cookies_file is not None else settings.COOKIES_FILE
        self.is_production = settings.is_production if is_production is None else is_production
        self.grace_period = settings.CANCEL_GRACE_PERIOD if grace_period is None else grace_period

    def resolve_strategy(self, platform: str) -> DownloadStrategy:
        """
        Decide how to authenticate against the platform.

        - Local: no special options
        - Production with cookies: web client with the cookies file
        - Production without cookies: alternate YouTube clients
        """
        has_cookies = self.is_production and Path(self.cookies_file).exists()
        if has_cookies:
            strategy = DownloadStrategy(cookie_file=self.cookies_file, description="cookies")
        elif self.is_production and platform == "youtube":
            strategy = DownloadStrategy(client_strategy=settings.YOUTUBE_CLIENT_STRATEGY,
                                        description="alternate_client")
        else:
            strategy = DownloadStrategy(description="production_default" if self.is_production else "local_default")
        logger.info("download_strategy_selected", platform=platform, strategy=strategy.description)
        return strategy

    async def _spawn(self, args: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self.command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def version(self, timeout: float = 10.0) -> str:
        """
        Version reported by the configured yt-dlp command.

        Falls back to the installed package version when the command
        cannot be run.
        """
        try:
            process = await self._spawn(["--version"])
        except OSError as e:
            logger.warning("ytdlp_version_check_failed", error=str(e))
            return tool_version()

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await ProcessHandle(process, grace_period=self.grace_period).cancel()
            logger.warning("ytdlp_version_check_timeout", timeout=timeout)
            return tool_version()

        if process.returncode != 0:
            return tool_version()
        return stdout.decode("utf-8", errors="replace").strip() or tool_version()

    async def start(self, url: str, options: ConversionOptions) -> ProcessHandle:
        args = options.to_args() + ["--", url]
        process = await self._spawn(args)
        logger.info("ytdlp_process_started", pid=process.pid, url=url[:100], output_base=str(options.output_base))
        return ProcessHandle(process, grace_period=self.grace_period)

    async def fetch_metadata(
        self,
        url: str,
        timeout: float,
        strategy: Optional[DownloadStrategy] = None,
    ) -> Metadata:
        """
        Run the metadata-only invocation, bounded by `timeout` seconds.

        Raises:
            MetadataTimeout: If yt-dlp did not answer in time (it is cancelled)
            SubprocessFailure: If yt-dlp exited non-zero or printed invalid JSON
        """
        strategy = strategy or DownloadStrategy()
        args = ["--dump-single-json", "--no-warnings", "--no-check-certificate", "--no-playlist"]
        if strategy.client_strategy:
            args += ["--extractor-args", strategy.client_strategy]
        if strategy.cookie_file:
            args += ["--cookies", strategy.cookie_file]
        args += ["--", url]

        logger.info("metadata_fetch_started", url=url[:100], timeout=timeout)
        process = await self._spawn(args)
        handle = ProcessHandle(process, grace_period=self.grace_period)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await handle.cancel()
            raise MetadataTimeout(timeout)
        except asyncio.CancelledError:
            await handle.cancel()
            raise

        if process.returncode != 0:
            tail = "\n".join(stderr.decode("utf-8", errors="replace").strip().splitlines()[-STDERR_TAIL_LINES:])
            raise SubprocessFailure(process.returncode, tail)

        try:
            info = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise SubprocessFailure(process.returncode, message=f"Invalid metadata JSON: {e}")
        if not isinstance(info, dict):
            raise SubprocessFailure(process.returncode, message=f"Unexpected metadata JSON: {type(info).__name__}")

        title = info.get("title")
        metadata = Metadata(
            title=sanitize_filename(title) if title else None,
            thumbnail_url=pick_thumbnail(info),
        )
        logger.info("metadata_fetch_completed", title=metadata.title, thumbnail_url=metadata.thumbnail_url)
        return metadata


def tool_version() -> str:
    """Version of the installed yt-dlp package."""
    return YTDLP_VERSION
