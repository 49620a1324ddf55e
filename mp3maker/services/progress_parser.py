"""
Progress Parser

Turns yt-dlp's line-oriented console output into ProgressEvent objects.

Rules are evaluated in order and the first match wins:
1. Known milestones ("Extracting URL", "Downloading webpage", ...)
2. Rate-limit sleeps ("Sleeping 5.0 seconds"), which start a Countdown
3. Percentage tokens ("45.2% of 3.50MiB at 1.20MiB/s ETA 00:12")
4. A bare "Extracting audio" marker
Anything else yields no event.
"""

import asyncio
import math
import re
from typing import AsyncIterator, List, Optional, Tuple

import structlog

from mp3maker.schemas import ProgressEvent

logger = structlog.get_logger()

# (needles, percent, message). Percent checkpoints increase down the table.
MILESTONES: List[Tuple[Tuple[str, ...], float, str]] = [
    (("Extracting URL",), 10, "Extracting URL..."),
    (("Downloading webpage",), 15, "Loading webpage..."),
    (("Downloading tv client config",), 20, "Loading config..."),
    (("Downloading tv player API JSON", "Downloading web safari player API JSON", "player API JSON"),
     25, "Loading player API..."),
    (("Downloading m3u8 information",), 30, "Analyzing streams..."),
    (("Downloading 1 format",), 35, "Format selected!"),
]

SLEEP_BAND = (10.0, 15.0)
EXTRACT_AUDIO_PERCENT = 95.0
# 100 is reserved for the terminal success event
MAX_RUNNING_PERCENT = 99.0

SLEEP_PATTERN = re.compile(r"Sleeping\s+(\d+\.?\d*)\s+seconds")
PERCENT_PATTERN = re.compile(r"(\d+\.?\d*)%")
SPEED_PATTERN = re.compile(r"(\d+\.?\d*[KMG]iB/s)")
ETA_PATTERN = re.compile(r"ETA\s+(\d+:\d+(?::\d+)?)")

CONVERTING_MARKERS = ("Extracting audio", "[ExtractAudio]", "Deleting", "has already been downloaded")


class Countdown:
    """
    A rate-limit sleep announced by yt-dlp.

    yt-dlp prints nothing while it sleeps, so the countdown produces its own
    events: one immediately, then one per interval while time remains, with
    percent interpolated across SLEEP_BAND.
    """

    def __init__(self, seconds: float, interval: float = 1.0):
        self.seconds = seconds
        self.interval = interval
        self.remaining = math.ceil(seconds)
        self.cancelled = False

    def _event(self) -> ProgressEvent:
        low, high = SLEEP_BAND
        elapsed = self.seconds - self.remaining
        fraction = min(max(elapsed / self.seconds, 0.0), 1.0) if self.seconds > 0 else 1.0
        return ProgressEvent(
            status="fetching",
            percent=round(low + fraction * (high - low), 2),
            message=f"Rate limit: {self.remaining}s...",
        )

    def initial_event(self) -> ProgressEvent:
        return self._event()

    @property
    def active(self) -> bool:
        return not self.cancelled and self.remaining > 0

    def cancel(self) -> None:
        self.cancelled = True

    async def ticks(self) -> AsyncIterator[ProgressEvent]:
        """Yield the synthetic events that follow the initial one."""
        while not self.cancelled:
            await asyncio.sleep(self.interval)
            if self.cancelled:
                return
            self.remaining -= 1
            if self.remaining <= 0:
                return
            yield self._event()


class ProgressParser:
    """
    Per-session parser of yt-dlp output lines.

    Stateless per line except for `countdown`, the rate-limit sleep started
    by the most recent "Sleeping N seconds" line.

    Example:
        >>> parser = ProgressParser()
        >>> parser.parse("[download]  45.2% of 3.50MiB at 1.20MiB/s ETA 00:12").percent
        45.2
    """

    def __init__(self, countdown_interval: float = 1.0):
        self.countdown_interval = countdown_interval
        self.countdown: Optional[Countdown] = None

    def parse(self, line: str) -> Optional[ProgressEvent]:
        for rule in (self._match_milestone, self._match_sleep, self._match_percent, self._match_extract_audio):
            event = rule(line)
            if event is not None:
                return event

        logger.debug("ytdlp_line_unmatched", line=line[:200])
        return None

    def _match_milestone(self, line: str) -> Optional[ProgressEvent]:
        for needles, percent, message in MILESTONES:
            if any(needle in line for needle in needles):
                return ProgressEvent(status="fetching", percent=percent, message=message)
        return None

    def _match_sleep(self, line: str) -> Optional[ProgressEvent]:
        match = SLEEP_PATTERN.search(line)
        if not match:
            return None

        if self.countdown is not None:
            self.countdown.cancel()
        self.countdown = Countdown(float(match.group(1)), interval=self.countdown_interval)
        logger.info("rate_limit_countdown_started", seconds=self.countdown.seconds)
        return self.countdown.initial_event()

    def _match_percent(self, line: str) -> Optional[ProgressEvent]:
        match = PERCENT_PATTERN.search(line)
        if not match:
            return None

        percent = min(float(match.group(1)), MAX_RUNNING_PERCENT)
        speed = SPEED_PATTERN.search(line)
        eta = ETA_PATTERN.search(line)

        if any(marker in line for marker in CONVERTING_MARKERS):
            status, message = "converting", "Converting to MP3..."
        else:
            status, message = "downloading", "Downloading..."

        return ProgressEvent(
            status=status,
            percent=percent,
            message=message,
            speed=speed.group(1) if speed else None,
            eta=eta.group(1) if eta else None,
        )

    def _match_extract_audio(self, line: str) -> Optional[ProgressEvent]:
        if "Extracting audio" in line or "[ExtractAudio]" in line:
            return ProgressEvent(status="converting", percent=EXTRACT_AUDIO_PERCENT, message="Converting to MP3...")
        return None
