"""
Tests for the yt-dlp output parser and rate-limit countdowns.
"""

from unittest.mock import AsyncMock, call, patch

import pytest

from mp3maker.services.progress_parser import Countdown, ProgressParser


@pytest.fixture
def parser():
    return ProgressParser()


class TestMilestones:
    """Known yt-dlp phases map to fixed checkpoints"""

    @pytest.mark.parametrize("line,percent,message", [
        ("[youtube] Extracting URL: https://youtu.be/dQw4w9WgXcQ", 10, "Extracting URL..."),
        ("[youtube] dQw4w9WgXcQ: Downloading webpage", 15, "Loading webpage..."),
        ("[youtube] dQw4w9WgXcQ: Downloading tv client config", 20, "Loading config..."),
        ("[youtube] dQw4w9WgXcQ: Downloading tv player API JSON", 25, "Loading player API..."),
        ("[youtube] dQw4w9WgXcQ: Downloading web safari player API JSON", 25, "Loading player API..."),
        ("[youtube] dQw4w9WgXcQ: Downloading m3u8 information", 30, "Analyzing streams..."),
        ("[info] dQw4w9WgXcQ: Downloading 1 format(s): 251", 35, "Format selected!"),
    ])
    def test_milestone(self, parser, line, percent, message):
        event = parser.parse(line)

        assert event.status == "fetching"
        assert event.percent == percent
        assert event.message == message

    def test_milestone_wins_over_percent(self, parser):
        event = parser.parse("[youtube] 50% Downloading webpage")
        assert event.percent == 15


class TestPercentLines:

    def test_download_progress_with_speed_and_eta(self, parser):
        event = parser.parse("[download]  45.2% of 3.50MiB at 1.20MiB/s ETA 00:12")

        assert event.status == "downloading"
        assert event.percent == 45.2
        assert event.message == "Downloading..."
        assert event.speed == "1.20MiB/s"
        assert event.eta == "00:12"

    def test_missing_speed_and_eta_are_none(self, parser):
        event = parser.parse("[download] 100% of 3.50MiB in 00:03")

        assert event.speed is None
        assert event.eta is None

    def test_hundred_percent_is_capped_below_completion(self, parser):
        event = parser.parse("[download] 100% of 3.50MiB in 00:03")
        assert event.percent == 99

    def test_eta_with_hours(self, parser):
        event = parser.parse("[download]   1.0% of 900.00MiB at 512.00KiB/s ETA 1:02:03")

        assert event.speed == "512.00KiB/s"
        assert event.eta == "1:02:03"

    @pytest.mark.parametrize("line", [
        "[download] 100% Extracting audio",
        "[download] 100% Deleting original file temp.webm",
        "[download] temp.webm has already been downloaded 100%",
    ])
    def test_converting_markers(self, parser, line):
        event = parser.parse(line)

        assert event.status == "converting"
        assert event.message == "Converting to MP3..."


class TestExtractAudio:

    def test_extract_audio_destination(self, parser):
        event = parser.parse("[ExtractAudio] Destination: temp-abc.mp3")

        assert event.status == "converting"
        assert event.percent == 95

    def test_extracting_audio_without_percent(self, parser):
        assert parser.parse("Extracting audio from temp-abc.webm").percent == 95


class TestUnmatchedLines:

    @pytest.mark.parametrize("line", [
        "",
        "[youtube] dQw4w9WgXcQ: Downloading ios player API",
        "[EmbedThumbnail] ffmpeg: Adding thumbnail to \"temp-abc.mp3\"",
        "WARNING: unable to extract uploader id",
    ])
    def test_returns_none(self, parser, line):
        assert parser.parse(line) is None


class TestRateLimitCountdown:

    def test_sleep_line_starts_countdown(self, parser):
        event = parser.parse("[download] Sleeping 5.0 seconds as required by the site...")

        assert event.status == "fetching"
        assert event.percent == 10
        assert event.message == "Rate limit: 5s..."
        assert parser.countdown is not None
        assert parser.countdown.active

    def test_new_sleep_replaces_previous_countdown(self, parser):
        parser.parse("Sleeping 5.0 seconds")
        first = parser.countdown
        parser.parse("Sleeping 3 seconds")

        assert first.cancelled
        assert parser.countdown is not first
        assert parser.countdown.remaining == 3

    def test_fractional_seconds_round_up(self):
        assert Countdown(2.5).remaining == 3

    @pytest.mark.asyncio
    async def test_ticks_once_per_second_until_expired(self):
        countdown = Countdown(5.0)

        with patch("mp3maker.services.progress_parser.asyncio.sleep", new=AsyncMock()) as sleep:
            events = [event async for event in countdown.ticks()]

        assert [event.message for event in events] == [
            "Rate limit: 4s...",
            "Rate limit: 3s...",
            "Rate limit: 2s...",
            "Rate limit: 1s...",
        ]
        assert [event.percent for event in events] == [11, 12, 13, 14]
        assert sleep.await_args_list == [call(1.0)] * 5
        assert not countdown.active

    @pytest.mark.asyncio
    async def test_cancel_stops_ticks(self):
        countdown = Countdown(10.0, interval=0)
        events = []

        async for event in countdown.ticks():
            events.append(event)
            countdown.cancel()

        assert len(events) == 1
        assert not countdown.active
