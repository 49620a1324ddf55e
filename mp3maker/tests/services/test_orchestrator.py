"""
Tests for the download orchestrator.

The conversion tool is replaced by FakeSupervisor (see fakes.py), so these
tests cover the pipeline: event order, terminal events, cancellation and
temp-file cleanup.
"""

import asyncio

import pytest

from mp3maker.errors import InvalidInput, MetadataTimeout, SessionLimitReached
from mp3maker.services.broadcaster import ProgressBroadcaster
from mp3maker.services.orchestrator import (
    DownloadOrchestrator,
    cleanup_orphans,
    delete_artifacts,
    detect_platform,
    validate_url,
)
from mp3maker.services.session_registry import SessionRegistry, SessionState
from mp3maker.tests.fakes import collect, wait_until

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
PRIVATE_VIDEO = "ERROR: [youtube] dQw4w9WgXcQ: Private video. Sign in if you've been granted access to this video"


def session_files(temp_dir, session):
    return sorted(path.name for path in temp_dir.glob(f"temp-{session.id}*"))


class TestUrlValidation:

    @pytest.mark.parametrize("url,platform", [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "youtube"),
        ("https://youtu.be/dQw4w9WgXcQ", "youtube"),
        ("https://soundcloud.com/artist/track", "soundcloud"),
        ("https://artist.bandcamp.com/track/song", "bandcamp"),
        ("https://vimeo.com/123", "unknown"),
    ])
    def test_detect_platform(self, url, platform):
        assert detect_platform(url) == platform

    @pytest.mark.parametrize("url", [None, "", "   "])
    def test_missing_url(self, url):
        with pytest.raises(InvalidInput) as exc_info:
            validate_url(url)
        assert exc_info.value.get_user_friendly_message() == "Please provide a valid URL"

    def test_unsupported_url(self):
        with pytest.raises(InvalidInput) as exc_info:
            validate_url("https://example.com/video")
        assert "YouTube, SoundCloud or Bandcamp" in exc_info.value.get_user_friendly_message()

    def test_start_rejects_without_creating_session(self, orchestrator, registry):
        with pytest.raises(InvalidInput):
            orchestrator.start("https://example.com/video")
        assert len(registry) == 0


class TestTempFiles:

    def test_delete_artifacts_removes_side_files(self, temp_dir):
        base = temp_dir / "temp-abc"
        for suffix in (".mp3", ".webm.part", ".webp", ".jpg"):
            (temp_dir / f"temp-abc{suffix}").write_bytes(b"x")
        (temp_dir / "temp-other.mp3").write_bytes(b"x")

        assert delete_artifacts(base) == 4
        assert [path.name for path in temp_dir.iterdir()] == ["temp-other.mp3"]

    def test_delete_artifacts_without_base(self):
        assert delete_artifacts(None) == 0

    def test_cleanup_orphans(self, temp_dir):
        (temp_dir / "temp-old.mp3").write_bytes(b"x")
        (temp_dir / "keep.txt").write_text("x")

        assert cleanup_orphans(temp_dir) == 1
        assert [path.name for path in temp_dir.iterdir()] == ["keep.txt"]

    def test_cleanup_orphans_creates_directory(self, tmp_path):
        temp_dir = tmp_path / "missing"
        assert cleanup_orphans(temp_dir) == 0
        assert temp_dir.is_dir()


class TestSuccessfulConversion:

    @pytest.mark.asyncio
    async def test_events_are_monotonic_and_end_complete(self, orchestrator, broadcaster, temp_dir):
        session = orchestrator.start(URL)
        channel = broadcaster.subscribe(session.id)

        events = await collect(channel)

        percents = [event.percent for event in events]
        assert percents == sorted(percents)
        assert events[0].message == "Preparing..."
        assert events[-1].status == "complete"
        assert events[-1].percent == 100
        assert [event.status for event in events].count("complete") == 1
        assert all(event.percent < 100 for event in events[:-1])

        await wait_until(lambda: session.state == SessionState.COMPLETE)
        assert session.result_file == temp_dir / f"temp-{session.id}.mp3"
        assert session.result_file.exists()
        assert session.process is None

    @pytest.mark.asyncio
    async def test_metadata_is_recorded(self, orchestrator, broadcaster):
        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert session.title == "Test Song"
        assert session.thumbnail_url == "https://img.example.com/thumb.jpg"
        assert "Found: Test Song" in [event.message for event in events]

    @pytest.mark.asyncio
    async def test_download_progress_is_forwarded(self, orchestrator, broadcaster):
        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        downloading = [event for event in events if event.speed == "1.20MiB/s"]
        assert downloading[-1].percent == 45.2
        assert downloading[-1].eta == "00:12"

    @pytest.mark.asyncio
    async def test_conversion_uses_session_temp_base(self, orchestrator, broadcaster, fake_supervisor, temp_dir):
        session = orchestrator.start(URL)
        await collect(broadcaster.subscribe(session.id))

        options = fake_supervisor.options[0]
        assert options.output_base == temp_dir / f"temp-{session.id}"
        assert options.audio_format == "mp3"
        assert options.audio_quality == "320k"

    @pytest.mark.asyncio
    async def test_metadata_failure_does_not_fail_session(self, orchestrator, broadcaster, fake_supervisor):
        fake_supervisor.metadata_error = MetadataTimeout(1.0)

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert events[-1].status == "complete"
        assert session.title is None
        assert session.thumbnail_url is None

    @pytest.mark.asyncio
    async def test_unexpected_metadata_error_does_not_fail_session(self, orchestrator, broadcaster, fake_supervisor):
        fake_supervisor.metadata_error = ValueError("unexpected metadata shape")

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert events[-1].status == "complete"
        assert "error" not in [event.status for event in events]
        assert len(fake_supervisor.handles) == 1

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_completion(self, orchestrator, broadcaster):
        session = orchestrator.start(URL)
        await wait_until(lambda: session.state == SessionState.COMPLETE)

        events = await collect(broadcaster.subscribe(session.id))

        assert [(event.status, event.percent) for event in events] == [("complete", 100)]

    @pytest.mark.asyncio
    async def test_disconnect_after_completion_keeps_artifact(self, orchestrator, broadcaster, registry):
        session = orchestrator.start(URL)
        channel = broadcaster.subscribe(session.id)
        await collect(channel)

        orchestrator.subscriber_disconnected(session.id, channel)

        assert session.id in registry
        assert session.result_file.exists()

    @pytest.mark.asyncio
    async def test_rate_limit_countdown(self, orchestrator, broadcaster, fake_supervisor):
        fake_supervisor.lines = [
            "[download] Sleeping 3.0 seconds as required by the site...",
            "[download]  50.0% of 3.50MiB at 1.20MiB/s ETA 00:02",
        ]

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        messages = [event.message for event in events]
        assert "Rate limit: 3s..." in messages
        assert events[-1].status == "complete"


class TestFailedConversion:

    @pytest.mark.asyncio
    async def test_single_classified_error_event(self, orchestrator, broadcaster, fake_supervisor, temp_dir):
        fake_supervisor.exit_code = 1
        fake_supervisor.stderr = [PRIVATE_VIDEO]

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        statuses = [event.status for event in events]
        assert statuses.count("error") == 1
        assert "complete" not in statuses
        assert events[-1].status == "error"
        assert events[-1].error == "This video is private or unavailable"
        assert events[-1].message == "This video is private or unavailable"

        await wait_until(lambda: session.state == SessionState.FAILED)
        assert session.result_file is None
        assert session_files(temp_dir, session) == []

    @pytest.mark.asyncio
    async def test_missing_output_file(self, orchestrator, broadcaster, fake_supervisor):
        fake_supervisor.write_output = False

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert events[-1].status == "error"
        assert events[-1].error == "Conversion finished but no MP3 was produced"

    @pytest.mark.asyncio
    async def test_conversion_timeout(self, registry, broadcaster, fake_supervisor, temp_dir):
        fake_supervisor.block = True
        orchestrator = DownloadOrchestrator(
            registry, broadcaster, fake_supervisor, temp_dir,
            metadata_timeout=1.0, subscriber_wait_timeout=0.05, conversion_timeout=0.1,
        )

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert events[-1].error == "Download timeout - video may be too long"
        assert fake_supervisor.handles[0].cancelled
        assert session_files(temp_dir, session) == []

    @pytest.mark.asyncio
    async def test_disconnect_after_failure_evicts_session(self, orchestrator, broadcaster, registry, fake_supervisor):
        fake_supervisor.exit_code = 1
        session = orchestrator.start(URL)
        channel = broadcaster.subscribe(session.id)
        await collect(channel)
        await wait_until(lambda: session.process is None)

        orchestrator.subscriber_disconnected(session.id, channel)

        assert session.id not in registry

    @pytest.mark.asyncio
    async def test_start_failure_fails_session(self, orchestrator, broadcaster, fake_supervisor):
        async def broken_start(url, options):
            raise FileNotFoundError("yt-dlp")

        fake_supervisor.start = broken_start

        session = orchestrator.start(URL)
        events = await collect(broadcaster.subscribe(session.id))

        assert events[-1].status == "error"
        assert session.process is None


class TestCancellation:

    @pytest.mark.asyncio
    async def test_disconnect_midway_cancels_and_cleans_up(
        self, orchestrator, broadcaster, registry, fake_supervisor, temp_dir
    ):
        fake_supervisor.block = True
        session = orchestrator.start(URL)
        channel = broadcaster.subscribe(session.id)
        await wait_until(lambda: session.process is not None)
        assert session_files(temp_dir, session) != []

        orchestrator.subscriber_disconnected(session.id, channel)

        await wait_until(lambda: session.id not in registry)
        assert fake_supervisor.handles[0].cancelled
        assert session_files(temp_dir, session) == []
        assert session.last_event.status != "error"

    @pytest.mark.asyncio
    async def test_replaced_subscriber_does_not_cancel(self, orchestrator, broadcaster, registry, fake_supervisor):
        fake_supervisor.block = True
        session = orchestrator.start(URL)
        old = broadcaster.subscribe(session.id)
        broadcaster.subscribe(session.id)
        await wait_until(lambda: session.process is not None)

        orchestrator.subscriber_disconnected(session.id, old)
        await asyncio.sleep(0.01)

        assert session.id in registry
        assert not fake_supervisor.handles[0].cancelled
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, orchestrator, broadcaster, registry, fake_supervisor, temp_dir):
        fake_supervisor.block = True
        first = orchestrator.start(URL)
        second = orchestrator.start("https://soundcloud.com/artist/track")
        broadcaster.subscribe(first.id)
        broadcaster.subscribe(second.id)
        await wait_until(lambda: len(fake_supervisor.handles) == 2)

        await orchestrator.shutdown()

        assert len(registry) == 0
        assert all(handle.cancelled for handle in fake_supervisor.handles)
        assert list(temp_dir.iterdir()) == []


class TestEviction:

    @pytest.mark.asyncio
    async def test_unclaimed_artifact_is_deleted(self, orchestrator, broadcaster, registry):
        session = orchestrator.start(URL)
        channel = broadcaster.subscribe(session.id)
        await collect(channel)
        orchestrator.subscriber_disconnected(session.id, channel)
        await wait_until(lambda: session.id not in orchestrator._tasks)
        result = session.result_file
        session.finished_at -= 100

        assert orchestrator.evict_expired(ttl=10) == 1
        assert session.id not in registry
        assert not result.exists()

    @pytest.mark.asyncio
    async def test_running_sessions_are_kept(self, orchestrator, registry, fake_supervisor):
        fake_supervisor.block = True
        session = orchestrator.start(URL)
        session.created_at -= 100

        assert orchestrator.evict_expired(ttl=10) == 0
        assert session.id in registry
        await orchestrator.shutdown()


class TestSessionLimit:

    @pytest.mark.asyncio
    async def test_start_beyond_limit(self, fake_supervisor, temp_dir):
        registry = SessionRegistry(max_sessions=1)
        orchestrator = DownloadOrchestrator(registry, ProgressBroadcaster(registry), fake_supervisor, temp_dir)
        orchestrator.start(URL)

        with pytest.raises(SessionLimitReached):
            orchestrator.start(URL)

        assert len(registry) == 1
        await orchestrator.shutdown()
