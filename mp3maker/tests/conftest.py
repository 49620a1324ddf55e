"""
Shared fixtures for the MP3 Maker tests.
"""

import pytest

from mp3maker.services.broadcaster import ProgressBroadcaster
from mp3maker.services.orchestrator import DownloadOrchestrator
from mp3maker.services.progress_parser import ProgressParser
from mp3maker.services.session_registry import SessionRegistry
from mp3maker.tests.fakes import FakeSupervisor


@pytest.fixture
def temp_dir(tmp_path):
    directory = tmp_path / "temp"
    directory.mkdir()
    return directory


@pytest.fixture
def fake_supervisor(tmp_path):
    return FakeSupervisor(cookies_file=str(tmp_path / "cookies.txt"))


@pytest.fixture
def registry():
    return SessionRegistry(max_sessions=10)


@pytest.fixture
def broadcaster(registry):
    return ProgressBroadcaster(registry)


@pytest.fixture
def orchestrator(registry, broadcaster, fake_supervisor, temp_dir):
    """Orchestrator with short timeouts and fast countdowns"""
    return DownloadOrchestrator(
        registry,
        broadcaster,
        fake_supervisor,
        temp_dir,
        parser_factory=lambda: ProgressParser(countdown_interval=0.001),
        metadata_timeout=1.0,
        subscriber_wait_timeout=0.05,
        conversion_timeout=5.0,
        tick_interval=0.001,
    )
