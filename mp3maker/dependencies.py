"""
FastAPI dependencies for the services created at application startup
"""

from fastapi import Request

from mp3maker.services.broadcaster import ProgressBroadcaster
from mp3maker.services.log_hub import LogHub
from mp3maker.services.orchestrator import DownloadOrchestrator
from mp3maker.services.process_supervisor import ProcessSupervisor
from mp3maker.services.session_registry import SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def get_orchestrator(request: Request) -> DownloadOrchestrator:
    return request.app.state.orchestrator


def get_supervisor(request: Request) -> ProcessSupervisor:
    return request.app.state.orchestrator.supervisor


def get_log_hub(request: Request) -> LogHub:
    return request.app.state.log_hub
