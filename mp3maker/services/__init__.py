"""
Services module for the conversion pipeline
"""

from .broadcaster import ProgressBroadcaster, SubscriberChannel
from .log_hub import LogHub
from .orchestrator import DownloadOrchestrator
from .process_supervisor import ProcessSupervisor
from .progress_parser import ProgressParser
from .session_registry import SessionRegistry

__all__ = [
    "DownloadOrchestrator",
    "LogHub",
    "ProcessSupervisor",
    "ProgressBroadcaster",
    "ProgressParser",
    "SessionRegistry",
    "SubscriberChannel",
]
