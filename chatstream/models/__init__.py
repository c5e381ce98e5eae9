"""
Data models for the chat job protocol.
"""

from .events import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    Event,
    JobStatus,
    PollResult,
    StatusEvent,
    VisualizationData,
)
from .job import (
    ActiveJob,
    CurrentJob,
    DailyLimit,
    HistoryMessage,
    JobRequest,
    ModelConfig,
)
from .stream_state import StreamState

__all__ = [
    # Events
    "ChunkEvent",
    "CompleteEvent",
    "ErrorEvent",
    "StatusEvent",
    "Event",
    "JobStatus",
    "PollResult",
    "VisualizationData",
    # Jobs
    "ActiveJob",
    "CurrentJob",
    "DailyLimit",
    "HistoryMessage",
    "JobRequest",
    "ModelConfig",
    # State
    "StreamState",
]
