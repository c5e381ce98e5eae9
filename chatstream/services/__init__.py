"""
Submission, polling, and assembly services for chat jobs.
"""

from .chat_api import ChatApiClient
from .chat_stream import ChatStream
from .event_poller import EventPoller
from .fallback import FallbackRecoverer
from .poll_controller import PollAborted, PollController, PollTicket
from .stream_assembler import StreamAssembler, fold

__all__ = [
    "ChatApiClient",
    "ChatStream",
    "EventPoller",
    "FallbackRecoverer",
    "PollAborted",
    "PollController",
    "PollTicket",
    "StreamAssembler",
    "fold",
]
