"""
Client-owned state of one chat widget's stream.
"""

from dataclasses import dataclass

from .events import VisualizationData
from .job import CurrentJob


@dataclass
class StreamState:
    """Incrementally updated view of the job being observed."""

    response: str = ""
    visualization: VisualizationData | None = None
    is_streaming: bool = False
    error: str | None = None
    current_job: CurrentJob | None = None
    server_busy: bool = False  # Busy indicator while a 503 retry is pending

    def reset(self) -> None:
        """Clear output before a new send or resume."""
        self.response = ""
        self.visualization = None
        self.error = None
