"""
Event log models for chat job polling.

The backend appends events to a per-job log; each poll returns the events
after the caller's cursor. `type` is the discriminator, and each variant
carries only the fields that make sense for it.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

VisualizationData = dict[str, Any]

JobStatus = Literal["processing", "completed", "failed"]


class ChunkEvent(BaseModel):
    """Text delta produced while the job is generating."""

    id: str = Field(..., description="Cursor value of this event")
    type: Literal["chunk"] = "chunk"
    content: str | None = Field(default=None, description="Text delta")


class CompleteEvent(BaseModel):
    """Terminal success event."""

    id: str = Field(..., description="Cursor value of this event")
    type: Literal["complete"] = "complete"
    full_response: str | None = Field(
        default=None,
        description="Authoritative final text, supersedes accumulated chunks",
    )
    visualization: VisualizationData | None = Field(
        default=None, description="Chart/table payload"
    )
    metadata: dict[str, Any] | None = Field(
        default=None, description="Extra data; may also carry the visualization"
    )

    @property
    def effective_visualization(self) -> VisualizationData | None:
        """Visualization from the event itself, falling back to metadata."""
        if self.visualization:
            return self.visualization
        if self.metadata:
            return self.metadata.get("visualization") or None
        return None


class ErrorEvent(BaseModel):
    """Terminal failure event."""

    id: str = Field(..., description="Cursor value of this event")
    type: Literal["error"] = "error"
    error: str | None = Field(default=None, description="Failure reason")


class StatusEvent(BaseModel):
    """Informational progress event, currently carries no state change."""

    id: str = Field(..., description="Cursor value of this event")
    type: Literal["status"] = "status"
    status: str | None = None


Event = Annotated[
    ChunkEvent | CompleteEvent | ErrorEvent | StatusEvent,
    Field(discriminator="type"),
]


class PollResult(BaseModel):
    """One response of the events endpoint."""

    events: list[Event] = Field(default_factory=list)
    last_id: str = Field(..., description="Cursor to send on the next request")
    status: JobStatus = Field(..., description="Job state as the server sees it")

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")
