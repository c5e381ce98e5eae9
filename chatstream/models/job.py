"""
Job submission and chat history models.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .events import VisualizationData


class ModelConfig(BaseModel):
    """Model selection sent with each new job."""

    chat_service_type: Literal["ALPHA_AI", "BRAIN_CRASH"] = "ALPHA_AI"
    provider: Literal["anthropic", "openai", "google", "perplexity"] = "anthropic"
    model: str = Field(..., description="Provider model identifier")


class JobRequest(BaseModel):
    """Body of the job submission request."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    llm_config: ModelConfig | None = Field(default=None, alias="modelConfig")
    session_id: str | None = Field(default=None, alias="sessionId")


class CurrentJob(BaseModel):
    """Handle of a backend generation job."""

    job_id: str
    session_id: str


class ActiveJob(CurrentJob):
    """Job still running on the backend, e.g. after a page reload."""


class DailyLimit(BaseModel):
    """Rate limit payload of a 429 response."""

    used: int | None = None
    limit: int | None = None
    remaining: int | None = None


class HistoryMessage(BaseModel):
    """Persisted chat message returned by the history endpoint."""

    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant", "system"]
    content: str = ""
    visualization: VisualizationData | None = None
