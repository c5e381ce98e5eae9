"""
HTTP client for the chat job endpoints.

Wraps the four endpoints the stream needs:
- POST /chat/jobs: create a generation job
- GET /chat/jobs/{job_id}/events: read events after a cursor
- GET /chat/history/{session_id}: persisted messages (fallback source)
- GET /chat/jobs/active: jobs still running for the current user

Non-2xx responses are mapped to the exception hierarchy in
`chatstream.core.exceptions` so callers never inspect status codes.
Timeouts are left as `httpx.TimeoutException`; the poller treats them as
transient.
"""

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from ..core.config import Settings
from ..core.exceptions import (
    DailyLimitExceededError,
    NetworkError,
    ServerBusyError,
    UnauthenticatedError,
)
from ..models import (
    ActiveJob,
    CurrentJob,
    DailyLimit,
    HistoryMessage,
    JobRequest,
    ModelConfig,
    PollResult,
)

logger = structlog.get_logger()


class ChatApiClient:
    """
    Async client for the chat job API.

    Owns a pooled httpx client unless one is injected (tests, shared pools).
    Every request carries the configured request timeout, which is separate
    from the polling interval.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        """
        Initialize the API client.

        Args:
            settings: Client settings (base URL, timeouts)
            client: Optional httpx AsyncClient for connection pooling
        """
        self.settings = settings
        self.base_url = settings.api_base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30.0,
                ),
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request; connection failures become NetworkError."""
        client = await self._get_client()
        try:
            return await client.request(
                method,
                f"{self.base_url}{path}",
                timeout=self.settings.request_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as e:
            raise NetworkError(None, f"Network error: {e}", path=path) from e

    async def submit_job(
        self,
        message: str,
        model_config: ModelConfig | None = None,
        session_id: str | None = None,
    ) -> CurrentJob:
        """
        Create a generation job for a user message.

        Args:
            message: User message (validated upstream)
            model_config: Model selection; backend default when omitted
            session_id: Conversation to append to, None for a new one

        Returns:
            Handle with the backend-assigned job and session ids

        Raises:
            UnauthenticatedError: Session missing or expired (401)
            DailyLimitExceededError: Daily chat quota used up (429)
            ServerBusyError: Backend at capacity, retry later (503)
            NetworkError: Any other non-2xx response
        """
        body = JobRequest(
            message=message, llm_config=model_config, session_id=session_id
        )
        response = await self._request(
            "POST", "/chat/jobs", json=body.model_dump(by_alias=True, mode="json")
        )

        if response.status_code == 401:
            raise UnauthenticatedError("Authentication required")

        if response.is_error:
            self._raise_for_submit_status(response)

        job = CurrentJob.model_validate(response.json())
        logger.info(
            "Chat job created",
            job_id=job.job_id,
            session_id=job.session_id,
            message_length=len(message),
        )
        return job

    def _raise_for_submit_status(self, response: httpx.Response) -> None:
        """Map a failed submission response to a typed error."""
        status = response.status_code
        payload = self._json_or_empty(response)

        logger.warning(
            "Chat job submission failed",
            status=status,
            code=payload.get("code"),
        )

        if status == 429:
            try:
                limit_info = DailyLimit.model_validate(payload.get("limit") or {})
            except ValidationError:
                limit_info = DailyLimit()
            raise DailyLimitExceededError(
                limit=limit_info.limit or self.settings.default_daily_limit,
                used=limit_info.used,
                remaining=limit_info.remaining,
            )

        if status == 503:
            raise ServerBusyError(code=payload.get("code", "SERVER_BUSY"))

        raise NetworkError(status)

    async def poll_events(self, job_id: str, last_id: str) -> PollResult:
        """
        Read events of a job after the given cursor.

        Args:
            job_id: Job to poll
            last_id: Cursor returned by the previous poll ("0" initially)

        Raises:
            UnauthenticatedError: Session missing or expired (401)
            NetworkError: Any other non-2xx response
            httpx.TimeoutException: Request exceeded the configured timeout
        """
        response = await self._request(
            "GET", f"/chat/jobs/{job_id}/events", params={"last_id": last_id}
        )

        if response.status_code == 401:
            raise UnauthenticatedError("Authentication required", job_id=job_id)

        if response.is_error:
            raise NetworkError(
                response.status_code,
                f"Polling error: {response.status_code}",
                job_id=job_id,
            )

        return PollResult.model_validate(response.json())

    async def fetch_history(self, session_id: str) -> list[HistoryMessage]:
        """
        Fetch persisted messages of a conversation, oldest first.

        Raises:
            NetworkError: Non-2xx response
        """
        response = await self._request("GET", f"/chat/history/{session_id}")

        if response.is_error:
            raise NetworkError(response.status_code, session_id=session_id)

        data = response.json().get("data") or {}
        return [HistoryMessage.model_validate(m) for m in data.get("messages") or []]

    async def list_active_jobs(self) -> list[ActiveJob]:
        """
        List jobs still running for the current user.

        Raises:
            UnauthenticatedError: Session missing or expired (401)
            NetworkError: Any other non-2xx response
        """
        response = await self._request("GET", "/chat/jobs/active")

        if response.status_code == 401:
            raise UnauthenticatedError("Authentication required")

        if response.is_error:
            raise NetworkError(response.status_code)

        jobs = [ActiveJob.model_validate(j) for j in response.json().get("jobs") or []]
        logger.debug("Active jobs listed", job_count=len(jobs))
        return jobs

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
        """Parse an error body, tolerating non-JSON payloads."""
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
