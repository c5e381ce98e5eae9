"""
Chat stream facade: submit a message and observe its job.

One ChatStream belongs to one chat view. It owns the stream state, the
cancel-and-replace controller, and the poller, and exposes:
- send_message: create a job and poll it to completion
- resume_polling: observe an already running job (e.g. after reload)
- disconnect: stop observing without cancelling the backend job
- subscribe: receive the state after every change

Usage:
    async with ChatStream(settings) as stream:
        stream.subscribe(lambda state: render(state.response))
        await stream.send_message("Compare AAPL and MSFT revenue growth")
"""

import asyncio
from collections.abc import Callable

import httpx
import structlog
from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..core.exceptions import ChatStreamError, ServerBusyError, UnauthenticatedError
from ..models import ActiveJob, CurrentJob, ModelConfig, StreamState
from .chat_api import ChatApiClient
from .event_poller import EventPoller, error_message
from .fallback import FallbackRecoverer
from .poll_controller import PollAborted, PollController
from .stream_assembler import StreamAssembler

logger = structlog.get_logger()

StateListener = Callable[[StreamState], None]


class ChatStream:
    """
    Client-side state machine of one chat widget.

    Args:
        settings: Client settings; cached global settings when omitted
        api: Chat API client; one owning its own httpx client when omitted
        navigate: Called with the login path when the session expired
    """

    def __init__(
        self,
        settings: Settings | None = None,
        api: ChatApiClient | None = None,
        navigate: Callable[[str], None] | None = None,
    ):
        self.settings = settings or get_settings()
        self.api = api or ChatApiClient(self.settings)
        self._navigate = navigate

        self.state = StreamState()
        self.controller = PollController()
        self.assembler = StreamAssembler(self.state, on_change=self._notify)
        self.recoverer = FallbackRecoverer(self.api, self.assembler)
        self.poller = EventPoller(
            api=self.api,
            controller=self.controller,
            assembler=self.assembler,
            recoverer=self.recoverer,
            settings=self.settings,
            on_unauthenticated=self._redirect_to_login,
            on_change=self._notify,
        )

        self._listeners: list[StateListener] = []
        self._session_id: str | None = None
        self.background_task: asyncio.Task | None = None

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ===== Observation =====

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener called with the state after each change.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception as e:
                logger.warning(
                    "Stream state listener failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def _redirect_to_login(self) -> None:
        logger.info(
            "Session expired, redirecting to login", path=self.settings.login_path
        )
        if self._navigate is not None:
            self._navigate(self.settings.login_path)

    def _set_error(self, error: BaseException) -> None:
        self.state.error = error_message(error)
        self._notify()

    # ===== Operations =====

    @property
    def is_streaming(self) -> bool:
        return self.state.is_streaming

    def disconnect(self) -> None:
        """Stop observing the current job; generation continues in the background."""
        self.controller.disconnect()
        self.state.is_streaming = False
        self.state.error = None
        self._notify()
        logger.info("Stream disconnected", poller_id=self.controller.generation)

    async def send_message(
        self,
        message: str,
        model_config: ModelConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        """
        Submit a message and stream the job's response into the state.

        Args:
            message: Non-empty user message
            model_config: Model selection sent with the job
            session_id: Conversation to continue, None for a new one

        Raises:
            DailyLimitExceededError: Daily quota used up
            ServerBusyError: Backend busy, caller may retry
            NetworkError: Submission or polling transport failure
            JobFailedError: Backend reported failure
        """
        await self._send(message, model_config, session_id)

    async def _send(
        self,
        message: str,
        model_config: ModelConfig | None,
        session_id: str | None,
        busy_retry: bool = False,
    ) -> None:
        if self.state.is_streaming:
            self.disconnect()
            await asyncio.sleep(self.settings.resubmit_grace_seconds)

        ticket = self.controller.start()
        self.state.reset()
        self.state.is_streaming = True
        self._notify()

        try:
            try:
                job = await ticket.run(
                    self.api.submit_job(message, model_config, session_id)
                )
            except UnauthenticatedError:
                self._redirect_to_login()
                return
            except PollAborted:
                return
            except Exception as e:
                if not ticket.is_live:
                    return
                if busy_retry and isinstance(e, ServerBusyError):
                    # Shown as the busy indicator, not as an error
                    self.state.server_busy = True
                    self._notify()
                    raise
                self._set_error(e)
                raise

            if not ticket.is_live:
                return

            self.state.current_job = job
            self._session_id = job.session_id
            self._notify()

            await self.poller.poll_for_events(
                job.job_id, session_id=job.session_id, ticket=ticket
            )
        finally:
            self.controller.finish(ticket)
            if self.controller.is_current(ticket) and self.state.is_streaming:
                self.state.is_streaming = False
                self._notify()

    async def send_message_with_retry(
        self,
        message: str,
        model_config: ModelConfig | None = None,
        session_id: str | None = None,
    ) -> None:
        """
        send_message with automatic retries while the server is busy.

        While a retry is pending only `server_busy` is set; the busy error
        reaches `error` once retries are exhausted. A disconnect or close
        during the wait ends the retries without resubmitting.

        Raises:
            ServerBusyError: Still busy after the configured retries
        """
        retries = 0
        try:
            while True:
                will_retry = retries < self.settings.server_busy_max_retries
                try:
                    await self._send(
                        message, model_config, session_id, busy_retry=will_retry
                    )
                    return
                except ServerBusyError:
                    if not will_retry:
                        logger.warning("Server still busy, giving up", retries=retries)
                        raise
                    retries += 1
                    logger.info(
                        "Server busy, retrying",
                        attempt=retries,
                        delay=self.settings.server_busy_retry_delay_seconds,
                    )
                    # The failed send's ticket; disconnect() and close() abort it
                    ticket = self.controller.current
                    if ticket is None or not await ticket.sleep(
                        self.settings.server_busy_retry_delay_seconds
                    ):
                        logger.info("Busy retry abandoned, stream disconnected")
                        return
        finally:
            if self.state.server_busy:
                self.state.server_busy = False
                self._notify()

    def resume_polling(
        self, job_id: str, session_id: str | None = None
    ) -> asyncio.Task | None:
        """
        Start observing an existing job in the background.

        No-op while a loop is already active, so repeated calls (re-renders,
        double navigation) never create duplicate observers.

        Returns:
            Task of the poll loop, or None if a loop was already active.
            Awaiting the task re-raises a polling failure; the failure is
            also recorded in the state.
        """
        if self.controller.polling:
            logger.debug("Resume skipped, poll loop already active", job_id=job_id)
            return None

        if session_id:
            self._session_id = session_id

        ticket = self.controller.start()
        self.state.reset()
        self.state.is_streaming = True
        self._notify()

        async def _run() -> None:
            try:
                await self.poller.poll_for_events(
                    job_id, session_id=self._session_id, ticket=ticket
                )
            finally:
                if self.controller.is_current(ticket) and self.state.is_streaming:
                    self.state.is_streaming = False
                    self._notify()

        task = asyncio.create_task(_run())
        task.add_done_callback(_log_task_failure)
        self.background_task = task
        return task

    async def resume_active_job(self) -> ActiveJob | None:
        """
        Resume the first job still running for the user, if any.

        Listing failures are logged and yield None, as does a poll loop
        that is already active.
        """
        try:
            jobs = await self.api.list_active_jobs()
        except UnauthenticatedError:
            self._redirect_to_login()
            return None
        except (ChatStreamError, httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning("Active job lookup failed", error=str(e))
            return None

        if not jobs:
            return None

        job = jobs[0]
        if self.resume_polling(job.job_id, job.session_id) is None:
            logger.info(
                "Active job not resumed, poll loop already active", job_id=job.job_id
            )
            return None

        self.state.current_job = CurrentJob(
            job_id=job.job_id, session_id=job.session_id
        )
        self._notify()
        logger.info("Resumed active job", job_id=job.job_id, session_id=job.session_id)
        return job

    async def close(self) -> None:
        """Stop polling, clear state, and release the HTTP client."""
        self.controller.disconnect()
        self.state.reset()
        self.state.is_streaming = False
        self.state.current_job = None
        self.state.server_busy = False
        self._listeners.clear()
        await self.api.close()


def _log_task_failure(task: asyncio.Task) -> None:
    """Retrieve a background poll failure so it is not reported as unhandled."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Background poll ended with error", error=str(error))
