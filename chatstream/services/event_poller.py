"""
Polling loop over a job's event log.

The loop requests events after a high-water-mark cursor until the job's
completion event is consumed, the job is reported failed, or the loop is
superseded or disconnected.

States:
- Polling: job processing, sleep between empty polls
- Draining: job terminal but events still arriving, re-poll immediately
- Completed / Failed: loop exits
- Superseded: a newer loop exists, exit without touching state

The server may mark a job terminal before its final event is readable. A
terminal status with no events is therefore retried a few times before
the loop gives up and, for completed jobs, recovers the answer from the
persisted history.
"""

from collections.abc import Callable

import httpx
import structlog

from ..core.config import Settings
from ..core.exceptions import AppError, JobFailedError, UnauthenticatedError
from ..models import ErrorEvent, PollResult, StreamState
from .chat_api import ChatApiClient
from .fallback import FallbackRecoverer
from .poll_controller import PollAborted, PollController, PollTicket
from .stream_assembler import StreamAssembler

logger = structlog.get_logger()

EVENT_ERROR_MESSAGE = "An error occurred while processing the request."
UNKNOWN_ERROR_MESSAGE = "An unknown error occurred."


def error_message(error: BaseException) -> str:
    """User-facing text for an exception. Unexpected errors get a generic message."""
    if isinstance(error, AppError):
        return error.message
    return UNKNOWN_ERROR_MESSAGE


class EventPoller:
    """
    Drives one poll loop per call, coordinated by a PollController.

    Args:
        api: Chat API client
        controller: Cancel-and-replace controller shared with the facade
        assembler: Applies events to the stream state
        recoverer: Reads the final answer from history when events are lost
        settings: Poll interval, retry threshold
        on_unauthenticated: Called when the backend answers 401
        on_change: Called after the loop mutates state directly (error)
    """

    def __init__(
        self,
        api: ChatApiClient,
        controller: PollController,
        assembler: StreamAssembler,
        recoverer: FallbackRecoverer,
        settings: Settings,
        on_unauthenticated: Callable[[], None],
        on_change: Callable[[], None] | None = None,
    ):
        self.api = api
        self.controller = controller
        self.assembler = assembler
        self.recoverer = recoverer
        self.settings = settings
        self._on_unauthenticated = on_unauthenticated
        self._on_change = on_change or (lambda: None)

    @property
    def state(self) -> StreamState:
        return self.assembler.state

    async def poll_for_events(
        self,
        job_id: str,
        session_id: str | None = None,
        ticket: PollTicket | None = None,
    ) -> None:
        """
        Observe a job until it completes, fails, or this loop is superseded.

        Args:
            job_id: Job to observe
            session_id: Conversation used for history fallback
            ticket: Pre-issued ticket; a new one is taken when omitted

        Raises:
            JobFailedError: Backend reported failure (error event or status)
            NetworkError: Non-2xx poll response other than 401
        """
        if ticket is None:
            ticket = self.controller.start()

        logger.info("Polling started", job_id=job_id, poller_id=ticket.poller_id)

        try:
            await self._loop(job_id, session_id, ticket)
        except PollAborted:
            logger.debug("Poll request aborted", poller_id=ticket.poller_id)
        except Exception as e:
            if not ticket.is_live:
                logger.debug(
                    "Ignoring error of superseded poller",
                    poller_id=ticket.poller_id,
                    error=str(e),
                )
                return
            self.controller.finish(ticket)
            self.state.error = error_message(e)
            self._on_change()
            logger.warning(
                "Polling failed",
                job_id=job_id,
                poller_id=ticket.poller_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            self.controller.finish(ticket)

        logger.info(
            "Polling loop exited",
            job_id=job_id,
            poller_id=ticket.poller_id,
            current_poller_id=self.controller.generation,
            cancelled=self.controller.cancelled,
        )

    async def _loop(
        self, job_id: str, session_id: str | None, ticket: PollTicket
    ) -> None:
        last_id = "0"
        skip_delay = False
        empty_terminal_polls = 0

        while ticket.is_live and self.controller.polling:
            if not skip_delay:
                if not await ticket.sleep(self.settings.poll_interval_seconds):
                    return
            skip_delay = False

            if not ticket.is_live or not self.controller.polling:
                return

            try:
                result = await ticket.run(self.api.poll_events(job_id, last_id))
            except httpx.TimeoutException:
                logger.warning(
                    "Poll request timed out, retrying",
                    job_id=job_id,
                    last_id=last_id,
                )
                continue
            except UnauthenticatedError:
                logger.warning("Polling unauthenticated, redirecting", job_id=job_id)
                self.controller.finish(ticket)
                self._on_unauthenticated()
                return

            # Response of a superseded loop is discarded
            if not ticket.is_live:
                return

            last_id = result.last_id

            logger.debug(
                "Poll response",
                job_id=job_id,
                status=result.status,
                event_count=len(result.events),
                last_id=result.last_id,
                empty_terminal_polls=empty_terminal_polls,
            )

            if self._apply_events(result):
                return

            if result.is_terminal:
                if result.events:
                    # Leftover events may precede the completion event
                    empty_terminal_polls = 0
                    skip_delay = True
                    continue

                empty_terminal_polls += 1
                if empty_terminal_polls < self.settings.max_completed_empty_retries:
                    continue

                self.controller.finish(ticket)
                if result.status == "failed":
                    raise JobFailedError(job_id=job_id)

                logger.info(
                    "Fallback triggered",
                    job_id=job_id,
                    session_id=session_id,
                    retries=empty_terminal_polls,
                )
                if session_id:
                    await self.recoverer.recover(
                        session_id, is_live=lambda: ticket.is_live
                    )
                return

            if result.events:
                skip_delay = True

    def _apply_events(self, result: PollResult) -> bool:
        """
        Apply events in arrival order.

        Returns:
            True once the completion event was applied

        Raises:
            JobFailedError: On an error event
        """
        for event in result.events:
            if isinstance(event, ErrorEvent):
                raise JobFailedError(event.error or EVENT_ERROR_MESSAGE)
            if self.assembler.apply(event):
                return True
        return False
