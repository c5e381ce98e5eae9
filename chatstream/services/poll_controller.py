"""
Cancel-and-replace coordination of poll loops.

One chat widget observes at most one job at a time. Every new send or
resume takes a fresh ticket from the controller; taking it bumps the
generation counter, which silently invalidates the previous ticket, and
aborts the previous ticket's in-flight request.

Usage:
    ticket = controller.start()
    while ticket.is_live:
        if not await ticket.sleep(2.0):
            break
        result = await ticket.run(api.poll_events(job_id, last_id))
        if not ticket.is_live:
            break  # stale response, discard
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class PollAborted(Exception):
    """Raised inside a loop whose in-flight request was aborted."""

    def __init__(self, poller_id: int):
        self.poller_id = poller_id
        super().__init__(f"Poller {poller_id} aborted")


class PollTicket:
    """
    Liveness token of one poll loop generation.

    Args:
        controller: Controller that issued the ticket
        poller_id: Generation number captured at start
    """

    def __init__(self, controller: "PollController", poller_id: int):
        self.controller = controller
        self.poller_id = poller_id
        self._cancel_event = asyncio.Event()
        self._inflight: asyncio.Task | None = None

    @property
    def is_live(self) -> bool:
        """True while no newer ticket exists and nothing cancelled this one."""
        return (
            self.controller.generation == self.poller_id
            and not self.controller.cancelled
            and not self._cancel_event.is_set()
        )

    @property
    def aborted(self) -> bool:
        return self._cancel_event.is_set()

    def abort(self) -> None:
        """Wake any sleep and cancel the in-flight request."""
        self._cancel_event.set()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep unless aborted first.

        Returns:
            Whether the ticket is still live afterwards
        """
        if seconds > 0:
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        return self.is_live

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await a request bound to this ticket so abort() can cancel it.

        Raises:
            PollAborted: The request was cancelled by abort()
        """
        if self.aborted:
            # Close the coroutine so it is not reported as never awaited
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            raise PollAborted(self.poller_id)

        task = asyncio.ensure_future(awaitable)
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if self.aborted and task.cancelled():
                raise PollAborted(self.poller_id) from None
            raise
        finally:
            self._inflight = None


class PollController:
    """
    Owns the generation counter and cancellation flags of one chat widget.

    State lives on the instance so independent widgets (or tests) never
    interfere with each other.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.cancelled = False
        self.polling = False
        self._current: PollTicket | None = None

    def start(self) -> PollTicket:
        """Invalidate the running loop, if any, and issue a new ticket."""
        previous = self._current
        self.generation += 1
        if previous is not None:
            previous.abort()

        ticket = PollTicket(self, self.generation)
        self._current = ticket
        self.polling = True
        self.cancelled = False

        logger.debug(
            "Poll generation started",
            poller_id=ticket.poller_id,
            superseded=previous.poller_id if previous else None,
        )
        return ticket

    @property
    def current(self) -> PollTicket | None:
        """Ticket of the most recent start(), live or not."""
        return self._current

    def is_current(self, ticket: PollTicket) -> bool:
        return self._current is ticket and self.generation == ticket.poller_id

    def finish(self, ticket: PollTicket) -> None:
        """Mark the loop inactive; ignored for superseded tickets."""
        if self.is_current(ticket):
            self.polling = False

    def disconnect(self) -> None:
        """Stop observing; the backend job keeps running."""
        self.polling = False
        self.cancelled = True
        if self._current is not None:
            self._current.abort()
