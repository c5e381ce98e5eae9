"""
Best-effort recovery of a job's final answer from chat history.

The event log can report a job as completed without ever delivering the
completion event (the result was persisted but the stream entry was lost
or expired). The persisted conversation is then the source of truth.
"""

from collections.abc import Callable

import httpx
import structlog
from pydantic import ValidationError

from ..core.exceptions import ChatStreamError
from ..models import HistoryMessage
from .chat_api import ChatApiClient
from .stream_assembler import StreamAssembler

logger = structlog.get_logger()


class FallbackRecoverer:
    """Reads the latest assistant message of a session into the stream state."""

    def __init__(self, api: ChatApiClient, assembler: StreamAssembler):
        self.api = api
        self.assembler = assembler

    async def recover(
        self,
        session_id: str,
        is_live: Callable[[], bool] | None = None,
    ) -> HistoryMessage | None:
        """
        Replace the response with the last persisted assistant message.

        Never raises: on any failure the partial response already shown is
        kept and None is returned.

        Args:
            session_id: Conversation the lost job belongs to
            is_live: Checked after the fetch; a stale caller applies nothing

        Returns:
            The applied assistant message, or None if nothing was recovered
        """
        try:
            messages = await self.api.fetch_history(session_id)
        except (ChatStreamError, httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning(
                "Fallback history fetch failed",
                session_id=session_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if is_live is not None and not is_live():
            logger.debug("Fallback result discarded, poller superseded")
            return None

        last_assistant = next(
            (m for m in reversed(messages) if m.role == "assistant"), None
        )
        if last_assistant is None or not self.assembler.apply_history_message(
            last_assistant
        ):
            logger.info(
                "Fallback found no assistant message",
                session_id=session_id,
                message_count=len(messages),
            )
            return None

        logger.info(
            "Fallback recovered response from history",
            session_id=session_id,
            content_length=len(last_assistant.content),
            has_visualization=last_assistant.visualization is not None,
        )
        return last_assistant
