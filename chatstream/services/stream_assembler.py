"""
Folds ordered job events into the visible response.

Chunk text is appended as soon as it arrives so the UI can render partial
output, and the `full_response` of the completion event replaces it
wholesale. Replacement makes completion idempotent and repairs missed or
duplicated chunks.
"""

from collections.abc import Callable, Iterable

from ..models import (
    ChunkEvent,
    CompleteEvent,
    Event,
    HistoryMessage,
    StreamState,
    VisualizationData,
)


class StreamAssembler:
    """
    Applies events to a StreamState.

    Args:
        state: State to mutate
        on_change: Called after every mutation (UI refresh hook)
    """

    def __init__(
        self,
        state: StreamState,
        on_change: Callable[[], None] | None = None,
    ):
        self.state = state
        self._on_change = on_change or (lambda: None)

    def apply_chunk(self, event: ChunkEvent) -> None:
        if not event.content:
            return
        self.state.response += event.content
        self._on_change()

    def apply_complete(self, event: CompleteEvent) -> None:
        """Replace accumulated text with the final text and set the visualization."""
        changed = False
        if event.full_response:
            self.state.response = event.full_response
            changed = True

        visualization = event.effective_visualization
        if visualization:
            self.state.visualization = visualization
            changed = True

        if changed:
            self._on_change()

    def apply_history_message(self, message: HistoryMessage) -> bool:
        """
        Adopt a persisted assistant message as the final response.

        Returns:
            True if the message had content and was applied
        """
        if not message.content:
            return False
        self.state.response = message.content
        if message.visualization:
            self.state.visualization = message.visualization
        self._on_change()
        return True

    def apply(self, event: Event) -> bool:
        """
        Apply one event.

        Returns:
            True if the event was terminal (completion)
        """
        if isinstance(event, ChunkEvent):
            self.apply_chunk(event)
            return False
        if isinstance(event, CompleteEvent):
            self.apply_complete(event)
            return True
        return False


def fold(events: Iterable[Event]) -> tuple[str, VisualizationData | None]:
    """
    Assemble the final (response, visualization) of an event sequence.

    Events after the first completion are ignored. Error and status events
    carry no text and are skipped.
    """
    state = StreamState()
    assembler = StreamAssembler(state)
    for event in events:
        if assembler.apply(event):
            break
    return state.response, state.visualization
