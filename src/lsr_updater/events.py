"""
Event sinks for human-readable progress and error messages.

Every component receives a sink at construction and reports through it, so a
presentation layer only has to implement two methods to render a run.
"""

import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger("lsr_updater")

INFO = "info"
ERROR = "error"


class EventSink:
    """
    Default sink: forwards events to the ``lsr_updater`` logger.

    Subclasses override log_info/log_error to render events elsewhere.
    """

    def __init__(self, target: Optional[logging.Logger] = None):
        self._logger = target or logger

    def log_info(self, message: str) -> None:
        self._logger.info(message)

    def log_error(self, message: str) -> None:
        self._logger.error(message)


class RecordingSink(EventSink):
    """Sink that keeps events in arrival order (and still logs them)."""

    def __init__(self, target: Optional[logging.Logger] = None):
        super().__init__(target)
        self.events: List[Tuple[str, str]] = []

    def log_info(self, message: str) -> None:
        self.events.append((INFO, message))
        super().log_info(message)

    def log_error(self, message: str) -> None:
        self.events.append((ERROR, message))
        super().log_error(message)

    @property
    def messages(self) -> List[str]:
        return [message for _, message in self.events]

    @property
    def errors(self) -> List[str]:
        return [message for level, message in self.events if level == ERROR]

    def clear(self) -> None:
        self.events.clear()


class CallbackSink(EventSink):
    """Sink that hands events to plain callables (UI hooks)."""

    def __init__(
        self,
        on_info: Callable[[str], None],
        on_error: Optional[Callable[[str], None]] = None,
    ):
        super().__init__()
        self._on_info = on_info
        self._on_error = on_error or on_info

    def log_info(self, message: str) -> None:
        self._on_info(message)

    def log_error(self, message: str) -> None:
        self._on_error(message)


def ensure_sink(sink: Optional[EventSink]) -> EventSink:
    """Return ``sink`` or a logging-backed default."""
    return sink if sink is not None else EventSink()
