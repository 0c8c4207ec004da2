"""Interface the listener uses to reach the running application."""

from abc import ABC, abstractmethod
from typing import List


class MessageHandler(ABC):
    """
    Receives requests forwarded by newly started instances.

    The listener calls these from a worker thread, one call at a time.
    Implementations that touch UI state must marshal onto their UI thread.
    """

    @abstractmethod
    def handle_command_line_arguments(self, args: List[str]) -> None:
        """Merge another process's argv into the running session."""

    @abstractmethod
    def handle_focus(self) -> None:
        """Bring the main window to the foreground."""
