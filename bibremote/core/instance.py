"""Session state of the primary instance.

Incoming requests from other processes are applied here. A GUI front end
would subclass RunningInstance (or pass callbacks) to open libraries in tabs
and raise its main window.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from bibremote.remote.handler import MessageHandler

logger = logging.getLogger(__name__)


@dataclass
class ParsedArguments:
    """Command line split into library files and option flags."""
    files: List[str] = field(default_factory=list)
    options: List[str] = field(default_factory=list)


def parse_arguments(args: List[str]) -> ParsedArguments:
    """
    Split argv into files to open and everything else.

    A lone "--" ends option parsing; after it every argument is a file.
    """
    parsed = ParsedArguments()
    only_files = False
    for arg in args:
        if only_files:
            parsed.files.append(arg)
        elif arg == "--":
            only_files = True
        elif arg.startswith("-") and arg != "-":
            parsed.options.append(arg)
        elif arg:
            parsed.files.append(arg)
    return parsed


class RunningInstance(MessageHandler):
    """
    Primary-instance session receiving forwarded requests.

    Each request is applied under a lock, so argument lists from two
    processes never interleave.
    """

    def __init__(
        self,
        on_arguments: Optional[Callable[[List[str]], None]] = None,
        on_focus: Optional[Callable[[], None]] = None,
    ):
        self.on_arguments = on_arguments
        self.on_focus = on_focus

        self.open_files: List[str] = []
        self.received_arguments: List[List[str]] = []
        self.focus_requests: int = 0
        self._lock = threading.Lock()

    def handle_command_line_arguments(self, args: List[str]) -> None:
        with self._lock:
            args = list(args)
            self.received_arguments.append(args)
            for path in parse_arguments(args).files:
                if path not in self.open_files:
                    self.open_files.append(path)
            logger.info(f"Applied arguments from another instance: {args}")
            if self.on_arguments is not None:
                self.on_arguments(args)

    def handle_focus(self) -> None:
        with self._lock:
            self.focus_requests += 1
            logger.info("Focus requested by another instance")
            if self.on_focus is not None:
                self.on_focus()
