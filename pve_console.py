"""Operator-facing console output for the Proxmox maintenance tool.

Status messages carry a coloured severity tag (``[INFO]``, ``[SUCCESS]``,
``[WARNING]``, ``[ERROR]``).  Messages are printed verbatim: square brackets in
command output or file names are never interpreted as rich markup.
"""
from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.text import Text

LOG = logging.getLogger(__name__)

_TAG_STYLES = {
    "INFO": "blue",
    "SUCCESS": "green",
    "WARNING": "bold yellow",
    "ERROR": "red",
}


class StatusConsole:
    """Thin wrapper around :class:`rich.console.Console`."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console(highlight=False, soft_wrap=True)

    def _tagged(self, tag: str, message: str) -> None:
        text = Text()
        text.append(f"[{tag}]", style=_TAG_STYLES[tag])
        text.append(" ")
        text.append(message)
        self.console.print(text)
        LOG.debug("[%s] %s", tag, message)

    def info(self, message: str) -> None:
        self._tagged("INFO", message)

    def success(self, message: str) -> None:
        self._tagged("SUCCESS", message)

    def warning(self, message: str) -> None:
        self._tagged("WARNING", message)

    def error(self, message: str) -> None:
        self._tagged("ERROR", message)

    def header(self, title: str, style: str = "blue") -> None:
        self.console.print(Text(title, style=style))

    def line(self, message: str = "", style: Optional[str] = None) -> None:
        self.console.print(Text(message, style=style or ""))

    def blank(self) -> None:
        self.console.print()
