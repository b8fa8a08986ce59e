"""Terminal multiplexer capability and its implementations."""

from .fake import FakeTerminal
from .primitive import CommandResult, PaneInfo, TerminalPrimitive, is_pane_address
from .tmux import TmuxNotFoundError, TmuxTerminal

__all__ = [
    "CommandResult",
    "FakeTerminal",
    "PaneInfo",
    "TerminalPrimitive",
    "TmuxNotFoundError",
    "TmuxTerminal",
    "is_pane_address",
]
