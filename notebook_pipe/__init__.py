"""
notebook-pipe: run notebook cells against a long-lived interpreter process.

This package provides:
- A fenced-text notebook format and its structured (JSON) counterpart
- A kernel channel that launches an interpreter and talks to it over a private socket
- Per-document sessions that correlate results with the cells that requested them
"""

from notebook_pipe.notebook import Cell, CellType, NotebookDocument, NotebookRecord, RawCellRecord
from notebook_pipe.channel import ChannelError, ChannelStartError, ChannelState, KernelChannel
from notebook_pipe.session import NotebookSession
from notebook_pipe.registry import SessionRegistry
from notebook_pipe.config import Settings

__version__ = "0.1.0"
__all__ = [
    "Cell",
    "CellType",
    "NotebookDocument",
    "NotebookRecord",
    "RawCellRecord",
    "ChannelError",
    "ChannelStartError",
    "ChannelState",
    "KernelChannel",
    "NotebookSession",
    "SessionRegistry",
    "Settings",
]
