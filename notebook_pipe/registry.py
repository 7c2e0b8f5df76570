"""
SessionRegistry: one NotebookSession per open document.
"""

import json
import logging
from pathlib import PurePosixPath
from typing import Optional

from pydantic import ValidationError

from notebook_pipe import fenced
from notebook_pipe.channel import KernelChannel
from notebook_pipe.config import Settings
from notebook_pipe.notebook import (
    CellType,
    NotebookDocument,
    NotebookRecord,
    RawCellRecord,
    split_source,
)
from notebook_pipe.session import ChannelFactory, NotebookSession

logger = logging.getLogger(__name__)

FENCED = "fenced"
STRUCTURED = "structured"

_STRUCTURED_SUFFIXES = {".json", ".ipynb"}


def detect_format(uri: str) -> str:
    """Pick the document format from the uri's suffix."""
    suffix = PurePosixPath(uri.split("?", 1)[0]).suffix.lower()
    return STRUCTURED if suffix in _STRUCTURED_SUFFIXES else FENCED


def default_notebook() -> NotebookRecord:
    return NotebookRecord(cells=[RawCellRecord(source=["# header"], cell_type=CellType.MARKDOWN)])


def load_notebook(content: bytes, fmt: str, language: str) -> NotebookRecord:
    """
    Build the structured record for document bytes.

    Undecodable or unreadable documents yield a notebook holding a
    single default markdown cell.
    """
    if fmt == STRUCTURED:
        try:
            return NotebookRecord.from_json(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError, ValueError, AttributeError) as e:
            logger.warning("Could not read structured notebook, using a default cell: %s", e)
            return default_notebook()

    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("Could not decode document, using a default cell: %s", e)
        return default_notebook()
    return NotebookRecord(
        cells=fenced.parse(text, language),
        metadata={"language_info": {"name": language}},
    )


class SessionRegistry:
    """
    Maps document uris to their sessions.

    Documents are resolved on open; execution requests for unknown
    documents are ignored.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        channel_factory: ChannelFactory = KernelChannel,
    ):
        self.settings = settings or Settings()
        self._channel_factory = channel_factory
        self._sessions: dict[str, NotebookSession] = {}
        self._notebooks: dict[str, NotebookRecord] = {}

    def __contains__(self, uri: str) -> bool:
        return uri in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def open_document(self, uri: str, content: bytes, fmt: Optional[str] = None) -> NotebookSession:
        """
        Resolve a document and register its session.

        Args:
            uri: Document identity
            content: Raw document bytes
            fmt: "fenced" or "structured"; detected from the uri if omitted

        Returns:
            The session for the document
        """
        fmt = fmt or detect_format(uri)
        notebook = load_notebook(content, fmt, self.settings.language)
        language = notebook.language

        document = NotebookDocument(uri=uri, languages=[language])
        records: dict[int, RawCellRecord] = {}
        for record in notebook.cells:
            cell = document.create_cell(record.text(), language, record.cell_type)
            records[cell.handle] = record

        session = NotebookSession(
            document,
            records,
            settings=self.settings,
            channel_factory=self._channel_factory,
        )
        if self.settings.fill_outputs:
            session.fill_outputs(document)

        previous = self._sessions.get(uri)
        if previous is not None:
            previous.close()
        self._sessions[uri] = session
        self._notebooks[uri] = notebook
        logger.info("Opened %s (%s, %d cells)", uri, fmt, len(document.cells))
        return session

    def get(self, uri: str) -> Optional[NotebookSession]:
        return self._sessions.get(uri)

    def execute_cell(self, uri: str, handle: Optional[int] = None) -> Optional[int]:
        """
        Run one cell of a document, or fill its outputs when handle is None.

        Returns:
            The request id, or None when nothing was sent
        """
        session = self._sessions.get(uri)
        if session is None:
            logger.debug("execute_cell for unknown document %s", uri)
            return None
        document = session.document
        if handle is None:
            return session.execute(document)
        cell = document.find_cell(handle)
        if cell is None:
            logger.debug("execute_cell for unknown cell %d in %s", handle, uri)
            return None
        return session.execute(document, cell)

    def save(self, uri: str, fmt: str = STRUCTURED) -> Optional[str]:
        """
        Serialize a document's live cells.

        Structured output merges the cells into the notebook record
        loaded at open time. Returns None for unknown documents.
        """
        session = self._sessions.get(uri)
        if session is None:
            return None
        document = session.document

        cells = []
        for cell in document.cells:
            cells.append(RawCellRecord(
                source=split_source(cell.source) if cell.source else [],
                cell_type=cell.cell_type,
                outputs=[],
                metadata={"language_info": {"name": cell.language or "markdown"}},
            ))

        if fmt == FENCED:
            return fenced.serialize(cells, self.settings.language)
        notebook = self._notebooks.get(uri) or NotebookRecord()
        notebook.cells = cells
        return notebook.to_json()

    def close_document(self, uri: str) -> None:
        """Forget a document and stop its interpreter."""
        session = self._sessions.pop(uri, None)
        self._notebooks.pop(uri, None)
        if session is not None:
            session.close()
            logger.info("Closed %s", uri)

    def close_all(self) -> None:
        for uri in list(self._sessions):
            self.close_document(uri)
