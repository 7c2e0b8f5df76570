"""
Notebook data model: raw cell records, the structured notebook form,
and the live document/cell objects an editor works with.
"""

import json
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


DEFAULT_LANGUAGE = "python"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class CellType(str, Enum):
    """Type of notebook cell."""
    CODE = "code"
    MARKDOWN = "markdown"


def split_source(text: str) -> list[str]:
    """
    Split cell text into source lines.

    Every line except the last keeps an explicit trailing newline,
    so joining the result with "" restores the text.
    """
    lines = _LINE_BREAK.split(text)
    return [line + "\n" for line in lines[:-1]] + [lines[-1]]


def display_html_output(fragments: list[str]) -> dict[str, Any]:
    """Build a display_data output carrying HTML fragments."""
    return {
        "output_type": "display_data",
        "data": {"text/html": list(fragments)},
    }


def image_result_output(image_b64: str) -> dict[str, Any]:
    """Build an execute_result output carrying base64 PNG data."""
    return {
        "output_type": "execute_result",
        "data": {"image/png": [image_b64]},
    }


class RawCellRecord(BaseModel):
    """Serialization-oriented backing data of a cell."""
    source: list[str] = Field(default_factory=list)
    cell_type: CellType = CellType.MARKDOWN
    outputs: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def text(self) -> str:
        """
        Join source lines into the cell text.

        Lines parsed from the fenced form carry no newline while lines
        from the structured form do; a newline is inserted only where
        one is missing.
        """
        if not self.source:
            return ""
        head = [line if line.endswith("\n") else line + "\n" for line in self.source[:-1]]
        return "".join(head) + self.source[-1]

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {"source": list(self.source)}
        if self.metadata:
            data["metadata"] = self.metadata
        data["cell_type"] = self.cell_type.value
        if self.cell_type == CellType.CODE:
            data["outputs"] = list(self.outputs)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RawCellRecord":
        """Create from dictionary."""
        source = data.get("source", [])
        if isinstance(source, str):
            source = split_source(source) if source else []
        return cls(
            source=source,
            cell_type=CellType(data.get("cell_type", "markdown")),
            outputs=data.get("outputs") or [],
            metadata=data.get("metadata", {}),
        )


class NotebookRecord(BaseModel):
    """
    Structured notebook form.

    An ordered list of cell records plus top-level metadata, where
    metadata.language_info.name names the notebook language.
    """

    cells: list[RawCellRecord] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def language(self) -> str:
        info = self.metadata.get("language_info")
        if not isinstance(info, dict):
            return DEFAULT_LANGUAGE
        name = info.get("name")
        return name if isinstance(name, str) and name else DEFAULT_LANGUAGE

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {"cells": [cell.to_dict() for cell in self.cells]}
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "NotebookRecord":
        """Create from dictionary."""
        return cls(
            cells=[RawCellRecord.from_dict(c) for c in data.get("cells", [])],
            metadata=data.get("metadata", {}),
        )

    def to_json(self, indent: int = 4) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, text: str) -> "NotebookRecord":
        return cls.from_dict(json.loads(text))


class Cell(BaseModel):
    """A live cell as shown by the editor."""
    handle: int
    cell_type: CellType = CellType.CODE
    source: str = ""
    language: str = DEFAULT_LANGUAGE
    outputs: list[dict[str, Any]] = Field(default_factory=list)


class NotebookDocument(BaseModel):
    """
    Live document model.

    Owns the ordered cell list and hands out cell handles. Handles are
    never reused within one document.
    """

    uri: str
    cells: list[Cell] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=lambda: [DEFAULT_LANGUAGE])
    next_handle: int = 0

    def _new_cell(
        self,
        source: str,
        language: str,
        cell_type: CellType,
        outputs: Optional[list[dict[str, Any]]],
    ) -> Cell:
        cell = Cell(
            handle=self.next_handle,
            cell_type=cell_type,
            source=source,
            language=language,
            outputs=list(outputs or []),
        )
        self.next_handle += 1
        return cell

    def create_cell(
        self,
        source: str,
        language: str = DEFAULT_LANGUAGE,
        cell_type: CellType = CellType.CODE,
        outputs: Optional[list[dict[str, Any]]] = None,
    ) -> Cell:
        """Create a cell and append it to the document."""
        cell = self._new_cell(source, language, cell_type, outputs)
        self.cells.append(cell)
        return cell

    def insert_cell(
        self,
        index: int,
        source: str = "",
        language: str = DEFAULT_LANGUAGE,
        cell_type: CellType = CellType.CODE,
    ) -> Cell:
        """Insert a new empty-output cell at a specific index."""
        cell = self._new_cell(source, language, cell_type, None)
        self.cells.insert(index, cell)
        return cell

    def remove_cell(self, handle: int) -> Optional[Cell]:
        """Remove a cell by handle."""
        for i, cell in enumerate(self.cells):
            if cell.handle == handle:
                return self.cells.pop(i)
        return None

    def find_cell(self, handle: int) -> Optional[Cell]:
        """Get a cell by handle, or None if it is no longer in the document."""
        for cell in self.cells:
            if cell.handle == handle:
                return cell
        return None
