"""
Fenced text format: a markdown document whose fenced code blocks are
the code cells of the notebook.
"""

from notebook_pipe.notebook import CellType, DEFAULT_LANGUAGE, RawCellRecord


FENCE = "```"


def open_fence(language: str = DEFAULT_LANGUAGE) -> str:
    """Opening fence token for code blocks in the given language."""
    return f"{FENCE}{language}"


def parse(text: str, language: str = DEFAULT_LANGUAGE) -> list[RawCellRecord]:
    """
    Parse fenced text into an ordered list of cell records.

    Markdown between code blocks becomes a markdown cell, even when
    empty, so markdown and code cells alternate. An unterminated code
    block at the end of the text is kept as the final code cell.

    Args:
        text: Document text
        language: Language named by the opening fence

    Returns:
        Cell records in document order
    """
    opener = open_fence(language)
    lines = text.split("\n") if text else []

    cells: list[RawCellRecord] = []
    markdown_lines: list[str] = []
    code_lines: list[str] = []
    in_code = False

    for line in lines:
        if not in_code and line.startswith(opener):
            cells.append(RawCellRecord(source=markdown_lines, cell_type=CellType.MARKDOWN))
            markdown_lines = []
            in_code = True
        elif in_code and line.startswith(FENCE):
            cells.append(RawCellRecord(source=code_lines, cell_type=CellType.CODE, outputs=[]))
            code_lines = []
            in_code = False
        elif in_code:
            code_lines.append(line)
        else:
            markdown_lines.append(line)

    if in_code:
        cells.append(RawCellRecord(source=code_lines, cell_type=CellType.CODE, outputs=[]))
    else:
        cells.append(RawCellRecord(source=markdown_lines, cell_type=CellType.MARKDOWN))

    return cells


def serialize(cells: list[RawCellRecord], language: str = DEFAULT_LANGUAGE) -> str:
    """
    Render cell records back to fenced text.

    Source lines are written without their own trailing newline; every
    line but the last in the document is newline-terminated, so lines
    parsed back never carry a trailing newline of their own. A trailing code cell is left
    unterminated, the way parse reads an unclosed block.
    """
    lines: list[str] = []
    for index, cell in enumerate(cells):
        source = [line[:-1] if line.endswith("\n") else line for line in cell.source]
        if cell.cell_type == CellType.CODE:
            lines.append(open_fence(language))
            lines.extend(source)
            if index < len(cells) - 1:
                lines.append(FENCE)
        else:
            lines.extend(source)
    return "\n".join(lines)
