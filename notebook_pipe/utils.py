"""
Utility functions for notebook-pipe.
"""

import os
import tempfile
from typing import Any

from rich.text import Text


def generate_channel_name(token: str, prefix: str) -> str:
    """
    Build a local channel address.

    Args:
        token: Random token, unique per channel
        prefix: Namespace prefix

    Returns:
        Unix socket path in the temp directory
    """
    return os.path.join(tempfile.gettempdir(), f"{prefix}-{token}.sock")


def _join(fragments: Any) -> str:
    if isinstance(fragments, list):
        return "".join(str(f) for f in fragments)
    return str(fragments)


def format_output(output: dict[str, Any]) -> str:
    """
    Format an output dictionary for display (plain text).

    Args:
        output: Output dictionary in nbformat shape

    Returns:
        Formatted string for display
    """
    data = output.get("data", {})
    if "image/png" in data:
        return f"<image/png, {len(_join(data['image/png']))} base64 chars>"
    if "text/html" in data:
        return _join(data["text/html"])
    if "text/plain" in data:
        return _join(data["text/plain"])
    return str(output)


def format_rich_output(output: dict[str, Any]):
    """
    Format an output dictionary as a Rich renderable.

    Args:
        output: Output dictionary in nbformat shape

    Returns:
        Rich renderable object for console display
    """
    output_type = output.get("output_type", "")

    if output_type == "execute_result":
        return Text(format_output(output), style="green")

    elif output_type == "display_data":
        return Text(format_output(output), style="cyan")

    return Text(str(output), style="dim")


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to max_length, adding ellipsis if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
