"""
OutputAugmenter: injects the widget support script ahead of HTML outputs.
"""

import logging
from typing import Any

from notebook_pipe.notebook import RawCellRecord, display_html_output

logger = logging.getLogger(__name__)


def has_html_display(outputs: list[dict[str, Any]]) -> bool:
    """True if any output is display_data with a text/html payload."""
    return any(
        output.get("output_type") == "display_data" and "text/html" in (output.get("data") or {})
        for output in outputs
    )


class OutputAugmenter:
    """Prepends a script-loading output to cells that render HTML."""

    def __init__(self, script_uri: str):
        self.script_uri = script_uri

    def should_inject(self, record: RawCellRecord) -> bool:
        return has_html_display(record.outputs)

    def inject(self, record: RawCellRecord) -> None:
        preload = display_html_output([f'<script src="{self.script_uri}"></script>\n'])
        record.outputs = [preload, *record.outputs]

    def apply(self, record: RawCellRecord, already_injected: bool) -> bool:
        """
        Inject into record unless a previous cell already received the script.

        Returns:
            The new value of the injected flag
        """
        if already_injected:
            return True
        if not self.should_inject(record):
            return False
        self.inject(record)
        logger.debug("Injected preload script %s", self.script_uri)
        return True
