"""
NotebookKernel: IPython shell used on the interpreter side of the channel.
"""

import base64
from typing import Any, Optional
from dataclasses import dataclass, field

from IPython.core.interactiveshell import InteractiveShell
from IPython.utils.capture import capture_output


def _build_mime_bundle(obj) -> dict:
    """
    Build a MIME bundle dictionary from an object.

    Checks for IPython rich display methods and builds a dict
    mapping MIME types to their representations.
    """
    data = {"text/plain": repr(obj)}
    for mime_type, method_name in [
        ("text/html", "_repr_html_"),
        ("text/markdown", "_repr_markdown_"),
        ("application/json", "_repr_json_"),
        ("image/svg+xml", "_repr_svg_"),
        ("image/png", "_repr_png_"),
    ]:
        method = getattr(obj, method_name, None)
        if callable(method):
            value = method()
            if value is not None:
                data[mime_type] = value
    return data


def png_payload(value: Any) -> str:
    """Base64 text for a PNG value, which IPython gives as bytes or base64 str."""
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return str(value).replace("\n", "")


@dataclass
class ExecutionResult:
    """Result of executing a code cell."""
    success: bool
    outputs: list[dict[str, Any]] = field(default_factory=list)
    execution_count: int = 0
    error: Optional[str] = None

    def images(self) -> list[str]:
        """Base64 PNG payloads of all rich outputs, in output order."""
        return [
            png_payload(output["data"]["image/png"])
            for output in self.outputs
            if "image/png" in output.get("data", {})
        ]

    def streams(self) -> list[dict[str, Any]]:
        return [o for o in self.outputs if o.get("output_type") == "stream"]


class NotebookKernel:
    """
    Persistent IPython kernel that maintains execution state.

    This kernel wraps IPython's InteractiveShell to provide:
    - Persistent namespace across cell executions
    - Output capture (stdout, stderr, rich display)
    """

    def __init__(self):
        """Initialize the kernel with a fresh IPython shell."""
        self.ip = InteractiveShell.instance()
        self.execution_count = 0
        self.ip.user_ns["__notebook__"] = True

    def execute_cell(self, code: str) -> ExecutionResult:
        """
        Execute code and return result with outputs.

        Args:
            code: Python code to execute

        Returns:
            ExecutionResult with outputs and status
        """
        self.execution_count += 1
        outputs = []
        error = None

        try:
            with capture_output() as captured:
                result = self.ip.run_cell(code, silent=False)

            if captured.stdout:
                outputs.append({"output_type": "stream", "name": "stdout", "text": captured.stdout})
            if captured.stderr:
                outputs.append({"output_type": "stream", "name": "stderr", "text": captured.stderr})

            for display_output in captured.outputs:
                outputs.append({
                    "output_type": "display_data",
                    "data": dict(getattr(display_output, "data", {}) or {}),
                })

            if result.success:
                if result.result is not None:
                    outputs.append({
                        "output_type": "execute_result",
                        "data": _build_mime_bundle(result.result),
                        "execution_count": self.execution_count,
                    })
            else:
                exc = result.error_in_exec or result.error_before_exec
                if exc is not None:
                    error = f"{type(exc).__name__}: {exc}"
                    outputs.append({
                        "output_type": "error",
                        "ename": type(exc).__name__,
                        "evalue": str(exc),
                        "traceback": [],
                    })

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            outputs.append({
                "output_type": "error",
                "ename": type(e).__name__,
                "evalue": str(e),
                "traceback": [],
            })

        return ExecutionResult(
            success=error is None,
            outputs=outputs,
            execution_count=self.execution_count,
            error=error,
        )
