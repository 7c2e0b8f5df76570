"""
Interpreter-side agent.

Launched by KernelChannel as ``python -m notebook_pipe.agent ADDRESS``.
Connects back to the session's socket, runs every request in a
persistent NotebookKernel and answers with one image/png line per PNG
output followed by a status line.
"""

import logging
import os
import socket
import sys
from typing import Optional

import click

from notebook_pipe.kernel import ExecutionResult, NotebookKernel
from notebook_pipe.protocol import decode_request, encode_image, encode_response, encode_status

logger = logging.getLogger(__name__)


def echo_streams(result: ExecutionResult) -> None:
    """Write captured stdout/stderr to the agent's own terminal."""
    for stream in result.streams():
        click.echo(stream.get("text", ""), nl=False, err=stream.get("name") == "stderr")


def respond(kernel: NotebookKernel, line: str) -> list[bytes]:
    """
    Execute one request line and build the response lines.

    Args:
        kernel: Kernel to run the code in
        line: Raw request line

    Returns:
        Encoded response lines, images first, status last
    """
    try:
        request_id, source = decode_request(line)
    except ValueError as e:
        logger.warning("Bad request: %s", e)
        return [encode_response("error", str(e))]

    result = kernel.execute_cell(source)
    echo_streams(result)

    lines = [encode_image(request_id, image) for image in result.images()]
    status = "ok" if result.success else f"error {result.error}"
    lines.append(encode_status(request_id, status.replace("\n", " ")))
    return lines


def serve(address: str, kernel: Optional[NotebookKernel] = None) -> None:
    """Connect to address and answer requests until the session hangs up."""
    kernel = kernel or NotebookKernel()
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
        conn.connect(address)
        logger.info("Connected to %s", address)
        with conn.makefile("rb") as stream:
            for raw in stream:
                if not raw.strip():
                    continue
                for response in respond(kernel, raw.decode("utf-8")):
                    conn.sendall(response)


@click.command()
@click.argument("address")
@click.option("--project", type=click.Path(file_okay=False), default=None,
              help="Environment directory to run in")
@click.option("--verbose", "-v", is_flag=True, help="Log protocol traffic to stderr")
def main(address: str, project: Optional[str], verbose: bool):
    """Notebook kernel agent: execute cells sent over ADDRESS."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    if project:
        os.chdir(project)
        sys.path.insert(0, os.path.abspath(project))
    serve(address)


if __name__ == "__main__":
    main()
