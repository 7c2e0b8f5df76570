"""Pytest fixtures shared across all test modules."""

import sys
import textwrap

import pytest

from notebook_pipe.channel import ChannelError, ChannelState
from notebook_pipe.config import Settings
from notebook_pipe.protocol import decode_line


class FakeChannel:
    """In-memory stand-in for KernelChannel; records what the session sends."""

    instances: list["FakeChannel"] = []

    def __init__(self, settings, on_message, on_close=None):
        self.settings = settings
        self.on_message = on_message
        self.on_close = on_close
        self.state = ChannelState.IDLE
        self.sent: list[bytes] = []
        FakeChannel.instances.append(self)

    def start(self):
        self.state = ChannelState.CONNECTED

    def send(self, data: bytes):
        if self.state != ChannelState.CONNECTED:
            raise ChannelError("not connected")
        self.sent.append(data)

    def reply(self, line: str):
        self.on_message(decode_line(line))

    def exit(self):
        self.state = ChannelState.CLOSED
        if self.on_close is not None:
            self.on_close(self)

    def stop(self):
        self.exit()


@pytest.fixture
def fake_channel():
    """Channel factory that hands out FakeChannel instances."""
    FakeChannel.instances = []
    yield FakeChannel
    FakeChannel.instances = []


@pytest.fixture
def settings():
    return Settings(preload_script_uri="dist/widgets.js")


# A stand-in interpreter: connects back to the address given as its last
# argument, answers "<id>:<b64>" with an image line and a status line,
# and exits when the source is "exit".
FAKE_INTERPRETER = textwrap.dedent("""
    import base64, socket, sys
    address = sys.argv[-1]
    conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    conn.connect(address)
    stream = conn.makefile("rb")
    for raw in stream:
        head, _, body = raw.decode().strip().partition(":")
        source = base64.b64decode(body).decode()
        if source == "exit":
            break
        payload = base64.b64encode(source.encode()).decode()
        conn.sendall(f"image/png:{head};{payload}\\n".encode())
        conn.sendall(f"status:{head};ok\\n".encode())
    conn.close()
""")


@pytest.fixture
def fake_interpreter_script(tmp_path):
    """Path of the fake interpreter script."""
    script = tmp_path / "fake_interpreter.py"
    script.write_text(FAKE_INTERPRETER)
    return script


@pytest.fixture
def fake_interpreter(fake_interpreter_script):
    """Settings that launch the fake interpreter script."""
    return Settings(
        interpreter=sys.executable,
        interpreter_args=[str(fake_interpreter_script)],
        connect_timeout=10.0,
        stop_timeout=2.0,
        max_line_bytes=4096,
    )
