"""
KernelChannel: one interpreter subprocess and the private socket used to talk to it.
"""

import contextlib
import logging
import os
import socket
import subprocess
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Optional

from notebook_pipe.config import Settings, get_environment_path, get_interpreter_path
from notebook_pipe.protocol import KernelMessage, decode_line
from notebook_pipe.utils import generate_channel_name

logger = logging.getLogger(__name__)

_ACCEPT_POLL = 0.1


class ChannelError(RuntimeError):
    """Raised when the channel cannot be used."""


class ChannelStartError(ChannelError):
    """Raised when the interpreter never connects back."""


class ChannelState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    CLOSED = "closed"


class KernelChannel:
    """
    Owns an interpreter subprocess and a Unix socket connected to it.

    The channel listens on a freshly generated address, launches the
    interpreter with that address as its last argument and waits for
    it to connect back. Inbound lines are decoded on a reader thread
    and passed to on_message. When the process exits the channel
    closes for good and on_close is called; a closed channel is never
    restarted.
    """

    def __init__(
        self,
        settings: Settings,
        on_message: Callable[[KernelMessage], None],
        on_close: Optional[Callable[["KernelChannel"], None]] = None,
    ):
        self.settings = settings
        self.on_message = on_message
        self.on_close = on_close
        self.state = ChannelState.IDLE
        self.address: Optional[str] = None
        self._server: Optional[socket.socket] = None
        self._socket: Optional[socket.socket] = None
        self._process: Optional[subprocess.Popen] = None
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None
        self._monitor: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        process = self._process
        return process.pid if process is not None else None

    def _launch_args(self) -> list[str]:
        args = [get_interpreter_path(self.settings), *self.settings.interpreter_args]
        env_path = get_environment_path(self.settings)
        if env_path:
            args.append(f"--project={env_path}")
        args.append(self.address)
        return args

    def start(self) -> None:
        """
        Launch the interpreter and block until it connects.

        Raises:
            ChannelError: if the channel was already started
            ChannelStartError: if listening fails, the process cannot be
                launched, exits early, or does not connect in time
        """
        with self._state_lock:
            if self.state != ChannelState.IDLE:
                raise ChannelError(f"Channel cannot be started from state {self.state.value}")
            self.state = ChannelState.STARTING

        self.address = generate_channel_name(uuid.uuid4().hex[:16], self.settings.channel_prefix)
        try:
            self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self._server.bind(self.address)
            self._server.listen(1)
        except OSError as e:
            self._abort()
            raise ChannelStartError(f"Could not listen on {self.address}: {e}") from e
        logger.debug("Listening on %s", self.address)

        args = self._launch_args()
        try:
            self._process = subprocess.Popen(args, cwd=get_environment_path(self.settings))
        except OSError as e:
            self._abort()
            raise ChannelStartError(f"Could not launch interpreter {args[0]}: {e}") from e
        logger.info("Started interpreter pid=%d: %s", self._process.pid, " ".join(args))

        conn = self._accept()
        conn.settimeout(None)
        with self._state_lock:
            self._socket = conn
            self.state = ChannelState.CONNECTED
        self._close_server()
        logger.info("Interpreter pid=%d connected", self._process.pid)

        self._reader = threading.Thread(target=self._read_loop, args=(conn,), daemon=True)
        self._reader.start()
        self._monitor = threading.Thread(target=self._watch_process, args=(self._process,), daemon=True)
        self._monitor.start()

    def _accept(self) -> socket.socket:
        deadline = time.monotonic() + self.settings.connect_timeout
        self._server.settimeout(_ACCEPT_POLL)
        while True:
            try:
                conn, _ = self._server.accept()
                return conn
            except socket.timeout:
                pass
            except OSError as e:
                self._abort()
                raise ChannelStartError(f"Accept failed on {self.address}: {e}") from e

            returncode = self._process.poll()
            if returncode is not None:
                self._abort()
                raise ChannelStartError(f"Interpreter exited with code {returncode} before connecting")
            if time.monotonic() > deadline:
                self._abort()
                raise ChannelStartError(
                    f"Interpreter did not connect within {self.settings.connect_timeout:g}s"
                )

    def send(self, data: bytes) -> None:
        """
        Write one protocol line.

        Raises:
            ChannelError: if the channel is not connected or the write fails
        """
        with self._write_lock:
            conn = self._socket
            if self.state != ChannelState.CONNECTED or conn is None:
                raise ChannelError(f"Channel is {self.state.value}, cannot send")
            try:
                conn.sendall(data)
            except OSError as e:
                raise ChannelError(f"Write to interpreter failed: {e}") from e

    def _read_loop(self, conn: socket.socket) -> None:
        limit = self.settings.max_line_bytes
        with conn.makefile("rb") as stream:
            while True:
                try:
                    raw = stream.readline(limit + 1)
                except (OSError, ValueError):
                    break
                if not raw:
                    break

                if len(raw) > limit and not raw.endswith(b"\n"):
                    logger.warning("Discarding protocol line longer than %d bytes", limit)
                    while raw and not raw.endswith(b"\n"):
                        try:
                            raw = stream.readline(limit + 1)
                        except (OSError, ValueError):
                            return
                    continue

                message = decode_line(raw.decode("utf-8", errors="replace"))
                logger.debug("%s: %s", message.tag or message.kind.value, message.payload[:80])
                try:
                    self.on_message(message)
                except Exception:
                    logger.exception("Message handler failed for %s line", message.kind.value)
        logger.debug("Reader for %s finished", self.address)

    def _watch_process(self, process: subprocess.Popen) -> None:
        returncode = process.wait()
        logger.info("Interpreter pid=%d exited with code %s", process.pid, returncode)
        self._close()

    def _close_server(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        if self.address:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.address)

    def _abort(self) -> None:
        """Tear down a channel that never connected."""
        process = self._process
        if process is not None and process.poll() is None:
            process.kill()
            process.wait()
        self._close_server()
        self._process = None
        with self._state_lock:
            self.state = ChannelState.CLOSED

    def _close(self) -> None:
        with self._state_lock:
            if self.state == ChannelState.CLOSED:
                return
            self.state = ChannelState.CLOSED
            conn, self._socket = self._socket, None
            self._process = None

        if conn is not None:
            with contextlib.suppress(OSError):
                conn.shutdown(socket.SHUT_RDWR)
            conn.close()
        self._close_server()

        if self.on_close is not None:
            self.on_close(self)

    def stop(self) -> None:
        """Terminate the interpreter; the channel closes once it has exited."""
        process = self._process
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.settings.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Interpreter pid=%d ignored terminate, killing", process.pid)
                process.kill()
                process.wait()
        monitor = self._monitor
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=self.settings.stop_timeout)
        self._close()
