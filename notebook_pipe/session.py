"""
NotebookSession: runs one open document's cells against an interpreter.
"""

import logging
import threading
from typing import Callable, Optional

from notebook_pipe.augment import OutputAugmenter
from notebook_pipe.channel import ChannelError, KernelChannel
from notebook_pipe.config import Settings
from notebook_pipe.notebook import (
    Cell,
    NotebookDocument,
    RawCellRecord,
    image_result_output,
    split_source,
)
from notebook_pipe.protocol import KernelMessage, MessageKind, encode_request

logger = logging.getLogger(__name__)

ChannelFactory = Callable[..., KernelChannel]
MessageListener = Callable[[KernelMessage], None]


class NotebookSession:
    """
    Orchestrates execution for one open document.

    The session keeps the raw record behind every live cell, starts a
    KernelChannel on first execution and correlates responses with
    cells through the request ids it hands out. Results are prepended
    to a cell's outputs so the latest one is shown first.

    All tables and the preload flag are guarded by one lock; responses
    arrive on the channel's reader thread.
    """

    def __init__(
        self,
        document: NotebookDocument,
        records: dict[int, RawCellRecord],
        settings: Optional[Settings] = None,
        channel_factory: ChannelFactory = KernelChannel,
    ):
        self.document = document
        self.settings = settings or Settings()
        self.augmenter = OutputAugmenter(self.settings.preload_script_uri)
        self.cell_mapping: dict[int, RawCellRecord] = dict(records)
        self.pending_requests: dict[int, int] = {}
        self.next_request_id = 0
        self.preload_injected = False
        self.outputs_filled = False
        self._channel_factory = channel_factory
        self._channel: Optional[KernelChannel] = None
        self._listeners: list[MessageListener] = []
        self._lock = threading.RLock()

    @property
    def channel(self) -> Optional[KernelChannel]:
        return self._channel

    def add_listener(self, listener: MessageListener) -> None:
        """Register a callback invoked with every decoded message."""
        self._listeners.append(listener)

    def execute(self, document: NotebookDocument, cell: Optional[Cell] = None) -> Optional[int]:
        """
        Execute a cell, or fill stored outputs when no cell is given.

        Args:
            document: Live document the cell belongs to
            cell: Cell to run; None runs the one-time fill pass

        Returns:
            The request id sent for the cell, or None for the fill pass

        Raises:
            ChannelStartError: if a new interpreter could not be started
        """
        self.document = document
        if cell is None:
            self.fill_outputs(document)
            return None

        request_id = self.submit(cell)
        with self._lock:
            self._reflect(cell)
        return request_id

    def submit(self, cell: Cell) -> int:
        """Send the cell's source to the interpreter without waiting for a result."""
        channel = self._ensure_channel()
        with self._lock:
            request_id = self.next_request_id
            self.next_request_id += 1
            self.pending_requests[request_id] = cell.handle
        try:
            channel.send(encode_request(request_id, cell.source))
        except ChannelError:
            with self._lock:
                self.pending_requests.pop(request_id, None)
            raise
        logger.debug("Sent request %d for cell %d", request_id, cell.handle)
        return request_id

    def fill_outputs(self, document: NotebookDocument) -> None:
        """Show every cell's stored outputs. Runs at most once per session."""
        with self._lock:
            if self.outputs_filled:
                return
            for cell in document.cells:
                self._reflect(cell)
            self.outputs_filled = True

    def on_response(self, message: KernelMessage) -> None:
        """Merge a decoded message into the cell that requested it."""
        for listener in list(self._listeners):
            listener(message)

        if message.kind == MessageKind.MALFORMED:
            logger.debug("Ignoring malformed line: %r", message.payload[:80])
            return
        if message.kind != MessageKind.IMAGE_PNG:
            logger.debug("%s: %s", message.tag, message.payload)
            return

        with self._lock:
            handle = self.pending_requests.get(message.request_id)
            if handle is None:
                logger.debug("Dropping result for unknown request %d", message.request_id)
                return
            cell = self.document.find_cell(handle)
            if cell is None:
                logger.debug("Dropping result for removed cell %d", handle)
                return
            record = self._record_for(cell)
            record.outputs = [image_result_output(message.data), *record.outputs]
            cell.outputs = list(record.outputs)

    def close(self) -> None:
        """Stop the interpreter, if one is running."""
        with self._lock:
            channel = self._channel
        if channel is not None:
            channel.stop()

    def _ensure_channel(self) -> KernelChannel:
        with self._lock:
            if self._channel is not None:
                return self._channel
            channel = self._channel_factory(
                self.settings,
                on_message=self.on_response,
                on_close=self._on_channel_closed,
            )
            channel.start()
            self._channel = channel
            self.next_request_id = 0
            return channel

    def _on_channel_closed(self, channel: KernelChannel) -> None:
        with self._lock:
            if self._channel is not channel:
                return
            self._channel = None
            if self.pending_requests:
                logger.warning(
                    "Interpreter closed with %d request(s) outstanding",
                    len(self.pending_requests),
                )
            self.pending_requests.clear()

    def _record_for(self, cell: Cell) -> RawCellRecord:
        record = self.cell_mapping.get(cell.handle)
        if record is None:
            record = RawCellRecord(
                source=split_source(cell.source) if cell.source else [],
                cell_type=cell.cell_type,
                outputs=list(cell.outputs),
            )
            self.cell_mapping[cell.handle] = record
        return record

    def _reflect(self, cell: Cell) -> None:
        record = self._record_for(cell)
        self.preload_injected = self.augmenter.apply(record, self.preload_injected)
        cell.outputs = list(record.outputs)
