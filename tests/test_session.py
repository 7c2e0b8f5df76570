"""
Tests for NotebookSession.
"""

import base64
import threading

import pytest

from notebook_pipe.channel import ChannelError, ChannelStartError, ChannelState
from notebook_pipe.notebook import (
    CellType,
    NotebookDocument,
    RawCellRecord,
    display_html_output,
)
from notebook_pipe.session import NotebookSession

SCRIPT = {"output_type": "display_data", "data": {"text/html": ['<script src="dist/widgets.js"></script>\n']}}


def _open(settings, channel_factory, records):
    """Build a document and session the way the registry does."""
    document = NotebookDocument(uri="file:///nb.md")
    mapping = {}
    for record in records:
        cell = document.create_cell(record.text(), cell_type=record.cell_type)
        mapping[cell.handle] = record
    return document, NotebookSession(document, mapping, settings=settings, channel_factory=channel_factory)


def _code(source, *outputs):
    return RawCellRecord(source=[source], cell_type=CellType.CODE, outputs=list(outputs))


def _html():
    return display_html_output(["<div>widget</div>"])


class TestSubmit:

    def test_channel_started_lazily(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("x = 1")])

        assert session.channel is None
        session.execute(document, document.cells[0])

        assert len(fake_channel.instances) == 1
        assert session.channel is fake_channel.instances[0]

    def test_request_line(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("x = 1")])
        request_id = session.execute(document, document.cells[0])

        assert request_id == 0
        assert fake_channel.instances[0].sent == [b"0:" + base64.b64encode(b"x = 1") + b"\n"]
        assert session.pending_requests == {0: document.cells[0].handle}

    def test_ids_increase_on_one_channel(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a"), _code("b")])
        ids = [session.execute(document, cell) for cell in document.cells * 2]

        assert ids == [0, 1, 2, 3]
        assert len(fake_channel.instances) == 1

    def test_start_failure_propagates(self, settings):
        class BrokenChannel:
            def __init__(self, *args, **kwargs):
                pass

            def start(self):
                raise ChannelStartError("interpreter exited")

        document, session = _open(settings, BrokenChannel, [_code("x")])

        with pytest.raises(ChannelStartError):
            session.execute(document, document.cells[0])
        assert session.channel is None
        assert session.pending_requests == {}

    def test_cell_added_after_open_is_registered(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        cell = document.create_cell("b = 2")
        session.execute(document, cell)

        assert session.cell_mapping[cell.handle].source == ["b = 2"]


class TestResponses:

    def test_image_prepended_to_requesting_cell(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a"), _code("b")])
        first, second = document.cells
        session.execute(document, first)
        session.execute(document, second)

        fake_channel.instances[0].reply("image/png:1;SECOND")

        assert first.outputs == []
        assert second.outputs == [{"output_type": "execute_result", "data": {"image/png": ["SECOND"]}}]

    def test_out_of_order_responses(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a"), _code("b"), _code("c")])
        for cell in document.cells:
            session.execute(document, cell)
        channel = fake_channel.instances[0]

        channel.reply("image/png:2;C")
        channel.reply("image/png:0;A")

        assert [o["data"]["image/png"] for o in document.cells[0].outputs] == [["A"]]
        assert document.cells[1].outputs == []
        assert [o["data"]["image/png"] for o in document.cells[2].outputs] == [["C"]]

    def test_latest_result_first(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        cell = document.cells[0]
        session.execute(document, cell)
        session.execute(document, cell)
        channel = fake_channel.instances[0]

        channel.reply("image/png:0;OLD")
        channel.reply("image/png:1;NEW")

        assert [o["data"]["image/png"][0] for o in cell.outputs] == ["NEW", "OLD"]

    def test_results_survive_reexecution(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        cell = document.cells[0]
        session.execute(document, cell)
        fake_channel.instances[0].reply("image/png:0;ONE")
        session.execute(document, cell)

        assert [o["data"]["image/png"][0] for o in cell.outputs] == ["ONE"]

    def test_unknown_request_id_is_dropped(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        session.execute(document, document.cells[0])

        fake_channel.instances[0].reply("image/png:42;X")

        assert document.cells[0].outputs == []

    def test_removed_cell_is_dropped(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        cell = document.cells[0]
        session.execute(document, cell)
        document.remove_cell(cell.handle)

        fake_channel.instances[0].reply("image/png:0;X")

        assert cell.outputs == []

    def test_status_and_malformed_lines_are_ignored(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        session.execute(document, document.cells[0])
        channel = fake_channel.instances[0]

        channel.reply("status:0;ok")
        channel.reply("garbage")
        channel.reply("image/png:zero;X")

        assert document.cells[0].outputs == []

    def test_listeners_see_every_message(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        seen = []
        session.add_listener(lambda message: seen.append(message.tag))
        session.execute(document, document.cells[0])

        fake_channel.instances[0].reply("status:0;ok")
        fake_channel.instances[0].reply("image/png:0;X")

        assert seen == ["status", "image/png"]


class TestChannelLifecycle:

    def test_orphaned_requests_after_close(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a"), _code("b")])
        for cell in document.cells:
            session.execute(document, cell)
        channel = fake_channel.instances[0]

        channel.exit()
        channel.reply("image/png:0;LATE")

        assert session.channel is None
        assert session.pending_requests == {}
        assert all(cell.outputs == [] for cell in document.cells)

    def test_new_channel_after_close_resets_ids(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        cell = document.cells[0]
        session.execute(document, cell)
        session.execute(document, cell)
        fake_channel.instances[0].exit()

        request_id = session.execute(document, cell)

        assert len(fake_channel.instances) == 2
        assert request_id == 0
        assert session.channel is fake_channel.instances[1]

    def test_close_from_stale_channel_is_ignored(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        session.execute(document, document.cells[0])
        first = fake_channel.instances[0]
        first.exit()
        session.execute(document, document.cells[0])

        first.exit()

        assert session.channel is fake_channel.instances[1]
        assert session.pending_requests == {0: document.cells[0].handle}

    def test_failed_send_leaves_no_pending_entry(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        handle = document.cells[0].handle
        session.execute(document, document.cells[0])
        fake_channel.instances[0].state = ChannelState.CLOSED

        with pytest.raises(ChannelError):
            session.execute(document, document.cells[0])

        assert session.pending_requests == {0: handle}

    def test_close_stops_channel(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        session.execute(document, document.cells[0])
        session.close()

        assert session.channel is None

    def test_close_without_channel(self, settings, fake_channel):
        _, session = _open(settings, fake_channel, [_code("a")])

        session.close()

        assert fake_channel.instances == []


class TestAugmentation:

    def test_preload_shown_at_submission(self, settings, fake_channel):
        html = _html()
        document, session = _open(settings, fake_channel, [_code("w", html)])
        cell = document.cells[0]
        session.execute(document, cell)

        assert cell.outputs == [SCRIPT, html]
        assert session.preload_injected

    def test_injected_once_per_session(self, settings, fake_channel):
        records = [_code("a"), _code("b", _html()), _code("c", _html()), _code("d", _html())]
        document, session = _open(settings, fake_channel, records)

        for cell in reversed(document.cells):
            session.execute(document, cell)

        scripts = [o for cell in document.cells for o in cell.outputs if o == SCRIPT]
        assert len(scripts) == 1
        assert document.cells[3].outputs[0] == SCRIPT

    def test_concurrent_executions_inject_once(self, settings, fake_channel):
        both_sending = threading.Barrier(2, timeout=5)

        class OverlappingChannel(fake_channel):
            def send(self, data):
                both_sending.wait()
                super().send(data)

        document, session = _open(settings, OverlappingChannel, [_code("a", _html()), _code("b", _html())])
        errors = []

        def run(cell):
            try:
                session.execute(document, cell)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(cell,)) for cell in document.cells]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert len(fake_channel.instances) == 1
        assert len(fake_channel.instances[0].sent) == 2
        scripts = [o for cell in document.cells for o in cell.outputs if o == SCRIPT]
        assert len(scripts) == 1
        assert session.preload_injected

    def test_no_injection_without_html(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a")])
        session.execute(document, document.cells[0])

        assert not session.preload_injected
        assert document.cells[0].outputs == []


class TestFillOutputs:

    def test_fill_pass_does_not_start_interpreter(self, settings, fake_channel):
        html = _html()
        records = [
            RawCellRecord(source=["# A"], cell_type=CellType.MARKDOWN),
            _code("a", html),
            _code("b", _html()),
        ]
        document, session = _open(settings, fake_channel, records)

        assert session.execute(document) is None

        assert fake_channel.instances == []
        assert document.cells[1].outputs == [SCRIPT, html]
        assert len(document.cells[2].outputs) == 1
        assert session.outputs_filled

    def test_fill_pass_runs_once(self, settings, fake_channel):
        document, session = _open(settings, fake_channel, [_code("a", _html())])
        session.execute(document)
        document.cells[0].outputs = []

        session.execute(document)

        assert document.cells[0].outputs == []
