import asyncio
import math

import pytest

from conftest import FakeSession, RecordingConnection, settle
from transfer.engine import TransferEngine
from transfer.models import ReceivedFile


def make_engine(connection=None, chunk_size=4096, **kwargs):
    session = FakeSession(connection)
    kwargs.setdefault("progress_reset_delay", 0.01)
    engine = TransferEngine(session, chunk_size=chunk_size, **kwargs)
    return session, engine


async def replay(engine: TransferEngine, messages: list[dict]) -> None:
    for message in messages:
        await engine.handle_message(message)


@pytest.mark.asyncio
async def test_batch_scenario_three_files(make_file, recorder):
    conn = RecordingConnection()
    _, engine = make_engine(conn, chunk_size=4096)
    engine.on_event(recorder)
    paths = [make_file("a.bin", 10000), make_file("b.txt", 5000), make_file("c.png", 15000)]

    assert await engine.send_batch(paths)

    starts = [d["fileName"] for d in recorder.of("transfer-start")]
    assert starts == ["a.bin", "b.txt", "c.png"]
    assert len(conn.chunks()) == 3 + 2 + 4
    assert recorder.progress()[-1] == 100

    await settle()
    progress = recorder.progress()
    assert progress[-2:] == [100, 0]


@pytest.mark.asyncio
async def test_each_file_is_meta_then_ordered_chunks(make_file):
    conn = RecordingConnection()
    _, engine = make_engine(conn, chunk_size=1000)
    path = make_file("report.pdf", 3500)

    await engine.send_batch([path])

    meta, *chunks = conn.sent
    assert meta == {
        "type": "file-meta",
        "name": "report.pdf",
        "size": 3500,
        "mimeType": "application/pdf",
    }
    assert [c["chunk"] for c in chunks] == [0, 1, 2, 3]
    assert [c["final"] for c in chunks] == [False, False, False, True]
    assert [len(c["data"]) for c in chunks] == [1000, 1000, 1000, 500]


@pytest.mark.parametrize("size", [1, 4095, 4096, 4097, 3 * 4096])
@pytest.mark.asyncio
async def test_chunk_count_and_final_flag(make_file, size):
    conn = RecordingConnection()
    _, engine = make_engine(conn, chunk_size=4096)

    await engine.send_batch([make_file("f.bin", size)])

    chunks = conn.chunks()
    assert len(chunks) == math.ceil(size / 4096)
    assert [c["final"] for c in chunks].count(True) == 1
    assert chunks[-1]["final"] is True


@pytest.mark.asyncio
async def test_empty_file_sends_single_final_chunk(make_file, recorder):
    conn = RecordingConnection()
    _, engine = make_engine(conn)
    engine.on_event(recorder)

    assert await engine.send_batch([make_file("empty.txt", 0)])

    chunks = conn.chunks()
    assert len(chunks) == 1
    assert chunks[0]["data"] == b"" and chunks[0]["final"] is True
    assert recorder.progress()[0] == 100


@pytest.mark.asyncio
async def test_outbound_progress_is_monotonic(make_file, recorder):
    conn = RecordingConnection()
    _, engine = make_engine(conn, chunk_size=1024)
    engine.on_event(recorder)

    await engine.send_batch([make_file("big.bin", 50_000)])
    await settle()

    progress = recorder.progress()
    assert progress[-1] == 0
    climbing = progress[:-1]
    assert climbing == sorted(climbing)
    assert climbing[-1] == 100


@pytest.mark.asyncio
async def test_send_without_connection_reports_error(make_file, recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)

    assert not await engine.send_batch([make_file("a.bin", 10)])
    assert recorder.of("transfer-error") == [{"fileName": "files", "error": "No connection"}]


@pytest.mark.asyncio
async def test_send_failure_aborts_rest_of_batch(make_file, recorder):
    # meta + 2 chunks of the first file succeed, then the channel breaks
    conn = RecordingConnection(fail_after=3)
    _, engine = make_engine(conn, chunk_size=4096)
    engine.on_event(recorder)
    paths = [make_file("a.bin", 10000), make_file("b.bin", 5000)]

    assert not await engine.send_batch(paths)

    errors = recorder.of("transfer-error")
    assert len(errors) == 1
    assert errors[0]["fileName"] == "a.bin"
    assert "reset" in errors[0]["error"]
    assert recorder.progress()[-1] == 0
    assert [d["fileName"] for d in recorder.of("transfer-start")] == ["a.bin"]
    assert recorder.of("transfer-complete") == []
    assert conn.open


@pytest.mark.asyncio
async def test_missing_file_fails_batch(tmp_path, recorder):
    _, engine = make_engine(RecordingConnection())
    engine.on_event(recorder)

    assert not await engine.send_batch([str(tmp_path / "nope.bin")])
    assert len(recorder.of("transfer-error")) == 1


@pytest.mark.asyncio
async def test_batches_do_not_interleave(make_file):
    conn = RecordingConnection()
    _, engine = make_engine(conn, chunk_size=512)
    first = make_file("first.bin", 4000)
    second = make_file("second.bin", 4000)

    results = await asyncio.gather(engine.send_batch([first]), engine.send_batch([second]))

    assert results == [True, True]
    names = [m["name"] for m in conn.sent if m["type"] == "file-meta"]
    assert names == ["first.bin", "second.bin"]
    second_meta = next(i for i, m in enumerate(conn.sent) if m.get("name") == "second.bin")
    first_chunks = conn.sent[1:second_meta]
    assert first_chunks[-1]["final"] is True


@pytest.mark.asyncio
async def test_sender_waits_while_connection_is_backed_up(make_file):
    conn = RecordingConnection()
    conn.buffered = 10_000
    _, engine = make_engine(conn, chunk_size=1024, high_water_mark=4096)

    task = asyncio.create_task(engine.send_batch([make_file("a.bin", 3000)]))
    await settle()
    assert conn.chunks() == []

    conn.buffered = 0
    assert await task
    assert len(conn.chunks()) == 3


# --- Receiving ---


def outbound_messages(conn: RecordingConnection) -> list[dict]:
    return list(conn.sent)


@pytest.mark.parametrize("size,chunk_size", [(10000, 4096), (8192, 4096), (1, 64), (0, 16)])
@pytest.mark.asyncio
async def test_round_trip_is_byte_identical(make_file, size, chunk_size):
    conn = RecordingConnection()
    _, sender = make_engine(conn, chunk_size=chunk_size)
    path = make_file("payload.bin", size)
    await sender.send_batch([path])

    _, receiver = make_engine(None, chunk_size=chunk_size)
    received: list[ReceivedFile] = []

    async def collect(f):
        received.append(f)

    receiver.on_file(collect)
    await replay(receiver, outbound_messages(conn))

    with open(path, "rb") as f:
        original = f.read()
    assert len(received) == 1
    assert received[0].name == "payload.bin"
    assert received[0].data == original
    assert len(received[0].data) == size


@pytest.mark.asyncio
async def test_receive_emits_lifecycle_and_resets_progress(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)

    await replay(engine, [
        {"type": "file-meta", "name": "notes.txt", "size": 6, "mimeType": "text/plain"},
        {"type": "file-chunk", "data": b"abc", "chunk": 0, "final": False},
        {"type": "file-chunk", "data": b"def", "chunk": 1, "final": True},
    ])
    await settle()

    assert recorder.names() == [
        "transfer-start",
        "transfer-progress",
        "transfer-progress",
        "transfer-complete",
        "transfer-progress",
    ]
    assert recorder.progress() == [50, 100, 0]
    assert engine.get_status().inbound is None


@pytest.mark.asyncio
async def test_received_file_keeps_mime_type():
    _, engine = make_engine(None)
    received = []

    async def collect(f):
        received.append(f)

    engine.on_file(collect)
    await replay(engine, [
        {"type": "file-meta", "name": "pic.png", "size": 2, "mimeType": "image/png"},
        {"type": "file-chunk", "data": b"\x89P", "chunk": 0, "final": True},
    ])

    assert received[0].mime_type == "image/png"


@pytest.mark.asyncio
async def test_meta_during_open_transfer_abandons_old_one(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)
    received = []

    async def collect(f):
        received.append(f)

    engine.on_file(collect)
    await replay(engine, [
        {"type": "file-meta", "name": "old.bin", "size": 10, "mimeType": ""},
        {"type": "file-chunk", "data": b"12345", "chunk": 0, "final": False},
        {"type": "file-meta", "name": "new.bin", "size": 3, "mimeType": ""},
        {"type": "file-chunk", "data": b"xyz", "chunk": 0, "final": True},
    ])

    assert recorder.of("transfer-error")[0]["fileName"] == "old.bin"
    assert [f.name for f in received] == ["new.bin"]


@pytest.mark.asyncio
async def test_chunk_without_transfer_is_dropped(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)

    await engine.handle_message({"type": "file-chunk", "data": b"x", "chunk": 0, "final": True})

    assert recorder.events == []


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)

    await engine.handle_message({"type": "file-meta", "name": "x", "size": -1})
    await engine.handle_message({"type": "chat", "content": "hi"})
    await engine.handle_message("not a dict")

    assert recorder.events == []
    assert engine.get_status().inbound is None


@pytest.mark.asyncio
async def test_out_of_order_chunk_abandons_transfer(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)
    received = []

    async def collect(f):
        received.append(f)

    engine.on_file(collect)
    await replay(engine, [
        {"type": "file-meta", "name": "a.bin", "size": 6, "mimeType": ""},
        {"type": "file-chunk", "data": b"abc", "chunk": 1, "final": False},
        {"type": "file-chunk", "data": b"def", "chunk": 2, "final": True},
    ])

    error = recorder.of("transfer-error")[0]
    assert "Expected chunk 0" in error["error"]
    assert received == []


@pytest.mark.asyncio
async def test_short_file_is_never_surfaced(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)
    received = []

    async def collect(f):
        received.append(f)

    engine.on_file(collect)
    await replay(engine, [
        {"type": "file-meta", "name": "a.bin", "size": 10, "mimeType": ""},
        {"type": "file-chunk", "data": b"abc", "chunk": 0, "final": True},
    ])

    assert received == []
    assert recorder.of("transfer-error")[0]["error"] == "Received 3 of 10 bytes"
    assert recorder.progress()[-1] == 0


@pytest.mark.asyncio
async def test_connection_loss_discards_partial_transfer():
    session, engine = make_engine(None)
    await replay(engine, [
        {"type": "file-meta", "name": "a.bin", "size": 10, "mimeType": ""},
        {"type": "file-chunk", "data": b"abc", "chunk": 0, "final": False},
    ])
    assert engine.get_status().inbound.received_bytes == 3

    await session.emit("connection-status", {"connected": False})

    assert engine.get_status().inbound is None


@pytest.mark.asyncio
async def test_failing_download_handler_reports_error(recorder):
    _, engine = make_engine(None)
    engine.on_event(recorder)

    async def broken(f):
        raise OSError("disk full")

    engine.on_file(broken)
    await replay(engine, [
        {"type": "file-meta", "name": "a.bin", "size": 1, "mimeType": ""},
        {"type": "file-chunk", "data": b"a", "chunk": 0, "final": True},
    ])

    assert recorder.of("transfer-error") == [{"fileName": "a.bin", "error": "disk full"}]
    assert recorder.of("transfer-complete") == []


@pytest.mark.asyncio
async def test_source_file_is_opened_off_the_event_loop(make_file, monkeypatch):
    import builtins
    import threading

    import transfer.engine as engine_module

    opened_on = []

    def tracking_open(*args, **kwargs):
        opened_on.append(threading.current_thread())
        return builtins.open(*args, **kwargs)

    monkeypatch.setattr(engine_module, "open", tracking_open, raising=False)
    conn = RecordingConnection()
    _, engine = make_engine(conn)

    assert await engine.send_batch([make_file("a.bin", 100)])

    assert len(opened_on) == 1
    assert opened_on[0] is not threading.main_thread()
