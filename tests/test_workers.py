import socket
import threading
import time

import pytest

from dfdindex.connection import WorkerRegistry
from dfdindex.database import Database
from dfdindex.messages import (
    Message,
    MessageType,
    decode_message,
    encode_message,
    recv_frame,
    send_frame,
)
from dfdindex.sourceinfo import SourceInfo
from dfdindex.workers import (
    ServerContext,
    control_loop,
    handle_worker_message,
    listen_loop,
    worker_loop,
)

PEER = SourceInfo(7, "10.0.0.5", 6000)


@pytest.fixture
def ctx(tmp_path):
    db = Database(tmp_path / "index.db")
    context = ServerContext(
        db=db, registry=WorkerRegistry(2), temp_path=str(tmp_path / "temp.db")
    )
    yield context
    context.running.clear()
    db.close()


def start_pool(context):
    results = {}
    threads = {}
    registry = context.registry
    for i in range(registry.worker_count):
        writer = i == registry.writer_index

        def run(i=i, writer=writer):
            results[i] = worker_loop(context, i, writer)

        thread = threading.Thread(target=run, daemon=True)
        thread.start()
        threads[i] = thread
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        if registry.write_port and all(registry.read_ports):
            break
        time.sleep(0.01)
    return threads, results


def stop_pool(context, threads):
    context.running.clear()
    for thread in threads.values():
        thread.join(5)
    return [t.is_alive() for t in threads.values()]


def ask_raw(port, payload):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        s.bind(("127.0.0.1", 0))
        s.settimeout(5)
        s.sendto(payload, ("127.0.0.1", port))
        data, _ = s.recvfrom(65535)
    return decode_message(data)


def ask(port, message):
    return ask_raw(port, encode_message(message))


def closed_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_index_then_source_request(ctx):
    reply = handle_worker_message(Message(MessageType.INDEX_REQUEST, uuid=42, source=PEER, size=10), ctx)
    assert reply.kind == MessageType.INDEX_OK
    sources = handle_worker_message(Message(MessageType.SOURCE_REQUEST, uuid=42), ctx)
    assert sources.kind == MessageType.SOURCE_LIST
    assert sources.sources == (PEER,)


def test_drop_forward_removes_index(ctx):
    handle_worker_message(Message(MessageType.INDEX_FORWARD, uuid=42, source=PEER, size=10), ctx)
    reply = handle_worker_message(Message(MessageType.DROP_FORWARD, uuid=42, client_id=PEER.peer_id), ctx)
    assert reply.kind == MessageType.DROP_OK
    sources = handle_worker_message(Message(MessageType.SOURCE_REQUEST, uuid=42), ctx)
    assert sources.kind == MessageType.FAIL
    assert sources.text == "No peers are indexing this file."


def test_reregister_without_port_fails(ctx):
    reply = handle_worker_message(
        Message(MessageType.REREGISTER_REQUEST, source=SourceInfo(3, "10.0.0.9", 0)), ctx
    )
    assert reply.kind == MessageType.FAIL
    assert reply.text == "Insufficient address data provided."


def test_forward_server_reg_adds_server(ctx):
    server = SourceInfo(ip_addr="10.2.2.2", port=7000)
    reply = handle_worker_message(Message(MessageType.FORWARD_SERVER_REG, source=server), ctx)
    assert reply.kind == MessageType.FORWARD_SERVER_OK
    assert ctx.known_servers == [server]


def test_client_reg_lists_known_servers(ctx):
    ctx.known_servers.extend([SourceInfo(ip_addr="10.2.2.2", port=7000), SourceInfo(ip_addr="10.3.3.3", port=7001)])
    reply = handle_worker_message(Message(MessageType.CLIENT_REG), ctx)
    assert reply.kind == MessageType.SERVER_REG_RESPONSE
    assert list(reply.sources) == ctx.known_servers


def test_control_request_without_port_is_rejected(ctx):
    reply = handle_worker_message(Message(MessageType.CONTROL_REQUEST, uuid=5, source=SourceInfo(1, "10.0.0.1", 0)), ctx)
    assert reply.kind == MessageType.FAIL
    assert reply.text == "Invalid message."
    assert ctx.control_queue.empty()


def test_control_request_is_queued(ctx):
    reply = handle_worker_message(Message(MessageType.CONTROL_REQUEST, uuid=5, source=PEER), ctx)
    assert reply.kind == MessageType.CONTROL_OK
    assert ctx.control_queue.get_nowait() == (PEER, 5)


def test_unexpected_kind_is_invalid(ctx):
    reply = handle_worker_message(Message(MessageType.KEEP_ALIVE), ctx)
    assert reply.kind == MessageType.FAIL
    assert reply.text == "Invalid message type."


def test_server_registration_records_and_backs_up(ctx, tmp_path):
    known = SourceInfo(ip_addr="10.4.4.4", port=7100)
    ctx.known_servers.append(known)
    reply = handle_worker_message(Message(MessageType.SERVER_REG, source=SourceInfo(ip_addr="10.5.5.5", port=7200)), ctx)
    assert reply.kind == MessageType.SERVER_REG_RESPONSE
    assert reply.sources == (known,)
    assert ctx.recorder.recording is True
    assert (tmp_path / "temp.db").is_file()


def test_worker_pool_serves_writes_and_reads(ctx):
    threads, results = start_pool(ctx)
    try:
        write = ask(ctx.registry.write_port, Message(MessageType.INDEX_REQUEST, uuid=42, source=PEER, size=10))
        assert write.kind == MessageType.INDEX_OK
        read = ask(ctx.registry.read_ports[0], Message(MessageType.SOURCE_REQUEST, uuid=42))
        assert read.sources == (PEER,)
    finally:
        alive = stop_pool(ctx, threads)
    assert alive == [False, False]
    assert results == {0: 1, 1: 1}


def test_worker_replies_to_garbage(ctx):
    threads, _ = start_pool(ctx)
    try:
        reply = ask_raw(ctx.registry.write_port, b"\xff")
    finally:
        stop_pool(ctx, threads)
    assert reply.kind == MessageType.FAIL
    assert reply.text == "Invalid message type."


def test_worker_gives_up_when_pool_never_starts(ctx):
    ctx.setup_timeout = 0.2
    started = time.monotonic()
    served = worker_loop(ctx, 0, False)
    assert served == 0
    assert time.monotonic() - started >= 0.2


def test_writer_stops_past_write_limit(ctx):
    ctx.writer_write_limit = 0
    threads, results = start_pool(ctx)
    try:
        reply = ask(ctx.registry.write_port, Message(MessageType.INDEX_REQUEST, uuid=42, source=PEER, size=10))
        assert reply.kind == MessageType.INDEX_OK
        writer = ctx.registry.writer_index
        threads[writer].join(5)
        assert not threads[writer].is_alive()
        assert ctx.running.is_set()
    finally:
        stop_pool(ctx, threads)
    assert results[writer] == 1


def test_listen_loop_relays_client_registration(ctx):
    ctx.known_servers.append(SourceInfo(ip_addr="10.1.1.1", port=9000))
    threads, _ = start_pool(ctx)
    result = {}
    listener = threading.Thread(
        target=lambda: result.setdefault("accepted", listen_loop(ctx, "127.0.0.1", 0)), daemon=True
    )
    listener.start()
    try:
        assert ctx.listening.wait(5)
        with socket.create_connection(ctx.listen_address, timeout=5) as client:
            send_frame(client, Message(MessageType.CLIENT_REG))
            reply = recv_frame(client, 5)
            while reply.kind == MessageType.KEEP_ALIVE:
                reply = recv_frame(client, 5)
    finally:
        stop_pool(ctx, threads)
        listener.join(5)
    assert reply.kind == MessageType.SERVER_REG_RESPONSE
    assert list(reply.sources) == ctx.known_servers
    assert result["accepted"] == 1


def test_control_loop_drops_unreachable_client(ctx):
    received = {}
    with socket.create_server(("127.0.0.1", 0)) as ours:
        ours.settimeout(5)
        ctx.our_address = SourceInfo(ip_addr="127.0.0.1", port=ours.getsockname()[1])

        def serve():
            conn, _ = ours.accept()
            with conn:
                received["msg"] = recv_frame(conn, 5)
                send_frame(conn, Message(MessageType.DROP_OK))

        server_thread = threading.Thread(target=serve, daemon=True)
        server_thread.start()
        faulty = SourceInfo(11, "127.0.0.1", closed_port())
        ctx.control_queue.put((faulty, 99))
        result = {}
        loop = threading.Thread(target=lambda: result.setdefault("n", control_loop(ctx)), daemon=True)
        loop.start()
        server_thread.join(10)
        ctx.control_queue.join()
        ctx.running.clear()
        loop.join(5)
    assert received["msg"] == Message(MessageType.DROP_REQUEST, uuid=99, client_id=11)
    assert result["n"] == 1


def test_control_loop_leaves_reachable_client(ctx):
    with socket.create_server(("127.0.0.1", 0)) as ours, socket.create_server(("127.0.0.1", 0)) as peer:
        ctx.our_address = SourceInfo(ip_addr="127.0.0.1", port=ours.getsockname()[1])
        client = SourceInfo(12, "127.0.0.1", peer.getsockname()[1])
        ctx.control_queue.put((client, 99))
        result = {}
        loop = threading.Thread(target=lambda: result.setdefault("n", control_loop(ctx)), daemon=True)
        loop.start()
        ctx.control_queue.join()
        ctx.running.clear()
        loop.join(5)
        ours.settimeout(0.3)
        with pytest.raises(TimeoutError):
            ours.accept()
    assert result["n"] == 0


def test_control_loop_returns_when_stopped(ctx):
    ctx.running.clear()
    assert control_loop(ctx) == 0
    assert ctx.control_queue.empty()