import builtins
import errno
import os
import socket
import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from tftp_backend.protocols.packet import (  # noqa: E402
    BLOCK_SIZE,
    Ack,
    Data,
    Error,
    ReadRequest,
    WriteRequest,
    decode,
    encode,
)
from tftp_backend.server import transfer_worker  # noqa: E402
from tftp_backend.server.transfer_worker import TransferWorker  # noqa: E402

# ============================================================================
# Worker de transferência do servidor
# Descrição: Política de caminhos, ERROR padronizados, TID do cliente e
#            remoção de arquivo parcial. Sockets reais em loopback.
# ============================================================================

pytestmark = pytest.mark.integration


@pytest.fixture
def base_dir(tmp_path):
    base = tmp_path / "server-files"
    base.mkdir()
    return base


@pytest.fixture
def client_sock():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    s.settimeout(2)
    yield s
    s.close()


@pytest.fixture
def logs():
    return []


@pytest.fixture
def make_worker(base_dir, client_sock, logs):
    def _make(request, timeout=0.5, max_retries=2, on_done=None):
        return TransferWorker(
            request,
            client_sock.getsockname(),
            base_dir,
            host="127.0.0.1",
            timeout=timeout,
            max_retries=max_retries,
            logger=logs.append,
            on_done=on_done,
        )

    return _make


def recv_packet(sock):
    data, addr = sock.recvfrom(1024)
    return decode(data), addr


def assert_silent(sock, wait=0.3):
    sock.settimeout(wait)
    with pytest.raises(socket.timeout):
        sock.recvfrom(1024)


def start_in_thread(worker):
    thread = threading.Thread(target=worker.run, daemon=True)
    thread.start()
    return thread


@pytest.mark.functional
def test_wrq_path_traversal_gets_access_violation(make_worker, client_sock, base_dir, tmp_path):
    done = []
    make_worker(WriteRequest("../../etc/passwd"), on_done=lambda: done.append(True)).run()

    pkt, _ = recv_packet(client_sock)
    assert isinstance(pkt, Error)
    assert pkt.code == 2
    assert_silent(client_sock)
    assert list(base_dir.iterdir()) == []
    assert not (tmp_path / "etc").exists()
    assert done == [True]


@pytest.mark.functional
def test_rrq_missing_file_gets_single_file_not_found(make_worker, client_sock):
    make_worker(ReadRequest("missing.bin")).run()

    pkt, _ = recv_packet(client_sock)
    assert isinstance(pkt, Error)
    assert pkt.code == 1
    assert_silent(client_sock)


def test_rrq_directory_is_file_not_found(make_worker, client_sock, base_dir):
    (base_dir / "subdir").mkdir()
    make_worker(ReadRequest("subdir")).run()

    pkt, _ = recv_packet(client_sock)
    assert pkt.code == 1


def test_wrq_existing_file_gets_file_exists(make_worker, client_sock, base_dir):
    existing = base_dir / "keep.bin"
    existing.write_bytes(b"original")

    make_worker(WriteRequest("keep.bin")).run()

    pkt, _ = recv_packet(client_sock)
    assert pkt.code == 6
    assert existing.read_bytes() == b"original"


def test_wrq_receives_file_and_rejects_foreign_tid(make_worker, client_sock, base_dir):
    worker = make_worker(WriteRequest("nested/dir/upload.bin"), timeout=2)
    thread = start_in_thread(worker)

    pkt, worker_addr = recv_packet(client_sock)
    assert pkt == Ack(0)
    assert worker_addr[1] != 0

    foreign = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    foreign.bind(("127.0.0.1", 0))
    foreign.settimeout(2)
    try:
        foreign.sendto(encode(Data(1, b"intruso")), worker_addr)
        err, _ = recv_packet(foreign)
        assert err.code == 5
    finally:
        foreign.close()

    client_sock.sendto(encode(Data(1, b"x" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)
    client_sock.sendto(encode(Data(2, b"")), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(2)

    thread.join(5)
    assert not thread.is_alive()
    assert (base_dir / "nested/dir/upload.bin").read_bytes() == b"x" * BLOCK_SIZE


def test_wrq_duplicate_block_is_reacknowledged(make_worker, client_sock, base_dir):
    thread = start_in_thread(make_worker(WriteRequest("dup.bin"), timeout=2))
    _, worker_addr = recv_packet(client_sock)

    client_sock.sendto(encode(Data(1, b"y" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)
    client_sock.sendto(encode(Data(1, b"y" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)
    client_sock.sendto(encode(Data(2, b"fim")), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(2)

    thread.join(5)
    assert (base_dir / "dup.bin").read_bytes() == b"y" * BLOCK_SIZE + b"fim"


def test_wrq_timeout_removes_partial_file(make_worker, client_sock, base_dir):
    done = []
    worker = make_worker(
        WriteRequest("partial.bin"), timeout=0.2, max_retries=2, on_done=lambda: done.append(True)
    )
    thread = start_in_thread(worker)
    _, worker_addr = recv_packet(client_sock)

    client_sock.sendto(encode(Data(1, b"p" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)

    thread.join(5)
    assert not (base_dir / "partial.bin").exists()
    assert done == [True]
    # Reenvio do ACK 1 na segunda tentativa; nenhum ERROR depois do timeout.
    assert recv_packet(client_sock)[0] == Ack(1)
    assert_silent(client_sock)


def test_wrq_client_error_aborts_without_reply(make_worker, client_sock, base_dir, logs):
    thread = start_in_thread(make_worker(WriteRequest("abort.bin"), timeout=2))
    _, worker_addr = recv_packet(client_sock)

    client_sock.sendto(encode(Error(0, "cancelado")), worker_addr)

    thread.join(5)
    assert not (base_dir / "abort.bin").exists()
    assert_silent(client_sock)
    assert any("cancelado" in m for m in logs)


@pytest.mark.functional
def test_rrq_streams_blocks_with_final_empty_block(make_worker, client_sock, base_dir):
    content = b"r" * (BLOCK_SIZE * 2)
    (base_dir / "two.bin").write_bytes(content)
    thread = start_in_thread(make_worker(ReadRequest("two.bin"), timeout=2))

    received = b""
    blocks = []
    while True:
        pkt, worker_addr = recv_packet(client_sock)
        assert isinstance(pkt, Data)
        blocks.append(len(pkt.payload))
        received += pkt.payload
        client_sock.sendto(encode(Ack(pkt.block)), worker_addr)
        if len(pkt.payload) < BLOCK_SIZE:
            break

    thread.join(5)
    assert received == content
    assert blocks == [512, 512, 0]


def test_rrq_foreign_ack_gets_unknown_tid_and_transfer_continues(make_worker, client_sock, base_dir):
    (base_dir / "small.bin").write_bytes(b"abc")
    thread = start_in_thread(make_worker(ReadRequest("small.bin"), timeout=2))

    pkt, worker_addr = recv_packet(client_sock)
    assert pkt == Data(1, b"abc")

    foreign = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    foreign.bind(("127.0.0.1", 0))
    foreign.settimeout(2)
    try:
        foreign.sendto(encode(Ack(1)), worker_addr)
        assert recv_packet(foreign)[0].code == 5
    finally:
        foreign.close()

    assert thread.is_alive()
    client_sock.sendto(encode(Ack(1)), worker_addr)
    thread.join(5)
    assert not thread.is_alive()


def test_rrq_timeout_resends_data_then_gives_up(make_worker, client_sock, base_dir):
    (base_dir / "lost.bin").write_bytes(b"lost")
    make_worker(ReadRequest("lost.bin"), timeout=0.2, max_retries=3).run()

    for _ in range(3):
        assert recv_packet(client_sock)[0] == Data(1, b"lost")
    assert_silent(client_sock)


class FailingFile:
    """Arquivo real cuja escrita falha a partir da chamada fail_at."""

    def __init__(self, handle, err, fail_at=2):
        self.handle = handle
        self.err = err
        self.fail_at = fail_at
        self.writes = 0

    def write(self, data):
        self.writes += 1
        if self.writes >= self.fail_at:
            raise OSError(self.err, os.strerror(self.err))
        return self.handle.write(data)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.handle.close()
        return False


@pytest.fixture
def failing_writes(monkeypatch):
    def _install(err):
        def fake_open(path, mode="r", *args, **kwargs):
            handle = builtins.open(path, mode, *args, **kwargs)
            if mode == "xb":
                return FailingFile(handle, err)
            return handle

        monkeypatch.setattr(transfer_worker, "open", fake_open, raising=False)

    return _install


@pytest.mark.functional
@pytest.mark.parametrize(
    "err,code",
    [
        (errno.ENOSPC, 3),
        (errno.EDQUOT, 3),
        (errno.EACCES, 2),
        (errno.EPERM, 2),
    ],
)
def test_wrq_write_failure_mid_transfer_maps_error_and_removes_file(
    make_worker, client_sock, base_dir, failing_writes, err, code
):
    failing_writes(err)
    thread = start_in_thread(make_worker(WriteRequest("cheio.bin"), timeout=2))
    pkt, worker_addr = recv_packet(client_sock)
    assert pkt == Ack(0)

    client_sock.sendto(encode(Data(1, b"d" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)
    client_sock.sendto(encode(Data(2, b"d" * BLOCK_SIZE)), worker_addr)

    pkt, _ = recv_packet(client_sock)
    assert isinstance(pkt, Error)
    assert pkt.code == code

    thread.join(5)
    assert not thread.is_alive()
    assert not (base_dir / "cheio.bin").exists()
    assert_silent(client_sock)


def test_wrq_other_write_failure_removes_file_without_reply(
    make_worker, client_sock, base_dir, failing_writes, logs
):
    failing_writes(errno.EIO)
    thread = start_in_thread(make_worker(WriteRequest("eio.bin"), timeout=2))
    _, worker_addr = recv_packet(client_sock)

    client_sock.sendto(encode(Data(1, b"e" * BLOCK_SIZE)), worker_addr)
    assert recv_packet(client_sock)[0] == Ack(1)
    client_sock.sendto(encode(Data(2, b"fim")), worker_addr)

    thread.join(5)
    assert not thread.is_alive()
    assert not (base_dir / "eio.bin").exists()
    assert_silent(client_sock)
    assert any("parcial removido" in m for m in logs)
