#!/usr/bin/env python3
"""
Módulo do Servidor TFTP

O TftpServer é dono da porta bem conhecida (69 por padrão) e só recebe
pedidos iniciais. Cada RRQ/WRQ é entregue a um TransferWorker no
QThreadPool; o laço de escuta roda num pool dedicado de uma thread.

Um pedido vindo de um TID que já tem transferência aberta é um
retransmitido pelo cliente e não abre um segundo worker.

Uso:
    server = TftpServer(port=6969, base_dir="./arquivos")
    server.start()
    ...
    server.stop()
"""

import socket
import threading
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from PySide6.QtCore import QRunnable, QThreadPool, Slot

from tftp_backend.protocols.packet import (
    BUFFER_SIZE,
    TFTP_PORT,
    Error,
    ReadRequest,
    WriteRequest,
    decode,
    encode,
)
from tftp_backend.protocols.retry_policy import MAX_RETRIES, SERVER_TIMEOUT_SEC
from tftp_backend.protocols.tftp_errors import TFTP_ERROR, MalformedPacket
from tftp_backend.server.transfer_worker import TransferWorker

# ============================================================================
# Configuração do servidor
# Descrição: Intervalo de verificação do laço de escuta, tamanho do pool de
#            transferências e diretório base padrão.
# ============================================================================
LISTEN_POLL_SEC = 1
THREAD_POOL_SIZE = 10
DEFAULT_BASE_DIR = "./tftp-server-files"


class _ListenerRunnable(QRunnable):
    def __init__(self, server: "TftpServer"):
        super().__init__()
        self.server = server

    @Slot()
    def run(self):
        self.server.serve_forever()


class TftpServer:
    def __init__(
        self,
        port: int = TFTP_PORT,
        base_dir: Union[str, Path] = DEFAULT_BASE_DIR,
        host: str = "",
        pool_size: int = THREAD_POOL_SIZE,
        timeout: float = SERVER_TIMEOUT_SEC,
        max_retries: int = MAX_RETRIES,
        max_pending: Optional[int] = None,
        logger: Callable[[str], None] = None,
    ):
        self.port = port
        self.base_dir = Path(base_dir)
        self.host = host
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_pending = max_pending
        self.logger = logger or (lambda msg: print(msg))

        self.threadpool = QThreadPool()
        self.threadpool.setMaxThreadCount(pool_size)
        self._listener_pool = QThreadPool()
        self._listener_pool.setMaxThreadCount(1)

        self.sock: Optional[socket.socket] = None
        self.running = False
        self._pending = 0
        self._active = set()
        self._pending_lock = threading.Lock()

    def log(self, msg: str):
        self.logger(msg)

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Endereço efetivamente ligado (útil com port=0)."""
        if self.sock is None:
            return None
        return self.sock.getsockname()

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return self._pending

    def _bind(self):
        self.base_dir.mkdir(parents=True, exist_ok=True)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(LISTEN_POLL_SEC)
        self.sock = sock
        self.running = True
        host, port = self.address
        self.log(f"[SERVIDOR] Escutando em {host or '*'}:{port}, base {self.base_dir.resolve()}")

    def start(self):
        """Liga o socket e executa o laço de escuta em segundo plano."""
        if self.running:
            return
        self._bind()
        self._listener_pool.start(_ListenerRunnable(self))

    def serve_forever(self):
        """Laço de escuta bloqueante; retorna após stop()."""
        if self.sock is None:
            self._bind()

        while self.running:
            try:
                data, addr = self.sock.recvfrom(BUFFER_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if not self.running:
                    break
                self.log(f"[TFTP-ERRO] Falha no socket de escuta: {e}")
                continue

            self._dispatch(data, addr)

        self.log("[SERVIDOR] Laço de escuta encerrado")

    def _dispatch(self, data: bytes, addr: Tuple[str, int]):
        try:
            pkt = decode(data)
        except MalformedPacket as e:
            self.log(f"[TFTP-AVISO] Pacote malformado de {addr[0]}:{addr[1]} descartado: {e}")
            return

        if not isinstance(pkt, (ReadRequest, WriteRequest)):
            self.log(
                f"[TFTP-AVISO] Opcode {pkt.opcode.value} na porta de escuta ignorado ({addr[0]}:{addr[1]})"
            )
            return

        if self.is_active(addr):
            # Pedido retransmitido: o worker já ativo reenvia a própria resposta.
            self.log(
                f"[TFTP-AVISO] Pedido repetido de {addr[0]}:{addr[1]} ignorado (transferência em andamento)"
            )
            return

        if not self._reserve_slot(addr):
            self.log(f"[TFTP-AVISO] Servidor ocupado, pedido de {addr[0]}:{addr[1]} recusado")
            try:
                self.sock.sendto(
                    encode(Error(TFTP_ERROR.NOT_DEFINED.value, "Server busy")), addr
                )
            except OSError as e:
                self.log(f"[TFTP-ERRO] Falha ao enviar recusa: {e}")
            return

        worker = TransferWorker(
            pkt,
            addr,
            self.base_dir,
            host=self.host,
            timeout=self.timeout,
            max_retries=self.max_retries,
            logger=self.logger,
            on_done=partial(self._release_slot, addr),
        )
        self.threadpool.start(worker)

    def is_active(self, addr: Tuple[str, int]) -> bool:
        """True enquanto houver transferência aberta para o TID addr."""
        with self._pending_lock:
            return addr in self._active

    def _reserve_slot(self, addr: Tuple[str, int]) -> bool:
        with self._pending_lock:
            if self.max_pending is not None and self._pending >= self.max_pending:
                return False
            self._pending += 1
            self._active.add(addr)
            return True

    def _release_slot(self, addr: Tuple[str, int]):
        with self._pending_lock:
            self._pending -= 1
            self._active.discard(addr)

    def stop(self, wait_ms: int = -1):
        """
        Encerra o laço de escuta, fecha o socket e aguarda as
        transferências em andamento (wait_ms=-1 espera sem limite).
        """
        if not self.running and self.sock is None:
            return
        self.log("[SERVIDOR] Encerrando servidor...")
        self.running = False
        self._listener_pool.waitForDone()
        if self.sock:
            self.sock.close()
            self.sock = None
        self.threadpool.waitForDone(wait_ms)
        self.log("[SERVIDOR] Servidor encerrado.")
