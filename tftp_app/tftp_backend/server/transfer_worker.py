#!/usr/bin/env python3
"""
Módulo do Worker de Transferência do Servidor

Cada RRQ/WRQ aceito pelo TftpServer vira um TransferWorker (QRunnable)
executado no pool de threads. O worker abre um socket efêmero próprio,
cuja porta passa a ser o TID do servidor para aquela transferência, e
conduz a troca DATA/ACK inteira com um único cliente.
"""

import errno
import os
import socket
import traceback
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from PySide6.QtCore import QRunnable, Slot

from tftp_backend.protocols.packet import (
    BLOCK_SIZE,
    Ack,
    Data,
    Error,
    ReadRequest,
    WriteRequest,
    decode,
    encode,
    next_block,
    previous_block,
)
from tftp_backend.protocols.path_guard import resolve_path
from tftp_backend.protocols.retry_policy import (
    MAX_RETRIES,
    SERVER_TIMEOUT_SEC,
    RetryPolicy,
)
from tftp_backend.protocols.tftp_errors import (
    TFTP_ERROR,
    AccessViolation,
    DiskFull,
    FileExists,
    FileNotFound,
    MalformedPacket,
    ProtocolError,
    TftpError,
    TransferIOError,
    TransferTimeout,
    protocol_error_from_code,
)

Address = Tuple[str, int]


class TransferWorker(QRunnable):
    """
    Executa uma leitura (RRQ) ou escrita (WRQ) completa para um cliente.

    O TID do cliente é o endereço de origem do pedido; pacotes de qualquer
    outro endereço recebem Error(UNKNOWN_TID) e a espera continua.
    """

    def __init__(
        self,
        request: Union[ReadRequest, WriteRequest],
        client_addr: Address,
        base_dir: Union[str, Path],
        host: str = "",
        timeout: float = SERVER_TIMEOUT_SEC,
        max_retries: int = MAX_RETRIES,
        logger: Callable[[str], None] = None,
        on_done: Callable[[], None] = None,
    ):
        super().__init__()
        self.request = request
        self.client_addr = client_addr
        self.base_dir = Path(base_dir)
        self.host = host
        self.logger = logger or (lambda msg: print(msg))
        self.policy = RetryPolicy(timeout, max_retries, self.logger)
        self.on_done = on_done
        self.sock: Optional[socket.socket] = None

    def log(self, msg: str):
        self.logger(msg)

    @property
    def peer(self) -> str:
        return f"{self.client_addr[0]}:{self.client_addr[1]}"

    @Slot()
    def run(self):
        kind = "RRQ" if isinstance(self.request, ReadRequest) else "WRQ"
        self.log(f"[WORKER] {kind} '{self.request.filename}' de {self.peer}")

        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.sock.bind((self.host, 0))

            if isinstance(self.request, WriteRequest):
                self._handle_write()
            else:
                self._handle_read()

        except ProtocolError as e:
            self.log(f"[TFTP-ERRO] {self.peer}: {e}")
            if not e.remote:
                self._send_error(e.to_packet())

        except TransferTimeout as e:
            self.log(f"[TFTP-ERRO] {self.peer}: {e}")

        except TftpError as e:
            self.log(f"[TFTP-ERRO] {self.peer}: {e}")

        except Exception as e:
            self.log(f"[WORKER-ERRO] Erro inesperado na transferência: {e}")
            self.log(traceback.format_exc())
            self._send_error(Error(TFTP_ERROR.NOT_DEFINED.value, str(e)))

        finally:
            if self.sock:
                self.sock.close()
                self.sock = None
            self.log(f"[WORKER] Transferência com {self.peer} encerrada.")
            if self.on_done:
                self.on_done()

    # ============================================================================
    # Escrita (WRQ)
    # Descrição: Valida o caminho, cria os diretórios pais dentro da base e
    #            abre o destino em modo exclusivo ("xb"). Cada tentativa de
    #            espera reenvia o último ACK. Qualquer falha depois da
    #            criação remove o arquivo parcial.
    # ============================================================================
    def _handle_write(self):
        path = resolve_path(self.base_dir, self.request.filename)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, "xb")
        except FileExistsError:
            raise FileExists(f"Arquivo já existe: {self.request.filename}") from None
        except OSError as e:
            raise self._map_io_error(e) from e

        received = 0
        try:
            with handle:
                last_ack = 0
                expected = 1
                while True:
                    ack = encode(Ack(last_ack))
                    block_no = expected
                    pkt = self.policy.wait(
                        self.sock,
                        lambda data, addr: self._accept_data(data, addr, block_no),
                        on_attempt=lambda attempt: self.sock.sendto(ack, self.client_addr),
                        describe=f"DATA {block_no} de {self.peer}",
                    )

                    try:
                        handle.write(pkt.payload)
                    except OSError as e:
                        raise self._map_io_error(e) from e
                    received += len(pkt.payload)

                    last_ack = pkt.block
                    expected = next_block(expected)

                    if pkt.is_last:
                        break

        except BaseException:
            self._remove_partial(path)
            raise

        # ACK final só depois do arquivo fechado em disco.
        self.sock.sendto(encode(Ack(last_ack)), self.client_addr)
        self.log(f"[TFTP-OK] Recebido '{self.request.filename}' ({received} bytes) de {self.peer}")

    def _accept_data(self, data: bytes, addr: Address, expected: int) -> Optional[Data]:
        pkt = self._accept_common(data, addr)
        if pkt is None:
            return None
        if not isinstance(pkt, Data):
            self.log(f"[TFTP-AVISO] Pacote inesperado (opcode={pkt.opcode.value}) de {self.peer}")
            return None

        if pkt.block == expected:
            return pkt

        if pkt.block == previous_block(expected):
            self.log(f"[TFTP-AVISO] DATA {pkt.block} duplicado, reenviando ACK")
            self.sock.sendto(encode(Ack(pkt.block)), self.client_addr)
            return None

        self.log(f"[TFTP-AVISO] Bloco fora de ordem: esperado {expected}, recebido {pkt.block}")
        return None

    # ============================================================================
    # Leitura (RRQ)
    # Descrição: Exige arquivo regular legível dentro da base. Envia blocos
    #            de BLOCK_SIZE; cada tentativa reenvia o DATA atual. Arquivo
    #            com tamanho múltiplo de BLOCK_SIZE (inclusive vazio)
    #            termina com DATA vazio.
    # ============================================================================
    def _handle_read(self):
        path = resolve_path(self.base_dir, self.request.filename)

        if not path.is_file():
            raise FileNotFound(f"Arquivo não encontrado: {self.request.filename}")
        if not os.access(path, os.R_OK):
            raise AccessViolation(f"Sem permissão de leitura: {self.request.filename}")

        try:
            handle = open(path, "rb")
        except OSError as e:
            raise self._map_io_error(e) from e

        sent = 0
        with handle:
            block = 0
            while True:
                try:
                    chunk = handle.read(BLOCK_SIZE)
                except OSError as e:
                    raise self._map_io_error(e) from e

                block = next_block(block)
                block_no = block
                payload = encode(Data(block, chunk))

                self.policy.wait(
                    self.sock,
                    lambda data, addr: self._accept_ack(data, addr, block_no),
                    on_attempt=lambda attempt: self.sock.sendto(payload, self.client_addr),
                    describe=f"ACK {block_no} de {self.peer}",
                )
                sent += len(chunk)

                if len(chunk) < BLOCK_SIZE:
                    break

        self.log(f"[TFTP-OK] Enviado '{self.request.filename}' ({sent} bytes) para {self.peer}")

    def _accept_ack(self, data: bytes, addr: Address, expected: int) -> Optional[Ack]:
        pkt = self._accept_common(data, addr)
        if pkt is None:
            return None
        if not isinstance(pkt, Ack):
            self.log(f"[TFTP-AVISO] Pacote inesperado (opcode={pkt.opcode.value}) de {self.peer}")
            return None
        if pkt.block != expected:
            self.log(f"[TFTP-AVISO] ACK {pkt.block} ignorado, esperado {expected}")
            return None
        return pkt

    def _accept_common(self, data: bytes, addr: Address):
        """TID, pacotes malformados e ERROR do cliente, comuns aos dois sentidos."""
        if addr != self.client_addr:
            self.log(f"[TFTP-AVISO] Pacote de TID desconhecido {addr[0]}:{addr[1]}")
            self._send_error(
                Error(TFTP_ERROR.UNKNOWN_TID.value, "Unknown transfer ID"), addr
            )
            return None

        try:
            pkt = decode(data)
        except MalformedPacket as e:
            self.log(f"[TFTP-AVISO] Pacote malformado de {self.peer} descartado: {e}")
            return None

        if isinstance(pkt, Error):
            raise protocol_error_from_code(pkt.code, pkt.message)
        return pkt

    def _send_error(self, error: Error, addr: Address = None):
        if not self.sock:
            return
        try:
            self.sock.sendto(encode(error), addr or self.client_addr)
        except OSError as e:
            self.log(f"[TFTP-ERRO] Falha ao enviar ERROR {error.code}: {e}")

    def _map_io_error(self, e: OSError) -> TftpError:
        if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            return DiskFull(f"Disco cheio: {self.request.filename}")
        if e.errno in (errno.EACCES, errno.EPERM):
            return AccessViolation(f"Acesso negado: {self.request.filename}")
        return TransferIOError(f"Erro de I/O em {self.request.filename}: {e}")

    def _remove_partial(self, path: Path):
        try:
            path.unlink()
            self.log(f"[TFTP-AVISO] Arquivo parcial removido: {path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log(f"[TFTP-ERRO] Falha ao remover arquivo parcial {path}: {e}")
