#!/usr/bin/env python3
"""
Módulo de Cliente TFTP

Fornece a classe TFTPClient para transferir arquivos com um servidor
TFTP (RFC 1350) em modo octet, um bloco por vez (lock-step).

A classe apenas sabe como:
1. Baixar um arquivo remoto para o disco (RRQ)
2. Enviar um arquivo local para o servidor (WRQ)
3. Interromper a transferência em andamento (cancel)

Cada chamada abre seu próprio socket UDP e o fecha ao retornar.

Não contém dependências do Qt (PySide6).
"""

import os
import socket
from pathlib import Path
from typing import Callable, Optional, Tuple

from tftp_backend.protocols.packet import (
    BLOCK_SIZE,
    TFTP_PORT,
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
from tftp_backend.protocols.retry_policy import (
    CLIENT_TIMEOUT_SEC,
    MAX_RETRIES,
    RetryPolicy,
    send_with_retry,
)
from tftp_backend.protocols.tftp_errors import (
    TftpError,
    TransferCancelled,
    TransferIOError,
    protocol_error_from_code,
)

ProgressCallback = Callable[[int, Optional[int]], None]


class TFTPClient:
    """
    Cliente TFTP com trava de TID, timeout por tentativa e cancelamento
    cooperativo.
    """

    # ============================================================================
    # Inicialização
    # Descrição: server_port usa TFTP_PORT e timeout usa CLIENT_TIMEOUT_SEC
    #            como padrão. Na ausência de logger é utilizado print.
    # ============================================================================
    def __init__(
        self,
        server_ip: str,
        server_port: int = TFTP_PORT,
        timeout: float = CLIENT_TIMEOUT_SEC,
        max_retries: int = MAX_RETRIES,
        logger: Callable[[str], None] = None,
    ):
        self.server_ip = server_ip
        self.server_port = server_port
        self.timeout = timeout
        self.max_retries = max_retries
        self.sock = None
        self.server_tid: Optional[Tuple[str, int]] = None
        self.cancelled = False
        self.logger = logger or (lambda msg: print(msg))
        self.policy = RetryPolicy(timeout, max_retries, self.logger)

    def log(self, msg: str):
        self.logger(msg)

    def cancel(self):
        """Pede a interrupção; observada entre blocos."""
        self.cancelled = True
        self.log("[TFTP-AVISO] Cancelamento solicitado")

    def close(self):
        if self.sock:
            self.sock.close()
            self.sock = None
            self.log("[TFTP-OK] Socket de transferência fechado")

    def _open_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(self.timeout)
        return sock

    def _check_cancelled(self):
        if self.cancelled:
            raise TransferCancelled("Transferência cancelada pelo usuário")

    # ============================================================================
    # Download (RRQ)
    # Descrição: Envia RRQ para a porta do servidor e grava cada DATA em
    #            destination_path. O TID é fixado no primeiro DATA 1 aceito;
    #            pacotes de outros endereços são ignorados sem resposta.
    #            Enquanto o bloco 1 não chega cada tentativa reenvia o RRQ.
    #            Termina com payload < BLOCK_SIZE. Retorna os bytes gravados.
    # ============================================================================
    def read_file(
        self,
        remote_filename: str,
        destination_path,
        progress_callback: ProgressCallback = None,
    ) -> int:
        self._validate_remote_name(remote_filename)
        self.log(f"[TFTP] Lendo arquivo (RRQ): {remote_filename}")

        request = encode(ReadRequest(remote_filename))
        server_addr = (self.server_ip, self.server_port)
        expected_block = 1
        written = 0
        self.server_tid = None

        def send_rrq(attempt: int):
            self.sock.sendto(request, server_addr)
            self.log(
                f"[TFTP-SEND] RRQ: {remote_filename} para {server_addr[0]}:{server_addr[1]}"
                + (f" (tentativa {attempt})" if attempt > 1 else "")
            )

        try:
            self._check_cancelled()
            try:
                handle = open(destination_path, "wb")
            except OSError as e:
                raise TransferIOError(f"Não foi possível criar {destination_path}: {e}") from e

            self.sock = self._open_socket()
            with handle:
                while True:
                    self._check_cancelled()
                    block_no = expected_block
                    pkt = self.policy.wait(
                        self.sock,
                        lambda data, addr: self._accept_data(data, addr, block_no),
                        on_attempt=send_rrq if self.server_tid is None else None,
                        describe=f"DATA {block_no}",
                    )

                    try:
                        handle.write(pkt.payload)
                    except OSError as e:
                        raise TransferIOError(f"Erro ao gravar {destination_path}: {e}") from e

                    self._send_ack(pkt.block)
                    written += len(pkt.payload)
                    expected_block = next_block(expected_block)

                    if progress_callback:
                        progress_callback(written, None)

                    if pkt.is_last:
                        break

            self.log(
                f"[TFTP-OK] Leitura (RRQ) de {remote_filename} concluída ({written} bytes)"
            )
            return written

        except TftpError as e:
            self.log(f"[TFTP-ERRO] Erro em read_file: {e}")
            raise
        finally:
            self.cancelled = False
            self.close()

    def _accept_data(self, data: bytes, addr: Tuple[str, int], expected: int) -> Optional[Data]:
        if self.server_tid is not None and addr != self.server_tid:
            self.log(f"[TFTP-AVISO] Pacote de TID inesperado {addr[0]}:{addr[1]} ignorado")
            return None

        pkt = decode(data)

        if isinstance(pkt, Error):
            raise protocol_error_from_code(pkt.code, pkt.message)
        if not isinstance(pkt, Data):
            self.log(f"[TFTP-AVISO] Pacote inesperado (opcode={pkt.opcode.value})")
            return None

        if pkt.block == expected:
            if self.server_tid is None:
                self.server_tid = addr
                self.log(f"[TFTP-OK] Servidor respondeu da porta {addr[1]}")
            return pkt

        if self.server_tid is not None and pkt.block == previous_block(expected):
            # Nosso ACK se perdeu: o servidor retransmitiu o bloco anterior.
            self.log(f"[TFTP-AVISO] DATA {pkt.block} duplicado, reenviando ACK")
            self._send_ack(pkt.block)
            return None

        self.log(
            f"[TFTP-AVISO] Bloco fora de ordem: esperado {expected}, recebido {pkt.block}"
        )
        return None

    # ============================================================================
    # Upload (WRQ)
    # Descrição: Envia WRQ e aguarda ACK 0 (o remetente vira o TID). Depois
    #            envia blocos de até BLOCK_SIZE bytes, cada um reenviado a cada
    #            tentativa até o ACK correspondente. Arquivo com tamanho
    #            múltiplo de BLOCK_SIZE (inclusive vazio) termina com DATA
    #            vazio. Retorna os bytes enviados.
    # ============================================================================
    def write_file(
        self,
        local_path,
        remote_filename: str = None,
        progress_callback: ProgressCallback = None,
    ) -> int:
        remote_filename = remote_filename or Path(local_path).name
        self._validate_remote_name(remote_filename)
        self.log(f"[TFTP] Escrevendo arquivo (WRQ): {remote_filename}")

        request = encode(WriteRequest(remote_filename))
        server_addr = (self.server_ip, self.server_port)
        sent = 0
        self.server_tid = None

        def send_wrq(attempt: int):
            send_with_retry(self.sock, request, server_addr, logger=self.logger)
            self.log(
                f"[TFTP-SEND] WRQ: {remote_filename} para {server_addr[0]}:{server_addr[1]}"
                + (f" (tentativa {attempt})" if attempt > 1 else "")
            )

        try:
            self._check_cancelled()
            try:
                handle = open(local_path, "rb")
                total = os.fstat(handle.fileno()).st_size
            except OSError as e:
                raise TransferIOError(f"Não foi possível abrir {local_path}: {e}") from e

            self.sock = self._open_socket()
            with handle:
                self.policy.wait(
                    self.sock,
                    lambda data, addr: self._accept_ack(data, addr, 0),
                    on_attempt=send_wrq,
                    describe="ACK 0",
                )
                self.log("[TFTP-OK] Servidor aceitou o write request")

                block = 0
                while True:
                    self._check_cancelled()
                    try:
                        chunk = handle.read(BLOCK_SIZE)
                    except OSError as e:
                        raise TransferIOError(f"Erro ao ler {local_path}: {e}") from e

                    block = next_block(block)
                    block_no = block
                    payload = encode(Data(block, chunk))

                    self.policy.wait(
                        self.sock,
                        lambda data, addr: self._accept_ack(data, addr, block_no),
                        on_attempt=lambda attempt: send_with_retry(
                            self.sock, payload, self.server_tid, logger=self.logger
                        ),
                        describe=f"ACK {block_no}",
                    )

                    sent += len(chunk)
                    if progress_callback:
                        progress_callback(sent, total)

                    if len(chunk) < BLOCK_SIZE:
                        break

            self.log(
                f"[TFTP-OK] Escrita (WRQ) de {remote_filename} concluída ({sent} bytes)"
            )
            return sent

        except TftpError as e:
            self.log(f"[TFTP-ERRO] Erro em write_file: {e}")
            raise
        finally:
            self.cancelled = False
            self.close()

    def _accept_ack(self, data: bytes, addr: Tuple[str, int], expected: int) -> Optional[Ack]:
        if self.server_tid is not None and addr != self.server_tid:
            self.log(f"[TFTP-AVISO] Pacote de TID inesperado {addr[0]}:{addr[1]} ignorado")
            return None

        pkt = decode(data)

        if isinstance(pkt, Error):
            raise protocol_error_from_code(pkt.code, pkt.message)
        if not isinstance(pkt, Ack):
            self.log(f"[TFTP-AVISO] Pacote inesperado (opcode={pkt.opcode.value})")
            return None
        if pkt.block != expected:
            self.log(f"[TFTP-AVISO] ACK inválido. Esperado {expected}, recebido {pkt.block}")
            return None

        if self.server_tid is None:
            self.server_tid = addr
            self.log(f"[TFTP-OK] Servidor respondeu da porta {addr[1]}")
        return pkt

    def _send_ack(self, block: int):
        self.sock.sendto(encode(Ack(block)), self.server_tid)

    @staticmethod
    def _validate_remote_name(name: str):
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Filename inválido")
        if "\0" in name:
            raise ValueError("Filename inválido: contém NUL")
