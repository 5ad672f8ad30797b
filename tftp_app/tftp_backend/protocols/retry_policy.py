#!/usr/bin/env python3
"""
Módulo de Política de Retentativa TFTP

Primitiva única de espera com timeout usada pelo cliente e pelo servidor:

    policy = RetryPolicy(timeout=3, max_attempts=5)
    pkt = policy.wait(sock, accept, on_attempt=lambda n: sock.sendto(...))

Cada tentativa executa on_attempt (envio/reenvio) e então aguarda no socket
até que accept(data, addr) retorne algo diferente de None ou até o prazo da
tentativa expirar. Pacotes descartados por accept não consomem tentativa.

Não contém dependências do Qt (PySide6).
"""

import socket
import time
from typing import Callable, Optional, Tuple, TypeVar

from tftp_backend.protocols.packet import BUFFER_SIZE
from tftp_backend.protocols.tftp_errors import TransferIOError, TransferTimeout

# ============================================================================
# Constantes de temporização
# Descrição: Cliente aguarda 3 s por tentativa, servidor 5 s; ambos tentam
#            no máximo 5 vezes. Falhas de envio esperam 1 s entre tentativas.
# ============================================================================
CLIENT_TIMEOUT_SEC = 3
SERVER_TIMEOUT_SEC = 5
MAX_RETRIES = 5
SEND_RETRY_DELAY_SEC = 1

T = TypeVar("T")
Address = Tuple[str, int]


class RetryPolicy:
    def __init__(
        self,
        timeout: float = CLIENT_TIMEOUT_SEC,
        max_attempts: int = MAX_RETRIES,
        logger: Callable[[str], None] = None,
    ):
        if timeout <= 0:
            raise ValueError("timeout deve ser positivo")
        if max_attempts < 1:
            raise ValueError("max_attempts deve ser >= 1")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.logger = logger or (lambda msg: print(msg))

    def log(self, msg: str):
        self.logger(msg)

    def wait(
        self,
        sock: socket.socket,
        accept: Callable[[bytes, Address], Optional[T]],
        on_attempt: Callable[[int], None] = None,
        describe: str = "pacote",
    ) -> T:
        """
        Aguarda um pacote qualificado por accept.

        Levanta TransferTimeout quando todas as tentativas expiram; nenhum
        pacote é enviado depois da última tentativa. Exceções levantadas
        por accept (ex.: ProtocolError) propagam imediatamente.
        """
        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)

            deadline = time.monotonic() + self.timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                try:
                    data, addr = sock.recvfrom(BUFFER_SIZE)
                except socket.timeout:
                    break

                result = accept(data, addr)
                if result is not None:
                    return result

            self.log(
                f"[TFTP-AVISO] Timeout aguardando {describe}, tentativa {attempt}/{self.max_attempts}"
            )

        raise TransferTimeout(
            f"Timeout: {describe} não recebido após {self.max_attempts} tentativas"
        )


def send_with_retry(
    sock: socket.socket,
    payload: bytes,
    addr: Address,
    attempts: int = MAX_RETRIES,
    delay: float = SEND_RETRY_DELAY_SEC,
    logger: Callable[[str], None] = None,
):
    """Reenvia um datagrama quando o transporte falha (OSError)."""
    log = logger or (lambda msg: print(msg))
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            sock.sendto(payload, addr)
            return
        except OSError as e:
            last_error = e
            log(f"[TFTP-AVISO] Falha de envio ({e}), tentativa {attempt}/{attempts}")
            if attempt < attempts:
                time.sleep(delay)

    raise TransferIOError(
        f"Falha ao enviar pacote para {addr[0]}:{addr[1]} após {attempts} tentativas: {last_error}"
    ) from last_error
