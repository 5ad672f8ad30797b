#!/usr/bin/env python3
"""
Módulo do Worker de Cliente TFTP

Define o worker assíncrono (QRunnable) que executa um download ou upload
em uma thread do pool, sem bloquear a thread principal.

Ele é a "cola" entre o 'TransferController' (Qt) e o 'TFTPClient'
(lógica pura).
"""

import traceback
from enum import Enum

from PySide6.QtCore import QObject, QRunnable, Signal, Slot

from tftp_backend.protocols.retry_policy import CLIENT_TIMEOUT_SEC, MAX_RETRIES
from tftp_backend.protocols.tftp_client import TFTPClient
from tftp_backend.protocols.tftp_errors import TransferCancelled


class TransferDirection(Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


class WorkerSignals(QObject):
    """
    Sinais disponíveis para o worker.

    progress carrega (bytes transferidos, total ou None quando
    desconhecido); object evita o limite de 32 bits do int do Qt.
    """

    log = Signal(str)
    progress = Signal(object, object)
    finished = Signal(bool)


class ClientWorker(QRunnable):
    def __init__(
        self,
        direction: TransferDirection,
        ip: str,
        port: int,
        local_path: str,
        remote_filename: str,
        signals: WorkerSignals,
        timeout: float = CLIENT_TIMEOUT_SEC,
        max_retries: int = MAX_RETRIES,
    ):
        super().__init__()
        self.direction = direction
        self.ip = ip
        self.port = port
        self.local_path = local_path
        self.remote_filename = remote_filename
        self.signals = signals
        self.transferred = 0
        self.was_cancelled = False

        def logger(msg):
            self.signals.log.emit(msg)

        self.client = TFTPClient(
            ip, server_port=port, timeout=timeout, max_retries=max_retries, logger=logger
        )

    def cancel(self):
        self.client.cancel()

    @Slot()
    def run(self):
        """
        Executa a transferência e emite finished(True) apenas em sucesso.
        """
        self.signals.log.emit(
            f"[WORKER] Iniciando {self.direction.value} com {self.ip}:{self.port}..."
        )

        try:
            def progress(transferred, total):
                self.signals.progress.emit(transferred, total)

            if self.direction == TransferDirection.DOWNLOAD:
                self.transferred = self.client.read_file(
                    self.remote_filename, self.local_path, progress
                )
            else:
                self.transferred = self.client.write_file(
                    self.local_path, self.remote_filename, progress
                )

            self.signals.finished.emit(True)

        except TransferCancelled as e:
            self.was_cancelled = True
            self.signals.log.emit(f"[WORKER] {e}")
            self.signals.finished.emit(False)

        except Exception as e:
            self.signals.log.emit(f"[WORKER-ERRO] Erro fatal na thread: {e}")
            self.signals.log.emit(traceback.format_exc())
            self.signals.finished.emit(False)

        finally:
            self.client.close()
            self.signals.log.emit("[WORKER] Thread encerrada e sockets limpos.")
