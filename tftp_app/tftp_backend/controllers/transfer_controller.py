#!/usr/bin/env python3
"""
Módulo do Controlador de Transferências

Define a classe 'TransferController' (um QObject) que recebe os pedidos
de download/upload da interface e delega o trabalho ao 'ClientWorker'
em uma thread do pool.

Apenas uma transferência por vez é permitida.
"""

import ipaddress
import os

from PySide6.QtCore import QObject, QThreadPool, Signal, Slot

from tftp_backend.logsTFTP.tftp_logger import TftpLogger
from tftp_backend.protocols.packet import TFTP_PORT
from tftp_backend.workers.client_worker import (
    ClientWorker,
    TransferDirection,
    WorkerSignals,
)


class TransferController(QObject):
    """
    Ponte entre a interface (sinais/slots) e o cliente TFTP.
    """

    logMessage = Signal(str)
    progressChanged = Signal(int)
    bytesTransferred = Signal(object)
    transferStarted = Signal(str)
    transferFinished = Signal(bool)

    def __init__(self, parent=None, file_logger: TftpLogger = None):
        super().__init__(parent)
        self.threadpool = QThreadPool()
        self.file_logger = file_logger if file_logger is not None else TftpLogger()
        self.current_worker: ClientWorker | None = None

        self._log_handler("--- SESSÃO TFTP INICIADA ---")
        self._log_handler(
            f"Controlador de transferências inicializado. Threads: {self.threadpool.maxThreadCount()}"
        )
        self._log_handler(f"Log de sessão salvo em: {self.file_logger.get_log_path()}")

    @property
    def busy(self) -> bool:
        return self.current_worker is not None

    def _log_handler(self, message: str):
        """
        Envia o log para a interface (logMessage) e para o arquivo
        (TftpLogger). Uma falha aqui nunca interrompe a aplicação.
        """
        try:
            if "erro]" in message.lower():
                print(message)

            self.logMessage.emit(message)

            if self.file_logger:
                self.file_logger.write_log(message)

        except Exception as e:
            print(f"ERRO NO LOG HANDLER: {e}")

    # ============================================================================
    # Validação de entrada
    # Descrição: Endereço IPv4 (ou "localhost"), porta entre 1 e 65535 e nome
    #            remoto não vazio. Retorna a mensagem de erro ou None.
    # ============================================================================
    @staticmethod
    def validate_target(ip: str, port: int) -> str | None:
        if not ip:
            return "Endereço do servidor não informado."
        if ip != "localhost":
            try:
                ipaddress.IPv4Address(ip)
            except ValueError:
                return f"Endereço IP inválido: {ip}"
        if not isinstance(port, int) or not 1 <= port <= 65535:
            return f"Porta inválida: {port}"
        return None

    def _refuse_if_busy(self) -> bool:
        if self.busy:
            self._log_handler("[TFTP-ERRO] Já existe uma transferência em andamento.")
            return True
        return False

    @Slot(str, str, str, int)
    def startDownload(self, remote_filename: str, destination_path: str, ip: str, port: int = TFTP_PORT):
        if self._refuse_if_busy():
            return

        error = self.validate_target(ip, port)
        if error is None and not remote_filename:
            error = "Nome do arquivo remoto não informado."
        if error is None and not destination_path:
            error = "Caminho de destino não informado."
        if error is None:
            parent = os.path.dirname(os.path.abspath(destination_path))
            if not os.path.isdir(parent):
                error = f"Diretório de destino não existe: {parent}"
        if error:
            self._log_handler(f"[TFTP-ERRO] {error}")
            return

        self._log_handler(f"Baixando '{remote_filename}' de {ip}:{port} para {destination_path}...")
        self._start_worker(
            TransferDirection.DOWNLOAD, ip, port, destination_path, remote_filename
        )

    @Slot(str, str, int, str)
    def startUpload(self, local_path: str, ip: str, port: int = TFTP_PORT, remote_filename: str = ""):
        if self._refuse_if_busy():
            return

        error = self.validate_target(ip, port)
        if error is None and (not local_path or not os.path.isfile(local_path)):
            error = f"Arquivo local não encontrado: {local_path}"
        if error:
            self._log_handler(f"[TFTP-ERRO] {error}")
            return

        remote_filename = remote_filename or os.path.basename(local_path)
        self._log_handler(f"Enviando {local_path} para {ip}:{port} como '{remote_filename}'...")
        self._start_worker(TransferDirection.UPLOAD, ip, port, local_path, remote_filename)

    def _start_worker(self, direction, ip, port, local_path, remote_filename):
        self.progressChanged.emit(0)
        self.transferStarted.emit(ip)

        worker_signals = WorkerSignals()
        worker = ClientWorker(
            direction=direction,
            ip=ip,
            port=port,
            local_path=local_path,
            remote_filename=remote_filename,
            signals=worker_signals,
        )

        worker_signals.log.connect(self._log_handler)
        worker_signals.progress.connect(self._on_progress)
        worker_signals.finished.connect(self._on_finished)

        self.current_worker = worker
        self.threadpool.start(worker)

    @Slot(object, object)
    def _on_progress(self, transferred, total):
        self.bytesTransferred.emit(transferred)
        if total:
            self.progressChanged.emit(min(100, int(100 * transferred / total)))
        elif total == 0:
            self.progressChanged.emit(100)
        else:
            self.progressChanged.emit(-1)

    @Slot(bool)
    def _on_finished(self, success: bool):
        worker = self.current_worker
        self.current_worker = None

        if (
            not success
            and worker is not None
            and worker.was_cancelled
            and worker.direction == TransferDirection.DOWNLOAD
        ):
            try:
                os.remove(worker.local_path)
                self._log_handler(f"Download parcial removido: {worker.local_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                self._log_handler(f"[TFTP-ERRO] Falha ao remover download parcial: {e}")

        if success:
            self.progressChanged.emit(100)
        self._log_handler(
            "Transferência concluída." if success else "Transferência não concluída."
        )
        self.transferFinished.emit(success)

    @Slot()
    def cancelTransfer(self):
        if not self.current_worker:
            self._log_handler("Nenhuma transferência em andamento.")
            return
        self._log_handler("Cancelamento solicitado pelo usuário.")
        self.current_worker.cancel()

    @Slot()
    def shutdown(self):
        """Cancela o que estiver em andamento, aguarda o pool e fecha o log."""
        self._log_handler("Encerramento da sessão solicitado.")
        if self.current_worker:
            self.current_worker.cancel()
        self.threadpool.waitForDone()
        if self.file_logger:
            self.file_logger.close()
