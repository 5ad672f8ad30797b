# This Python file uses the following encoding: utf-8
"""
@file main.py
@brief Ponto de entrada do servidor TFTP.

Uso:
    python main.py [diretorio_base] [porta]

Sem argumentos, serve ./tftp-server-files na porta 69 (que costuma exigir
privilégios de administrador).

Principais responsabilidades:
    - Criar a instância da aplicação Qt (QCoreApplication, sem interface).
    - Abrir o arquivo de log da sessão (TftpLogger).
    - Iniciar o TftpServer e encerrá-lo em SIGINT/SIGTERM.
"""
import signal
import sys

from PySide6.QtCore import QCoreApplication, QTimer

from tftp_backend.logsTFTP.tftp_logger import TftpLogger
from tftp_backend.protocols.packet import TFTP_PORT
from tftp_backend.server.tftp_server import DEFAULT_BASE_DIR, TftpServer


def parse_args(argv):
    """Lê [diretorio_base] [porta] de argv; levanta ValueError se inválido."""
    base_dir = argv[1] if len(argv) > 1 else DEFAULT_BASE_DIR
    port = TFTP_PORT
    if len(argv) > 2:
        port = int(argv[2])
        if not 0 <= port <= 65535:
            raise ValueError(f"Porta fora do intervalo: {port}")
    return base_dir, port


def main(argv=None) -> int:
    argv = sys.argv if argv is None else argv
    try:
        base_dir, port = parse_args(argv)
    except ValueError as e:
        print(f"[SERVIDOR-ERRO] Argumentos inválidos: {e}")
        print("Uso: python main.py [diretorio_base] [porta]")
        return 2

    app = QCoreApplication(argv)
    file_logger = TftpLogger(session_name="TFTP_Servidor")

    def log_handler(message: str):
        print(message)
        file_logger.write_log(message)

    server = TftpServer(port=port, base_dir=base_dir, logger=log_handler)
    try:
        server.start()
    except OSError as e:
        log_handler(f"[SERVIDOR-ERRO] Não foi possível abrir a porta {port}: {e}")
        file_logger.close()
        return 1

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    signal.signal(signal.SIGTERM, lambda *_: app.quit())

    # O interpretador só trata sinais quando recupera o controle do laço Qt.
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(500)

    exit_code = app.exec()

    server.stop()
    file_logger.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
