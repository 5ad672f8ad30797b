#!/usr/bin/env python3
r"""
\file tftp_logger.py
\brief Arquivo de log de sessão do cliente e do servidor TFTP.

\details
A classe \c TftpLogger abre um arquivo por sessão, com timestamp no nome,
dentro de ``logs/`` (ou do diretório informado). Cada linha recebe o
prefixo ``[HH:MM:SS.mmm]``.

O servidor registra a partir de várias threads do pool ao mesmo tempo,
então toda escrita é serializada por um lock.
"""

import datetime
import threading
from pathlib import Path
from typing import TextIO, Union


class TftpLogger:
    r"""
    \class TftpLogger
    \brief Gerencia um único arquivo de log para uma sessão TFTP.

    \details
    Falhas de I/O nunca são propagadas: sem arquivo, as mensagens vão
    para a saída padrão.
    """

    LOG_DIR = Path(__file__).resolve().parents[2] / "logs"

    def __init__(self, log_dir: Union[str, Path, None] = None, session_name: str = "TFTP"):
        r"""
        \param log_dir Diretório de destino; usa \c LOG_DIR quando omitido.
        \param session_name Prefixo do nome do arquivo (ex.: ``TFTP_Sessao_...``).
        """
        self.log_dir = Path(log_dir) if log_dir else self.LOG_DIR
        self.session_name = session_name
        self.log_file: TextIO | None = None
        self.log_path: str = ""
        self._lock = threading.Lock()
        self._init_log_file()

    def _init_log_file(self):
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)

            now_str = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            log_path = self.log_dir / f"{self.session_name}_Sessao_{now_str}.txt"

            self.log_path = str(log_path)
            self.log_file = log_path.open("a", encoding="utf-8")

            print(f"Sessão de log iniciada. Arquivo: {self.log_path}")

        except OSError as e:
            print(f"ERRO CRÍTICO: Falha ao inicializar logger de arquivo: {e}")
            self.log_file = None

    def get_log_path(self) -> str:
        return self.log_path

    def write_log(self, message: str):
        r"""
        \brief Escreve ``[HH:MM:SS.mmm] message`` no arquivo e faz flush.
        """
        with self._lock:
            if not self.log_file:
                print(f"LOG (sem arquivo): {message}")
                return

            try:
                now = datetime.datetime.now()
                timestamp = now.strftime("%H:%M:%S")
                ms = now.microsecond // 1000

                self.log_file.write(f"[{timestamp}.{ms:03d}] {message}\n")
                self.log_file.flush()

            except (OSError, ValueError) as e:
                print(f"ERRO CRÍTICO: Falha ao escrever no log: {e}")

    # Permite passar a instância diretamente como logger: Callable[[str], None].
    __call__ = write_log

    def close(self):
        r"""
        \brief Registra ``--- SESSÃO <nome> FINALIZADA ---`` e fecha o arquivo.

        Chamadas repetidas não têm efeito.
        """
        if self.log_file:
            self.write_log(f"--- SESSÃO {self.session_name} FINALIZADA ---")
            with self._lock:
                self.log_file.close()
                self.log_file = None
