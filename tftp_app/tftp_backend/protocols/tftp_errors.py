#!/usr/bin/env python3
"""
Módulo de Erros TFTP

Define a hierarquia de exceções usada pelo cliente, pelo servidor
e pelo codec de pacotes.

Os códigos de erro seguem a RFC 1350 (0 a 7).
"""

from enum import Enum


class TFTP_ERROR(Enum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7


class TftpError(Exception):
    """Base de todas as falhas de transferência TFTP."""


class MalformedPacket(TftpError, ValueError):
    """Datagrama que não pode ser decodificado como pacote TFTP."""


class ProtocolError(TftpError):
    """
    Erro reportado pelo par (pacote ERROR) ou por uma verificação de
    política do servidor.

    O código é repassado sem alteração para quem chamou a transferência.
    remote=True indica que o erro veio do par e não deve ser respondido.
    """

    default_code = TFTP_ERROR.NOT_DEFINED

    def __init__(self, message: str, code: int = None, remote: bool = False):
        super().__init__(message)
        self.code = self.default_code.value if code is None else int(code)
        self.message = message
        self.remote = remote

    def to_packet(self):
        # Import tardio: packet.py importa este módulo.
        from tftp_backend.protocols.packet import Error

        return Error(self.code, self.message)

    def __str__(self) -> str:
        return f"Erro TFTP {self.code}: {self.message}"


class FileNotFound(ProtocolError):
    default_code = TFTP_ERROR.FILE_NOT_FOUND


class AccessViolation(ProtocolError):
    default_code = TFTP_ERROR.ACCESS_VIOLATION


class DiskFull(ProtocolError):
    default_code = TFTP_ERROR.DISK_FULL


class UnknownTransferId(ProtocolError):
    default_code = TFTP_ERROR.UNKNOWN_TID


class FileExists(ProtocolError):
    default_code = TFTP_ERROR.FILE_EXISTS


class TransferTimeout(TftpError, TimeoutError):
    """Limite de tentativas esgotado aguardando um pacote válido."""


class TransferCancelled(TftpError):
    """Transferência interrompida a pedido de quem a iniciou."""


class TransferIOError(TftpError):
    """Falha do sistema de arquivos local no meio da transferência."""


_CODE_TO_CLASS = {
    cls.default_code.value: cls
    for cls in (FileNotFound, AccessViolation, DiskFull, UnknownTransferId, FileExists)
}


def protocol_error_from_code(code: int, message: str) -> ProtocolError:
    """Converte um pacote ERROR recebido na subclasse correspondente ao código."""
    cls = _CODE_TO_CLASS.get(code, ProtocolError)
    return cls(message, code, remote=True)
