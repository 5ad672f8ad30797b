#!/usr/bin/env python3
"""
Módulo de Pacotes TFTP

Serializa e analisa os cinco tipos de pacote da RFC 1350:

    RRQ   | 01 | filename | 0 | mode | 0 |
    WRQ   | 02 | filename | 0 | mode | 0 |
    DATA  | 03 | block(2) | payload (0-512) |
    ACK   | 04 | block(2) |
    ERROR | 05 | code(2)  | message | 0 |

Todos os campos numéricos são big-endian de 16 bits. Os pacotes são
imutáveis; cada variante é construída diretamente pela sua dataclass.

Não contém dependências do Qt (PySide6).
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Union

from tftp_backend.protocols.tftp_errors import MalformedPacket

# ============================================================================
# Constantes do protocolo
# Descrição: Porta bem conhecida, tamanho de bloco e tamanho máximo de
#            datagrama (4 bytes de cabeçalho + 512 de dados).
# ============================================================================
TFTP_PORT = 69
BLOCK_SIZE = 512
BUFFER_SIZE = 4 + BLOCK_SIZE
MAX_BLOCK_NUMBER = 0xFFFF


class TFTP_OPCODE(Enum):
    RRQ = 1
    WRQ = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class TransferMode(Enum):
    """
    Modos aceitos no campo 'mode' de RRQ/WRQ.

    NETASCII é validado mas tratado como OCTET: nenhuma tradução de
    fim de linha é feita.
    """

    NETASCII = "netascii"
    OCTET = "octet"

    @classmethod
    def from_string(cls, value: str) -> "TransferMode":
        lowered = value.lower()
        for mode in cls:
            if mode.value == lowered:
                return mode
        raise ValueError(f"Modo TFTP inválido: {value!r}")


@dataclass(frozen=True, slots=True)
class ReadRequest:
    filename: str
    mode: TransferMode = TransferMode.OCTET

    opcode = TFTP_OPCODE.RRQ


@dataclass(frozen=True, slots=True)
class WriteRequest:
    filename: str
    mode: TransferMode = TransferMode.OCTET

    opcode = TFTP_OPCODE.WRQ


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    opcode = TFTP_OPCODE.DATA

    @property
    def is_last(self) -> bool:
        return len(self.payload) < BLOCK_SIZE


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    opcode = TFTP_OPCODE.ACK


@dataclass(frozen=True, slots=True)
class Error:
    code: int
    message: str = ""

    opcode = TFTP_OPCODE.ERROR


Packet = Union[ReadRequest, WriteRequest, Data, Ack, Error]


def next_block(block: int) -> int:
    """Número do bloco seguinte, com rollover módulo 65536."""
    return (block + 1) & MAX_BLOCK_NUMBER


def previous_block(block: int) -> int:
    return (block - 1) & MAX_BLOCK_NUMBER


# ============================================================================
# Serialização
# Descrição: encode() só falha por erro de programação (campo ausente,
#            número fora de 16 bits, payload maior que BLOCK_SIZE ou NUL
#            dentro de string).
# ============================================================================
def _check_u16(value: int, field: str):
    if not isinstance(value, int) or not 0 <= value <= MAX_BLOCK_NUMBER:
        raise ValueError(f"{field} fora do intervalo de 16 bits: {value!r}")


def _encode_string(value: str, field: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"{field} ausente ou inválido: {value!r}")
    raw = value.encode("utf-8")
    if b"\0" in raw:
        raise ValueError(f"{field} não pode conter NUL")
    return raw + b"\0"


def encode(packet: Packet) -> bytes:
    if isinstance(packet, (ReadRequest, WriteRequest)):
        if not isinstance(packet.mode, TransferMode):
            raise ValueError(f"Modo ausente ou inválido: {packet.mode!r}")
        return (
            struct.pack("!H", packet.opcode.value)
            + _encode_string(packet.filename, "filename")
            + _encode_string(packet.mode.value, "mode")
        )

    if isinstance(packet, Data):
        _check_u16(packet.block, "block")
        if packet.payload is None or len(packet.payload) > BLOCK_SIZE:
            raise ValueError("DATA maior que BLOCK_SIZE")
        return struct.pack("!HH", TFTP_OPCODE.DATA.value, packet.block) + bytes(
            packet.payload
        )

    if isinstance(packet, Ack):
        _check_u16(packet.block, "block")
        return struct.pack("!HH", TFTP_OPCODE.ACK.value, packet.block)

    if isinstance(packet, Error):
        _check_u16(packet.code, "error code")
        return struct.pack("!HH", TFTP_OPCODE.ERROR.value, packet.code) + (
            _encode_string(packet.message, "message")
        )

    raise ValueError(f"Tipo de pacote desconhecido: {type(packet).__name__}")


# ============================================================================
# Análise
# Descrição: decode() falha com MalformedPacket para datagrama curto,
#            opcode desconhecido, campo de largura fixa incompleto, string
#            sem terminador NUL, modo inválido ou payload acima de 512.
#            Nunca lê além do buffer recebido.
# ============================================================================
def _read_string(data: bytes, offset: int, field: str):
    end = data.find(b"\0", offset)
    if end == -1:
        raise MalformedPacket(f"{field} sem terminador NUL")
    try:
        value = data[offset:end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPacket(f"{field} não é UTF-8 válido") from e
    return value, end + 1


def _read_u16(data: bytes, offset: int, field: str) -> int:
    if len(data) < offset + 2:
        raise MalformedPacket(f"Pacote truncado: {field} incompleto")
    return struct.unpack_from("!H", data, offset)[0]


def decode(data: bytes) -> Packet:
    if len(data) < 2:
        raise MalformedPacket(f"Pacote muito pequeno: {len(data)} bytes")

    raw_opcode = struct.unpack_from("!H", data, 0)[0]
    try:
        opcode = TFTP_OPCODE(raw_opcode)
    except ValueError:
        raise MalformedPacket(f"Opcode desconhecido: {raw_opcode}") from None

    if opcode in (TFTP_OPCODE.RRQ, TFTP_OPCODE.WRQ):
        filename, offset = _read_string(data, 2, "filename")
        mode_name, _ = _read_string(data, offset, "mode")
        try:
            mode = TransferMode.from_string(mode_name)
        except ValueError as e:
            raise MalformedPacket(str(e)) from e
        # Opções depois do modo (RFC 2347) são ignoradas.
        if opcode == TFTP_OPCODE.RRQ:
            return ReadRequest(filename, mode)
        return WriteRequest(filename, mode)

    if opcode == TFTP_OPCODE.DATA:
        block = _read_u16(data, 2, "block")
        payload = bytes(data[4:])
        if len(payload) > BLOCK_SIZE:
            raise MalformedPacket(f"DATA com {len(payload)} bytes (máximo {BLOCK_SIZE})")
        return Data(block, payload)

    if opcode == TFTP_OPCODE.ACK:
        return Ack(_read_u16(data, 2, "block"))

    code = _read_u16(data, 2, "error code")
    message, _ = _read_string(data, 4, "message")
    return Error(code, message)
