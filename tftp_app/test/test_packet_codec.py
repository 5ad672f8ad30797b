import struct
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from tftp_backend.protocols.packet import (  # noqa: E402
    BLOCK_SIZE,
    TFTP_OPCODE,
    Ack,
    Data,
    Error,
    ReadRequest,
    TransferMode,
    WriteRequest,
    decode,
    encode,
    next_block,
)
from tftp_backend.protocols.tftp_errors import MalformedPacket  # noqa: E402

# ============================================================================
# Codec de pacotes TFTP
# Descrição: Serialização big-endian dos cinco tipos de pacote e análise
#            estrita, sem leitura além do buffer recebido.
# ============================================================================


@pytest.mark.functional
@pytest.mark.parametrize(
    "packet",
    [
        ReadRequest("firmware.bin"),
        WriteRequest("dir/imagem.img", TransferMode.NETASCII),
        Data(0, b""),
        Data(65535, b"x" * BLOCK_SIZE),
        Ack(0),
        Ack(65535),
        Error(1, "File not found"),
        Error(0, ""),
    ],
)
def test_decode_inverts_encode(packet):
    assert decode(encode(packet)) == packet


def test_encode_wire_layout():
    assert encode(ReadRequest("a.txt")) == b"\x00\x01a.txt\x00octet\x00"
    assert encode(Data(258, b"hi")) == b"\x00\x03\x01\x02hi"
    assert encode(Ack(7)) == struct.pack("!HH", TFTP_OPCODE.ACK.value, 7)
    assert encode(Error(2, "nope")) == b"\x00\x05\x00\x02nope\x00"


@pytest.mark.functional
@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"\x00",
        b"\x00\x09\x00\x01",
        b"\x00\x00",
        b"\x00\x03\x00",
        b"\x00\x04\x00",
        b"\x00\x05\x00\x01no-terminator",
        b"\x00\x01file-without-nul",
        b"\x00\x01file\x00octet",
        b"\x00\x02file\x00binary\x00",
        b"\x00\x01\xff\xfe\x00octet\x00",
        b"\x00\x03\x00\x01" + b"z" * (BLOCK_SIZE + 1),
    ],
)
def test_decode_rejects_malformed(raw):
    with pytest.raises(MalformedPacket):
        decode(raw)


def test_malformed_packet_is_value_error():
    with pytest.raises(ValueError):
        decode(b"\x00")


def test_mode_is_case_insensitive_and_options_ignored():
    pkt = decode(b"\x00\x01boot.bin\x00OcTeT\x00blksize\x001428\x00")
    assert pkt == ReadRequest("boot.bin", TransferMode.OCTET)


@pytest.mark.parametrize(
    "packet",
    [
        Data(1, b"x" * (BLOCK_SIZE + 1)),
        Data(65536, b""),
        Ack(-1),
        Error(70000, "x"),
        ReadRequest("bad\0name"),
        Error(0, "bad\0msg"),
        WriteRequest(None),
    ],
)
def test_encode_rejects_invalid_fields(packet):
    with pytest.raises(ValueError):
        encode(packet)


def test_data_last_block_flag():
    assert Data(1, b"").is_last
    assert Data(1, b"a" * 176).is_last
    assert not Data(1, b"a" * BLOCK_SIZE).is_last


def test_block_number_wraps():
    assert next_block(65535) == 0
    assert next_block(1) == 2


def test_packets_are_immutable():
    pkt = Ack(3)
    with pytest.raises(AttributeError):
        pkt.block = 4
