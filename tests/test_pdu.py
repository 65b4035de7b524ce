import struct

import pytest

from latmeasure.pdu import (
    FIELD_CLI_TX,
    FIELD_PREAMBLE,
    FIELD_SEQ_NUM,
    MAGIC,
    PACKET_FIELDS,
    PACKET_SIZE,
    SDU_SIZE,
    UINT64_MASK,
    FieldSpec,
    LayoutError,
    MeasurePDU,
    ProtocolError,
    TruncatedPacketError,
    check_packet_layout,
    field_table,
)


def test_canonical_layout_is_valid():
    check_packet_layout()

    assert sum(f.length for f in PACKET_FIELDS) == PACKET_SIZE
    assert len(MAGIC) == FIELD_PREAMBLE.length == 23
    assert SDU_SIZE == 41


def test_field_table_offsets():
    table = field_table()

    assert [table[name].offset for name in ("preamble", "reserved", "rev", "cliTx", "srvTx", "seqNum")] == [
        0,
        23,
        32,
        40,
        48,
        56,
    ]


def test_layout_size_mismatch():
    fields = PACKET_FIELDS[:-1]

    with pytest.raises(LayoutError, match="total size"):
        check_packet_layout(fields)


def test_layout_gap_is_rejected():
    fields = list(PACKET_FIELDS)
    fields[2] = FieldSpec("rev", 33, 8)

    with pytest.raises(LayoutError, match="contiguous"):
        check_packet_layout(fields)


def test_layout_preamble_must_match_magic():
    with pytest.raises(LayoutError):
        check_packet_layout(magic=b"short")


def test_layout_requires_big_endian():
    with pytest.raises(LayoutError):
        check_packet_layout(byte_order="little")


def test_encode_layout():
    wire = MeasurePDU(cli_tx=1234, seq_num=7).encode()

    assert len(wire) == PACKET_SIZE
    assert wire[:23] == MAGIC
    assert wire[23:32] == bytes(9)
    assert struct.unpack_from("!Q", wire, 32) == (1,)
    assert struct.unpack_from("!Q", wire, FIELD_CLI_TX.offset) == (1234,)
    assert struct.unpack_from("!Q", wire, 48) == (0,)
    assert struct.unpack_from("!Q", wire, FIELD_SEQ_NUM.offset) == (7,)


@pytest.mark.parametrize("value", [0, 1, 2**63, UINT64_MASK])
def test_codec_keeps_full_64_bit_range(value):
    pdu = MeasurePDU(cli_tx=value, srv_tx=value, seq_num=value)

    decoded = MeasurePDU.decode(pdu.encode())

    assert (decoded.rev, decoded.cli_tx, decoded.srv_tx, decoded.seq_num) == (1, value, value, value)
    assert MeasurePDU.from_sdu(pdu.encode()[len(MAGIC) :]).seq_num == value


def test_decode_preserves_fields():
    pdu = MeasurePDU(cli_tx=1_700_000_000_000, srv_tx=1_700_000_000_005, seq_num=42)

    decoded = MeasurePDU.decode(pdu.encode())

    assert decoded.valid
    assert decoded.rev == 1
    assert decoded.cli_tx == pdu.cli_tx
    assert decoded.srv_tx == pdu.srv_tx
    assert decoded.seq_num == 42


def test_decode_marks_bad_preamble_invalid():
    wire = bytearray(MeasurePDU(seq_num=3).encode())
    wire[0] ^= 0xFF

    decoded = MeasurePDU.decode(bytes(wire))

    assert not decoded.valid
    assert decoded.seq_num == 3


def test_decode_short_buffer_raises():
    with pytest.raises(TruncatedPacketError):
        MeasurePDU.decode(bytes(63))


def test_from_sdu_skips_preamble():
    wire = MeasurePDU(cli_tx=99, seq_num=5).encode()

    decoded = MeasurePDU.from_sdu(wire[len(MAGIC):])

    assert decoded.cli_tx == 99
    assert decoded.seq_num == 5


def test_from_sdu_short_buffer_is_protocol_error():
    with pytest.raises(ProtocolError):
        MeasurePDU.from_sdu(bytes(SDU_SIZE - 1))


def test_from_timestamp_builds_client_probe():
    pdu = MeasurePDU.from_timestamp(1000)

    assert pdu.cli_tx == 1000
    assert pdu.srv_tx == 0
    assert "cliTx: 1000" in str(pdu)
