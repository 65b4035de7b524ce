"""Measurement PDU layout and codec.

Every probe is a fixed 64-byte record, all integers big-endian::

    offset  length  field
         0      23  preamble   magic bytes marking a packet boundary
        23       9  reserved   zero
        32       8  rev        protocol revision (1)
        40       8  cliTx      client send time, wall-clock ms
        48       8  srvTx      server receive time, wall-clock ms, 0 if unset
        56       8  seqNum     sequence number

The parser strips the preamble before handing a packet downstream, so the
codec also decodes the 41-byte post-preamble remainder (the SDU).
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, NamedTuple, Sequence

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------


class FieldSpec(NamedTuple):
    name: str
    offset: int
    length: int


MAGIC = b"node latency-measure.js"
PACKET_SIZE = 64
BYTE_ORDER = "big"
PROTOCOL_REV = 1

FIELD_PREAMBLE = FieldSpec("preamble", 0, 23)
FIELD_RESERVED = FieldSpec("reserved", 23, 9)
FIELD_REV = FieldSpec("rev", 32, 8)
FIELD_CLI_TX = FieldSpec("cliTx", 40, 8)
FIELD_SRV_TX = FieldSpec("srvTx", 48, 8)
FIELD_SEQ_NUM = FieldSpec("seqNum", 56, 8)

PACKET_FIELDS = (
    FIELD_PREAMBLE,
    FIELD_RESERVED,
    FIELD_REV,
    FIELD_CLI_TX,
    FIELD_SRV_TX,
    FIELD_SEQ_NUM,
)

SDU_SIZE = PACKET_SIZE - len(MAGIC)
UINT64_MASK = (1 << 64) - 1

_U64 = struct.Struct("!Q")


class ProtocolError(Exception):
    """Raised when a buffer cannot be decoded as a measurement PDU."""


class TruncatedPacketError(ProtocolError):
    """Raised when a decode is attempted on a buffer shorter than a packet."""


class LayoutError(Exception):
    """Raised when the packet field table is internally inconsistent."""


def check_packet_layout(
    fields: Sequence[FieldSpec] = PACKET_FIELDS,
    *,
    total_size: int = PACKET_SIZE,
    magic: bytes = MAGIC,
    byte_order: str = BYTE_ORDER,
) -> None:
    """Validate the field table; any violation means the process must not run."""

    total = sum(f.length for f in fields)
    if total != total_size:
        raise LayoutError(f"Packet total size mismatch: fields sum to {total}, expected {total_size}")
    preamble = next((f for f in fields if f.name == FIELD_PREAMBLE.name), None)
    if preamble is None:
        raise LayoutError("Packet layout has no preamble field")
    if preamble.length != len(magic):
        raise LayoutError(
            f"Magic length {len(magic)} does not match preamble length {preamble.length}"
        )
    if byte_order != "big":
        raise LayoutError(f"Wire byte order must be big-endian, got {byte_order!r}")
    ordered = sorted(fields, key=lambda f: f.offset)
    if ordered[0].offset != 0:
        raise LayoutError(f"First field {ordered[0].name} starts at {ordered[0].offset}, expected 0")
    for current, following in zip(ordered, ordered[1:]):
        if current.offset + current.length != following.offset:
            raise LayoutError(
                f"Field {current.name} (offset {current.offset}, length {current.length}) "
                f"is not contiguous with {following.name} at offset {following.offset}"
            )


def field_table() -> Dict[str, FieldSpec]:
    return {f.name: f for f in PACKET_FIELDS}


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


@dataclass
class MeasurePDU:
    rev: int = PROTOCOL_REV
    cli_tx: int = 0
    srv_tx: int = 0
    seq_num: int = 0
    valid: bool = True

    @classmethod
    def from_timestamp(cls, cli_tx: int) -> "MeasurePDU":
        return cls(cli_tx=int(cli_tx))

    def encode(self) -> bytes:
        buf = bytearray(PACKET_SIZE)
        buf[FIELD_PREAMBLE.offset : FIELD_PREAMBLE.offset + FIELD_PREAMBLE.length] = MAGIC
        _U64.pack_into(buf, FIELD_REV.offset, PROTOCOL_REV)
        _U64.pack_into(buf, FIELD_CLI_TX.offset, self.cli_tx & UINT64_MASK)
        _U64.pack_into(buf, FIELD_SRV_TX.offset, self.srv_tx & UINT64_MASK)
        _U64.pack_into(buf, FIELD_SEQ_NUM.offset, self.seq_num & UINT64_MASK)
        return bytes(buf)

    @classmethod
    def decode(cls, data) -> "MeasurePDU":
        """Decode a full packet, preamble included.

        A preamble mismatch does not raise: the result comes back with
        ``valid`` unset and the caller decides between resync and rejection.
        """

        if len(data) < PACKET_SIZE:
            raise TruncatedPacketError(
                f"Incorrect buffer size, expecting {PACKET_SIZE}, got {len(data)}"
            )
        pdu = cls._read_fields(data, 0)
        pdu.valid = bytes(data[: len(MAGIC)]) == MAGIC
        return pdu

    @classmethod
    def from_sdu(cls, data) -> "MeasurePDU":
        """Decode the bytes that follow a matched preamble."""

        if len(data) < SDU_SIZE:
            raise TruncatedPacketError(
                f"Incorrect buffer size, expecting {SDU_SIZE}, got {len(data)}"
            )
        return cls._read_fields(data, -len(MAGIC))

    @classmethod
    def _read_fields(cls, data, shift: int) -> "MeasurePDU":
        (rev,) = _U64.unpack_from(data, FIELD_REV.offset + shift)
        (cli_tx,) = _U64.unpack_from(data, FIELD_CLI_TX.offset + shift)
        (srv_tx,) = _U64.unpack_from(data, FIELD_SRV_TX.offset + shift)
        (seq_num,) = _U64.unpack_from(data, FIELD_SEQ_NUM.offset + shift)
        return cls(rev=rev, cli_tx=cli_tx, srv_tx=srv_tx, seq_num=seq_num)

    def __str__(self) -> str:
        return (
            f"MeasurePDU {{ rev: {self.rev}, cliTx: {self.cli_tx}, "
            f"srvTx: {self.srv_tx}, seqNum: {self.seq_num} }}"
        )
