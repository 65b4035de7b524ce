"""Network latency measurement over TCP, WebSocket and HTTP/2."""

__version__ = "0.1.0"

from .client import ClientConfig, LatencyClient
from .latency import LatencyAnalyzer, LatencyCalculator, SendTxTracker
from .packet import PacketParser, TimedPacket, iter_packets
from .pdu import PACKET_SIZE, LayoutError, MeasurePDU, ProtocolError, TruncatedPacketError
from .server import LatencyServer, ServerConfig
from .stream_edit import StreamEditor, timestamp_plan
from .transport import TransportError

__all__ = [
    "__version__",
    "ClientConfig",
    "LatencyClient",
    "LatencyAnalyzer",
    "LatencyCalculator",
    "SendTxTracker",
    "PacketParser",
    "TimedPacket",
    "iter_packets",
    "PACKET_SIZE",
    "LayoutError",
    "MeasurePDU",
    "ProtocolError",
    "TruncatedPacketError",
    "LatencyServer",
    "ServerConfig",
    "StreamEditor",
    "timestamp_plan",
    "TransportError",
]
