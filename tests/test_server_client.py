import socket
import threading
import time

import pytest
from h2.config import H2Configuration
from h2.connection import H2Connection

from latmeasure.client import ClientConfig, LatencyClient, open_duplex
from latmeasure.pdu import MeasurePDU
from latmeasure.server import LatencyServer, ServerConfig
from latmeasure.transport import TransportError

SCHEMES = {"tcp": "tcp", "ws": "ws", "h2": "http"}


def _endpoint(transport, address, path="/"):
    host, port = address
    if transport == "tcp":
        return f"tcp://{host}:{port}"
    return f"{SCHEMES[transport]}://{host}:{port}{path}"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def make_server():
    servers = []

    def factory(transport, dual_trip=False, path="/"):
        server = LatencyServer(
            ServerConfig(host="127.0.0.1", port=0, transport=transport, dual_trip=dual_trip, path=path)
        )
        server.start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


def _collect(endpoint, count=3):
    results = []
    done = threading.Event()

    def handler(result):
        results.append(result)
        if len(results) >= count:
            done.set()

    client = LatencyClient(ClientConfig(endpoint=endpoint, interval_ms=10), result_handler=handler)
    client.start()
    try:
        assert done.wait(5.0)
    finally:
        client.stop()
    return client, results


@pytest.mark.parametrize("transport", ["tcp", "ws", "h2"])
def test_round_trip_over_transport(make_server, transport):
    server = make_server(transport)

    client, results = _collect(_endpoint(transport, server.address))

    assert [r.seq_num for r in results[:3]] == [0, 1, 2]
    assert not any(r.has_legs for r in results)
    assert client.stats.probes_sent >= 3
    assert client.error is None
    assert _wait_for(lambda: server.connection_count == 0)


@pytest.mark.parametrize("transport", ["tcp", "ws", "h2"])
def test_dual_trip_over_transport(make_server, transport):
    server = make_server(transport, dual_trip=True)

    _, results = _collect(_endpoint(transport, server.address))

    assert all(r.has_legs for r in results)


def test_server_tracks_connections(make_server):
    server = make_server("tcp")
    client = LatencyClient(ClientConfig(endpoint=_endpoint("tcp", server.address), interval_ms=10))
    client.start()
    try:
        assert _wait_for(lambda: server.connection_count == 1)
    finally:
        client.stop()

    assert _wait_for(lambda: server.connection_count == 0)


@pytest.mark.parametrize("transport", ["tcp", "ws", "h2"])
def test_server_stop_closes_live_connections(make_server, transport):
    server = make_server(transport)
    client = LatencyClient(ClientConfig(endpoint=_endpoint(transport, server.address), interval_ms=10))
    client.start()
    try:
        assert _wait_for(lambda: server.connection_count == 1)
        server.stop()
        assert client.wait(5.0)
    finally:
        client.stop()


def test_websocket_unknown_path_is_rejected(make_server):
    server = make_server("ws", path="/probe")

    with pytest.raises(TransportError):
        open_duplex(_endpoint("ws", server.address, "/other"), timeout=2.0)


def test_http2_unknown_path_stops_client(make_server):
    server = make_server("h2", path="/probe")
    client = LatencyClient(ClientConfig(endpoint=_endpoint("h2", server.address, "/other"), interval_ms=10))
    client.start()
    try:
        assert client.wait(5.0)
    finally:
        client.stop()

    assert isinstance(client.error, TransportError)


def test_connection_refused_is_transport_error(make_server):
    server = make_server("tcp")
    address = server.address
    server.stop()

    with pytest.raises(TransportError):
        open_duplex(_endpoint("tcp", address), timeout=2.0)


@pytest.mark.parametrize("endpoint", ["udp://127.0.0.1:1", "127.0.0.1:80", "tcp://127.0.0.1"])
def test_bad_endpoint_is_rejected(endpoint):
    with pytest.raises(ValueError):
        open_duplex(endpoint)


def test_unknown_server_transport():
    with pytest.raises(ValueError):
        LatencyServer(ServerConfig(transport="quic"))


def test_accept_failure_stops_server(make_server):
    server = make_server("tcp")

    # a listener closed underneath the accept loop makes accept() fail
    server._listener.close()

    assert server.wait(5.0)
    assert isinstance(server.error, OSError)


def test_http2_echo_holds_back_window_from_a_stalled_reader(make_server):
    server = make_server("h2")
    sock = socket.create_connection(server.address, timeout=0.2)
    conn = H2Connection(config=H2Configuration(client_side=True))
    conn.initiate_connection()
    stream_id = conn.get_next_available_stream_id()
    conn.send_headers(
        stream_id,
        [(":method", "POST"), (":scheme", "http"), (":authority", "127.0.0.1"), (":path", "/")],
    )
    sock.sendall(conn.data_to_send())
    payload = MeasurePDU(seq_num=1).encode() * 256
    sent = 0
    deadline = time.monotonic() + 3.0
    try:
        while sent < 4_000_000 and time.monotonic() < deadline:
            size = min(conn.local_flow_control_window(stream_id), conn.max_outbound_frame_size, len(payload))
            if size > 0:
                conn.send_data(stream_id, payload[:size])
                sent += size
                sock.sendall(conn.data_to_send())
                continue
            try:
                data = sock.recv(65536)
            except socket.timeout:
                continue
            if not data:
                break
            # window updates are honoured, echoed DATA is never acknowledged
            conn.receive_data(data)
            sock.sendall(conn.data_to_send())

        assert _wait_for(lambda: server.connection_count == 1)
        (echo,) = server._snapshot()
        assert sent < 1_000_000
        assert echo.pending_bytes < 1_000_000
    finally:
        sock.close()
