import pytest

from latmeasure.pdu import MAGIC, MeasurePDU
from latmeasure.stream_edit import (
    IdentityFilter,
    StreamEditConfig,
    StreamEditor,
    StreamEditPlan,
    stamp_server_receive_time,
    timestamp_plan,
)


def _uppercase(window):
    window[:] = bytes(window).upper()


def _editor(offset=2, action=_uppercase, access_code=b"\x01\x02\x03\x04"):
    return StreamEditor(StreamEditConfig(access_code, StreamEditPlan(offset, action)))


def test_window_after_match_is_handed_to_action():
    seen = []
    editor = _editor(action=lambda window: seen.append(bytes(window)))
    stream = bytes.fromhex("4b5a01020304a3a41618")

    out = editor.feed(stream) + editor.flush()

    assert seen == [bytes.fromhex("a3a416")]
    assert out == stream


def test_patch_is_applied_in_place():
    editor = _editor()

    out = editor.feed(b"ab\x01\x02\x03\x04xyzw")

    assert out == b"ab\x01\x02\x03\x04XYZw"
    assert editor.flush() == b""
    assert editor.patched == 1


def test_flush_returns_held_window_unpatched():
    editor = _editor()

    assert editor.feed(b"\x01\x02\x03\x04xy") == b"\x01\x02\x03\x04"
    assert editor.flush() == b"xy"
    assert editor.patched == 0


def test_bytes_are_forwarded_regardless_of_chunking():
    data = b"..\x01\x02\x03\x04abc..\x01\x02\x03\x04def.."
    whole = _editor()
    expected = whole.feed(data) + whole.flush()

    editor = _editor()
    out = b"".join(editor.feed(data[i : i + 1]) for i in range(len(data))) + editor.flush()

    assert out == expected == b"..\x01\x02\x03\x04ABC..\x01\x02\x03\x04DEF.."


def test_window_waits_for_enough_bytes():
    editor = _editor()

    assert editor.feed(b"\x01\x02\x03\x04x") == b"\x01\x02\x03\x04"
    assert editor.feed(b"y") == b""
    assert editor.feed(b"z") == b"XYZ"


def test_resizing_action_is_rejected():
    editor = _editor(action=lambda window: window.append(0))

    with pytest.raises(RuntimeError):
        editor.feed(b"\x01\x02\x03\x04abc")


def test_negative_offset_is_rejected():
    with pytest.raises(ValueError):
        _editor(offset=-1)


def test_timestamp_plan_stamps_server_time(monkeypatch):
    monkeypatch.setattr("latmeasure.stream_edit.wall_clock_ms", lambda: 1_700_000_000_123)
    editor = StreamEditor(timestamp_plan())
    probe = MeasurePDU(cli_tx=1_700_000_000_100, seq_num=77)

    out = editor.feed(probe.encode())

    echoed = MeasurePDU.decode(out)
    assert echoed.valid
    assert echoed.srv_tx == 1_700_000_000_123
    assert echoed.cli_tx == probe.cli_tx
    assert echoed.seq_num == 77


def test_stamp_writes_srv_tx_slot():
    window = bytearray(MeasurePDU(seq_num=1).encode()[len(MAGIC) :])

    stamp_server_receive_time(window)

    assert MeasurePDU.from_sdu(bytes(window)).srv_tx > 0


def test_identity_filter_passes_bytes_through():
    echo = IdentityFilter()

    assert echo.feed(b"abc") == b"abc"
    assert echo.flush() == b""
