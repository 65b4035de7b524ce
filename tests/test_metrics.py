import pytest

from latmeasure.latency import LatencyAnalyzer
from latmeasure.metrics import LatencyStats, percentile, summary_lines


@pytest.mark.parametrize(
    "values, pct, expected",
    [
        ([3.0, 1.0, 2.0], 50, 2.0),
        ([1.0, 2.0, 3.0, 4.0], 50, 2.5),
        (range(101), 95, 95),
        ([10.0, 20.0], 75, 17.5),
        ([5.0], 99, 5.0),
        ([1.0, 9.0], 100, 9.0),
    ],
)
def test_percentile_interpolates(values, pct, expected):
    assert percentile(values, pct) == expected


def test_percentile_without_samples():
    assert percentile([], 50) is None


def test_snapshot_without_samples():
    snapshot = LatencyStats().snapshot()

    assert snapshot["received"] == 0
    assert snapshot["rtt_ms_p50"] is None
    assert dict(summary_lines(snapshot))["rtt_p50_ms"] == "n/a"


def test_records_round_trip_and_legs():
    stats = LatencyStats()
    stats.record_sent()
    stats.record_sent()
    stats.record(LatencyAnalyzer(0, 2.0))
    stats.record(LatencyAnalyzer(1, 4.0, send_trip=1, back_trip=3))
    stats.record_unidentified()

    snapshot = stats.snapshot()

    assert snapshot["probes_sent"] == 2
    assert snapshot["received"] == 2
    assert snapshot["unidentified"] == 1
    assert snapshot["dual_trip"] == 1
    assert snapshot["rtt_ms_p50"] == 3.0
    assert snapshot["send_trip_ms_p50"] == 1.0
    assert dict(summary_lines(snapshot))["rtt_p50_ms"] == "3.000"


def test_keeps_only_recent_samples():
    stats = LatencyStats()
    for i in range(300):
        stats.record(LatencyAnalyzer(i, float(i)))

    assert len(stats.rtt_samples) == 256
    assert stats.received == 300
    assert min(stats.rtt_samples) == 44.0
