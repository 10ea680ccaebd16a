"""
Sampling Resolution Tests

Tests to verify:
1. Timestamp spacing under a minute means per-second buckets
2. Mislabeled per-minute series with seconds force per-second
3. Everything else is per-minute

Run with: pytest tests/test_resolution.py -v
"""
from shiftline.schemas import ChannelPayload, RawPoint, Sampling
from shiftline.services.resolution import (
    BUCKET_MINUTE_MS,
    BUCKET_SECOND_MS,
    detect_bucket_ms,
    has_second_components,
    smallest_positive_delta,
)


def _channel(times, sampling=Sampling.MINUTE):
    return ChannelPayload(
        id="1",
        points=[RawPoint(time=t, avg=1.0) for t in times],
        sampling=sampling,
    )


class TestSmallestDelta:

    def test_finds_smallest_gap(self):
        assert smallest_positive_delta([0, 60000, 61000, 180000]) == 1000

    def test_ignores_duplicates(self):
        assert smallest_positive_delta([5000, 5000, 65000]) == 60000

    def test_unsorted_input(self):
        assert smallest_positive_delta([120000, 0, 60000]) == 60000

    def test_too_few_values(self):
        assert smallest_positive_delta([]) is None
        assert smallest_positive_delta([42]) is None

    def test_scan_limit(self):
        """Only the first scan_limit sorted values are considered."""
        timestamps = [i * 60000 for i in range(10)] + [10 * 60000 + 500]
        assert smallest_positive_delta(timestamps, scan_limit=10) == 60000


class TestDetectBucket:
    """Bucket choice for a load."""

    def test_minute_spacing(self):
        assert detect_bucket_ms([0, 60000, 120000]) == BUCKET_MINUTE_MS

    def test_second_spacing(self):
        assert detect_bucket_ms([0, 1000, 2000]) == BUCKET_SECOND_MS

    def test_sub_minute_spacing(self):
        """Anything under a minute is per-second."""
        assert detect_bucket_ms([0, 30000, 60000]) == BUCKET_SECOND_MS

    def test_empty_defaults_to_minute(self):
        assert detect_bucket_ms([]) == BUCKET_MINUTE_MS

    def test_mislabeled_minute_series(self):
        """A per-minute series with non-zero seconds forces per-second."""
        channel = _channel(["10:00:00", "10:01:15"])
        assert has_second_components(channel) is True
        assert detect_bucket_ms([0, 60000], [channel]) == BUCKET_SECOND_MS

    def test_clean_minute_series(self):
        channel = _channel(["10:00:00", "10:01:00"])
        assert has_second_components(channel) is False
        assert detect_bucket_ms([0, 60000], [channel]) == BUCKET_MINUTE_MS

    def test_explicit_per_second_series(self):
        channel = _channel(["10:00:00", "10:01:00"], sampling=Sampling.SECOND)
        assert detect_bucket_ms([0, 60000], [channel]) == BUCKET_SECOND_MS

    def test_empty_per_second_series_is_ignored(self):
        channel = _channel([], sampling=Sampling.SECOND)
        assert detect_bucket_ms([0, 60000], [channel]) == BUCKET_MINUTE_MS
