from campus_feed.feed.metrics import MetricsRecorder


def test_hit_rate_zero_without_lookups(clock) -> None:
    recorder = MetricsRecorder(clock=clock)
    snapshot = recorder.snapshot()
    assert snapshot.cache_hit_rate == 0.0
    assert snapshot.average_fetch_time_ms == 0.0
    assert snapshot.sample_count == 0


def test_hit_rate(clock) -> None:
    recorder = MetricsRecorder(clock=clock)
    for _ in range(3):
        recorder.record_cache_hit()
    recorder.record_cache_miss()
    assert recorder.cache_hit_rate == 0.75


def test_ring_buffer_drops_oldest_sample(clock) -> None:
    recorder = MetricsRecorder(sample_size=3, clock=clock)
    for ms in (100.0, 10.0, 20.0, 30.0):
        recorder.record_fetch_time(ms)

    snapshot = recorder.snapshot()

    assert snapshot.sample_count == 3
    assert snapshot.average_fetch_time_ms == 20.0


def test_snapshot_reports_uptime_and_cleanup(clock) -> None:
    recorder = MetricsRecorder(clock=clock)
    clock.advance(42.0)
    assert recorder.snapshot().last_cleanup_at is None

    recorder.mark_cleanup()
    snapshot = recorder.snapshot()

    assert snapshot.uptime_s == 42.0
    assert snapshot.last_cleanup_at is not None
