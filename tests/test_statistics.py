from chatrelay.core.statistics import RateWindow, RequestOutcome, StatisticsAggregator


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_window_counts_trailing_minute():
    clock = FakeClock()
    window = RateWindow(60, clock)

    window.add()
    clock.now += 30
    window.add(2)
    assert window.total() == 3

    clock.now += 30
    # the first bucket is now exactly 60s old
    assert window.total() == 2

    clock.now += 30
    assert window.total() == 0


def test_rate_window_reuses_stale_buckets():
    clock = FakeClock()
    window = RateWindow(60, clock)

    window.add(5)
    clock.now += 60
    window.add()

    assert window.total() == 1


def test_record_and_snapshot():
    stats = StatisticsAggregator(clock=FakeClock())
    stats.record(RequestOutcome(model="m1", success=True, latency_ms=100, provider_id="p1", account_id="a"))
    stats.record(RequestOutcome(model="m1", success=True, latency_ms=300, provider_id="p1", account_id="b"))
    stats.record(RequestOutcome(model="m2", success=False, latency_ms=50, error_type="model_not_found"))

    snapshot = stats.snapshot()

    assert snapshot.total_requests == 3
    assert snapshot.success_requests == 2
    assert snapshot.failed_requests == 1
    assert snapshot.avg_latency_ms == 150.0
    assert snapshot.requests_per_minute == 3
    assert snapshot.model_usage == {"m1": 2, "m2": 1}
    assert snapshot.provider_usage == {"p1": 2}
    assert snapshot.account_usage == {"a": 1, "b": 1}


def test_active_connections_never_negative():
    stats = StatisticsAggregator()
    stats.begin()
    stats.begin()
    stats.end()
    assert stats.snapshot().active_connections == 1

    stats.end()
    stats.end()
    assert stats.snapshot().active_connections == 0


def test_clear_keeps_active_connections():
    stats = StatisticsAggregator()
    stats.begin()
    stats.record(RequestOutcome(model="m", success=True, latency_ms=10))

    stats.clear()

    snapshot = stats.snapshot()
    assert snapshot.total_requests == 0
    assert snapshot.model_usage == {}
    assert snapshot.requests_per_minute == 0
    assert snapshot.active_connections == 1
