import threading

from app.aggregator import WindowAggregator


def test_mean_and_count_then_reset(clock):
    agg = WindowAggregator(clock)
    for v in (10, 20, 30):
        agg.add(v)

    rec = agg.drain_and_reset()
    assert rec.sample_count == 3
    assert rec.average == 20.0
    assert rec.stamp_epoch == clock.now_epoch()
    assert agg.count == 0


def test_empty_window_has_no_average(clock):
    rec = WindowAggregator(clock).drain_and_reset(stamp_epoch=5.0)
    assert rec.sample_count == 0
    assert rec.average is None
    assert not rec.has_data
    assert rec.stamp_epoch == 5.0


def test_zero_latency_counts(clock):
    agg = WindowAggregator(clock)
    agg.add(0)
    rec = agg.drain_and_reset()
    assert rec.sample_count == 1
    assert rec.average == 0.0


def test_concurrent_adds_and_drains_lose_nothing(clock):
    agg = WindowAggregator(clock)
    threads_n, per_thread = 8, 5000
    drained = []
    done = threading.Event()

    def producer():
        for _ in range(per_thread):
            agg.add(2)

    def drainer():
        while not done.is_set():
            drained.append(agg.drain_and_reset())

    drainers = [threading.Thread(target=drainer) for _ in range(4)]
    for d in drainers:
        d.start()
    producers = [threading.Thread(target=producer) for _ in range(threads_n)]
    for t in producers:
        t.start()
    for t in producers:
        t.join()
    done.set()
    for d in drainers:
        d.join()
    drained.append(agg.drain_and_reset())

    assert sum(r.sample_count for r in drained) == threads_n * per_thread
    for r in drained:
        if r.has_data:
            assert r.average == 2.0
