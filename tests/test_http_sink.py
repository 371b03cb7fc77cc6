import json
import threading
import time

import httpx

from domain.models import SummaryRecord
from infra.http_summary_sink import HttpSummarySink, summary_payload


def test_payload_shape():
    rec = SummaryRecord(stamp_epoch=0.0, average=5000.0, sample_count=1)
    assert summary_payload(rec) == {
        "time_utc": "1970-01-01 00:00:00.000",
        "latency_avg": 5000.0,
        "num_messages": 1,
    }


def test_posts_each_record():
    bodies = []
    lock = threading.Lock()

    def handler(request: httpx.Request) -> httpx.Response:
        with lock:
            bodies.append(json.loads(request.content))
        return httpx.Response(204)

    sink = HttpSummarySink("http://collector/latency", workers=2, transport=httpx.MockTransport(handler))
    sink.start()
    for i in range(5):
        sink.handle(SummaryRecord(float(i), 10.0 * i, i + 1))
    sink.join()
    sink.stop()

    assert sorted(b["num_messages"] for b in bodies) == [1, 2, 3, 4, 5]
    assert sink.total_sent == 5
    assert sink.total_failed == 0


def test_retries_then_gives_up():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503)

    sink = HttpSummarySink(
        "http://collector/latency",
        workers=1,
        max_retries=2,
        retry_base_sec=0.001,
        transport=httpx.MockTransport(handler),
    )
    sink.start()
    sink.handle(SummaryRecord(0.0, 1.0, 1))
    sink.join()
    sink.stop()

    assert len(calls) == 3
    assert sink.total_failed == 1
    assert sink.total_sent == 0


def test_recovers_after_transient_error():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    sink = HttpSummarySink("http://c/l", workers=1, retry_base_sec=0.001, transport=httpx.MockTransport(handler))
    sink.start()
    sink.handle(SummaryRecord(0.0, 1.0, 1))
    sink.join()
    sink.stop()

    assert sink.total_sent == 1
    assert len(attempts) == 2


def test_stuck_endpoint_never_blocks_handle():
    release = threading.Event()

    def handler(request):
        release.wait(5)
        return httpx.Response(200)

    sink = HttpSummarySink("http://c/l", workers=1, queue_max=2, transport=httpx.MockTransport(handler))
    sink.start()

    t0 = time.monotonic()
    for i in range(10):
        sink.handle(SummaryRecord(float(i), 1.0, 1))
    elapsed = time.monotonic() - t0

    release.set()
    sink.join()
    sink.stop()

    assert elapsed < 1.0
    assert sink.total_dropped >= 7
    assert sink.total_sent + sink.total_dropped == 10
