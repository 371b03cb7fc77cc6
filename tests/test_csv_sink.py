import csv

from domain.models import SummaryRecord
from infra.summary_csv_sink import CSV_HEADER, AsyncCsvSummaryWriter


def _rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))


def test_start_truncates_and_writes_header(tmp_path):
    out = tmp_path / "latency.csv"
    out.write_text("old,content\n1,2\n", encoding="utf-8")

    w = AsyncCsvSummaryWriter(str(out))
    w.start()
    w.stop()

    assert _rows(out) == [CSV_HEADER]


def test_rows_are_written_in_order(tmp_path):
    out = tmp_path / "latency.csv"
    w = AsyncCsvSummaryWriter(str(out), flush_every_n=100, flush_every_sec=60)
    w.start()
    w.handle(SummaryRecord(stamp_epoch=0.0, average=12.5, sample_count=4))
    w.handle(SummaryRecord(stamp_epoch=1.0, average=5000.0, sample_count=1))
    w.stop()

    assert _rows(out) == [
        ["TIME_UTC", "LATENCY_AVG", "NUM_MESSAGES"],
        ["1970-01-01 00:00:00.000", "12.500", "4"],
        ["1970-01-01 00:00:01.000", "5000.000", "1"],
    ]
    assert w.total_written == 2


def test_full_queue_drops(tmp_path):
    w = AsyncCsvSummaryWriter(str(tmp_path / "x.csv"), queue_max=1)
    # sem start(): ninguém consome a fila
    w.handle(SummaryRecord(0.0, 1.0, 1))
    w.handle(SummaryRecord(1.0, 1.0, 1))
    assert w.total_dropped == 1
