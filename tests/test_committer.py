import asyncio
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.committer import chunked, commit_records
from app.errors import CommitError
from app.validation import JobKind, SalesRecord


def make_record(index: int) -> SalesRecord:
    store_id = f"S{index}"
    return SalesRecord(
        kind=JobKind.MONTHLY,
        store_id=store_id,
        brand_id="B1",
        category_id="C1",
        by_year={2024: [{"month": 1, "revenue": index}]},
        identity={"Store_ID": store_id, "Brand": "Acme", "Category": "Phones"},
        row_number=index + 1,
    )


class RecordingWriter:
    def __init__(self, fail_on=(), fatal_on=()):
        self.fail_on = set(fail_on)
        self.fatal_on = set(fatal_on)
        self.in_flight = 0
        self.max_in_flight = 0
        self.written = []

    async def write(self, record):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if record.store_id in self.fatal_on:
                raise CommitError("connection reset", context=record.context, chunk_fatal=True)
            if record.store_id in self.fail_on:
                raise CommitError("boom", context=record.context)
            self.written.append(record.store_id)
        finally:
            self.in_flight -= 1


def test_chunked_splits_in_order():
    records = [make_record(i) for i in range(5)]

    chunks = chunked(records, 2)

    assert [[r.store_id for r in chunk] for chunk in chunks] == [["S0", "S1"], ["S2", "S3"], ["S4"]]


def test_chunked_rejects_non_positive_size():
    with pytest.raises(ValueError):
        chunked([], 0)


def test_in_flight_writes_never_exceed_chunk_size():
    writer = RecordingWriter()
    records = [make_record(i) for i in range(120)]

    result = asyncio.run(commit_records(records, writer, chunk_size=50))

    assert writer.max_in_flight == 50
    assert result.successful == 120
    assert result.failed == 0
    assert not result.halted


def test_failed_write_only_fails_its_own_record():
    writer = RecordingWriter(fail_on={"S3"})
    records = [make_record(i) for i in range(10)]

    result = asyncio.run(commit_records(records, writer, chunk_size=4))

    assert result.successful == 9
    assert result.failed == 1
    assert result.errors == ["Row 4: boom. Store: S3, Brand: Acme, Category: Phones"]
    assert "S3" not in writer.written
    assert len(result.committed) == 9


def test_result_callback_runs_after_each_write_resolves():
    writer = RecordingWriter(fail_on={"S1"})
    seen = []

    def on_result(record, error):
        if error is None:
            assert record.store_id in writer.written
        seen.append((record.store_id, error.message if error else None))

    records = [make_record(i) for i in range(3)]
    asyncio.run(commit_records(records, writer, chunk_size=50, on_result=on_result))

    assert sorted(seen) == [("S0", None), ("S1", "boom"), ("S2", None)]


def test_connection_loss_stops_scheduling_later_chunks():
    writer = RecordingWriter(fatal_on={"S1"})
    records = [make_record(i) for i in range(5)]

    result = asyncio.run(commit_records(records, writer, chunk_size=2))

    assert result.halted
    assert writer.written == ["S0"]
    assert result.successful == 1
    assert result.failed == 4
    assert result.errors[1:] == [
        f"Row {i + 1}: Not written: database connection lost. Store: S{i}, Brand: Acme, Category: Phones"
        for i in (2, 3, 4)
    ]


def test_should_stop_is_checked_between_chunks():
    writer = RecordingWriter()
    checks = []

    def should_stop():
        checks.append(len(writer.written))
        return len(writer.written) >= 2

    records = [make_record(i) for i in range(6)]
    result = asyncio.run(commit_records(records, writer, chunk_size=2, should_stop=should_stop))

    assert checks == [0, 2]
    assert result.halted
    assert result.successful == 2
    assert result.failed == 4
    assert result.successful + result.failed == len(records)


class SlowFirstWriter:
    """Fails every record; earlier records take longer to resolve."""

    def __init__(self, total):
        self.total = total
        self.finished = []

    async def write(self, record):
        for _ in range(self.total - record.row_number):
            await asyncio.sleep(0)
        self.finished.append(record.store_id)
        raise CommitError(f"rejected {record.store_id}", context=record.context)


def test_commit_errors_follow_row_order_not_completion_order():
    records = [make_record(i) for i in range(4)]
    writer = SlowFirstWriter(total=4)

    result = asyncio.run(commit_records(records, writer, chunk_size=4))

    assert writer.finished == ["S3", "S2", "S1", "S0"]
    assert result.errors == [
        f"Row {i + 1}: rejected S{i}. Store: S{i}, Brand: Acme, Category: Phones" for i in range(4)
    ]
