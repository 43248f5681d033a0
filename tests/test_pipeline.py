import asyncio
from datetime import datetime
from io import BytesIO
from pathlib import Path
import sys

from openpyxl import Workbook

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.errors import CommitError, ReferenceDataError
from app.pipeline import NO_ROWS_MESSAGE, ImportJob, ImportOrchestrator, JobState
from app.progress import ProgressChannel
from app.reference_cache import ReferenceSnapshot, StoreRef
from app.validation import JobKind


def make_snapshot() -> ReferenceSnapshot:
    return ReferenceSnapshot(
        stores={
            "101": StoreRef("101", "Main", frozenset({"B1"}), frozenset()),
            "S1": StoreRef("S1", "Harbour", frozenset({"B1"}), frozenset({"E1"})),
        },
        brands_by_name={"Acme": "B1"},
        brand_ids=frozenset({"B1"}),
        categories_by_name={"Phones": "C1"},
        category_brands=frozenset({("B1", "C1")}),
        executives={"E1": "Asha", "E2": "Ravi"},
        built_at=0.0,
    )


class FakeCache:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.builds = 0
        self.invalidated = 0

    async def build(self):
        self.builds += 1
        if self.error is not None:
            raise self.error
        return make_snapshot()

    def invalidate(self):
        self.invalidated += 1


class FakeWriter:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.written = []

    async def write(self, record):
        await asyncio.sleep(0)
        if record.store_id in self.fail_on:
            raise CommitError("duplicate key", context=record.context)
        self.written.append(record)


def build_workbook(rows) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    out = BytesIO()
    wb.save(out)
    return out.getvalue()


SALES_HEADER = [
    ["Store_ID", "Brand", "Category", datetime(2024, 1, 1), datetime(2024, 2, 1)],
    [None, None, None, "Revenue", "Revenue"],
]


def run_job(orchestrator, job):
    async def scenario():
        channel = ProgressChannel()
        summary = await orchestrator.run(job, channel)
        events = [event async for event in channel.events()]
        return summary, events

    return asyncio.run(scenario())


def terminal_events(events):
    return [event for event in events if event.is_terminal]


def test_mixed_rows_produce_summary_in_row_order():
    content = build_workbook(
        SALES_HEADER
        + [
            [101, "Acme", "Phones", 1500, 1800],
            [999, "Acme", "Phones", 10, 20],
            [None, "Acme", "Phones", 10, 20],
        ]
    )
    writer = FakeWriter()
    job = ImportJob(kind=JobKind.MONTHLY, content=content)

    summary, events = run_job(ImportOrchestrator(FakeCache(), writer), job)

    assert job.state == JobState.DONE
    assert summary.total_rows == 3
    assert summary.successful == 1
    assert summary.failed == 2
    assert len(summary.errors) == 2
    assert "not found" in summary.errors[0]
    assert summary.errors[0].startswith("Row 2:")
    assert "missing required fields" in summary.errors[1].lower()
    assert summary.errors[1].startswith("Row 3:")
    assert writer.written[0].by_year == {2024: [{"month": 1, "revenue": 1500}, {"month": 2, "revenue": 1800}]}

    assert events[0].phase == "cache_init"
    assert events[-1].type == "complete"
    assert len(terminal_events(events)) == 1
    assert events[-1].summary["totalRows"] == 3
    assert events[-1].summary["processingTime"].endswith("s")


def test_phase_markers_follow_the_state_machine():
    content = build_workbook(SALES_HEADER + [[101, "Acme", "Phones", 1, 2]])

    _, events = run_job(ImportOrchestrator(FakeCache(), FakeWriter()), ImportJob(kind=JobKind.MONTHLY, content=content))

    phases = []
    for event in events:
        if event.phase and (not phases or phases[-1] != event.phase):
            phases.append(event.phase)
    assert phases == ["cache_init", "cache_complete", "file_parse", "validating", "committing", "batch_complete"]


def test_commit_events_report_each_record_after_validation():
    rows = [[101, "Acme", "Phones", i, i] for i in range(7)]
    content = build_workbook(SALES_HEADER + rows)
    orchestrator = ImportOrchestrator(FakeCache(), FakeWriter(), chunk_size=3, progress_every=5)

    summary, events = run_job(orchestrator, ImportJob(kind=JobKind.MONTHLY, content=content))

    committing = [e for e in events if e.phase == "committing" and e.row_data]
    assert [e.current_row for e in committing] == list(range(1, 8))
    assert all(e.total_rows == 7 for e in committing)
    assert all(e.row_data["status"] == "success" for e in committing)
    first_commit = events.index(committing[0])
    assert all(e.phase != "validating" for e in events[first_commit:])

    validating_counts = [e.current_row for e in events if e.phase == "validating" and e.message and e.current_row]
    assert validating_counts == [5, 7]
    assert summary.successful == 7


def test_commit_failures_are_counted_with_validation_failures():
    content = build_workbook(
        SALES_HEADER
        + [
            [101, "Acme", "Phones", 1, 2],
            ["S1", "Acme", "Phones", 1, 2],
            ["S1", "Nope", "Phones", 1, 2],
        ]
    )
    writer = FakeWriter(fail_on={"S1"})

    summary, events = run_job(ImportOrchestrator(FakeCache(), writer), ImportJob(kind=JobKind.DAILY, content=content))

    assert summary.total_rows == 3
    assert summary.successful == 1
    assert summary.failed == 2
    assert summary.errors[0] == "Row 2: duplicate key. Store: S1, Brand: Acme, Category: Phones"
    assert summary.errors[1].startswith("Row 3: Brand not found")
    failed_rows = [e.row_data for e in events if e.row_data and e.row_data["status"] == "error"]
    assert [row["message"] for row in failed_rows] == ["Brand not found", "duplicate key"]


def test_empty_sheet_completes_with_no_rows_message():
    content = build_workbook(SALES_HEADER)
    writer = FakeWriter()

    summary, events = run_job(ImportOrchestrator(FakeCache(), writer), ImportJob(kind=JobKind.MONTHLY, content=content))

    assert summary.total_rows == 0
    assert summary.errors == [NO_ROWS_MESSAGE]
    assert events[-1].type == "complete"
    assert events[-1].summary["totalRows"] == 0
    assert writer.written == []


def test_unreadable_upload_fails_the_job():
    job = ImportJob(kind=JobKind.MONTHLY, content=b"not a workbook")

    summary, events = run_job(ImportOrchestrator(FakeCache(), FakeWriter()), job)

    assert summary is None
    assert job.state == JobState.FAILED
    assert events[-1].type == "error"
    assert events[-1].message.startswith("Could not read workbook")
    assert len(terminal_events(events)) == 1


def test_reference_data_failure_emits_single_error():
    cache = FakeCache(error=ReferenceDataError("Could not load reference data from the database"))
    content = build_workbook(SALES_HEADER + [[101, "Acme", "Phones", 1, 2]])

    summary, events = run_job(ImportOrchestrator(cache, FakeWriter()), ImportJob(kind=JobKind.MONTHLY, content=content))

    assert summary is None
    assert [e.type for e in events] == ["progress", "error"]
    assert events[-1].message == "Could not load reference data from the database"


def test_unexpected_exception_becomes_error_event():
    cache = FakeCache(error=RuntimeError("cache exploded"))
    job = ImportJob(kind=JobKind.MONTHLY, content=build_workbook(SALES_HEADER))

    summary, events = run_job(ImportOrchestrator(cache, FakeWriter()), job)

    assert summary is None
    assert job.error_message == "cache exploded"
    assert events[-1].to_payload() == {"type": "error", "message": "cache exploded"}


def test_stores_job_reports_executive_changes_and_invalidates_cache():
    content = build_workbook(
        [
            ["Store_ID", "Store Name", "City", "partnerBrandIds", "Executive_IDs"],
            ["S1", "Harbour", "Pune", "B1", "E2"],
            ["S2", "Hillside", "Nashik", "", "E1,E2"],
            ["S3", "", "Nashik", "", ""],
        ]
    )
    cache = FakeCache()

    summary, events = run_job(ImportOrchestrator(cache, FakeWriter()), ImportJob(kind=JobKind.STORES, content=content))

    assert summary.total_rows == 3
    assert summary.successful == 2
    assert summary.failed == 1
    assert summary.to_payload()["totalExecutivesAdded"] == 3
    assert summary.to_payload()["totalExecutivesRemoved"] == 1
    assert cache.invalidated == 1
    committed = [e.row_data for e in events if e.phase == "committing" and e.row_data]
    assert {row["Store_ID"]: row["executivesAdded"] for row in committed} == {"S1": 1, "S2": 2}
