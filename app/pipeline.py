"""
Import orchestration: cache -> parse -> validate -> commit -> summary.

One ``ImportOrchestrator.run`` call drives one ``ImportJob`` through
``INIT -> CACHE_READY -> PARSING -> VALIDATING -> COMMITTING -> DONE`` and
always finishes by pushing exactly one terminal event (``complete`` or
``error``) to the job's progress channel.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from starlette.concurrency import run_in_threadpool

from app.committer import DEFAULT_CHUNK_SIZE, CommitResult, RecordWriter, commit_records
from app.errors import CommitError, ImportFatalError
from app.progress import ProgressChannel, completion, failure, phase_marker, row_progress
from app.reference_cache import ReferenceCache
from app.tabular import ParsedSheet, parse_workbook
from app.validation import (
    SALES_IDENTITY_FIELDS,
    JobKind,
    RowFailure,
    StoreRecord,
    ValidatedRecord,
    validate_row,
)

logger = logging.getLogger(__name__)

NO_ROWS_MESSAGE = "No data rows found in the Excel file"


class JobState(str, Enum):
    INIT = "init"
    CACHE_READY = "cache_ready"
    PARSING = "parsing"
    VALIDATING = "validating"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ImportJob:
    kind: JobKind
    content: bytes
    filename: str = "upload.xlsx"
    started_at: float = field(default_factory=time.monotonic)
    state: JobState = JobState.INIT
    error_message: str | None = None


@dataclass
class ImportSummary:
    total_rows: int
    successful: int
    failed: int
    errors: list[str]
    processing_time: str
    extras: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "totalRows": self.total_rows,
            "successful": self.successful,
            "failed": self.failed,
            "errors": list(self.errors),
            "processingTime": self.processing_time,
        }
        payload.update(self.extras)
        return payload


def _elapsed(job: ImportJob) -> str:
    return f"{time.monotonic() - job.started_at:.2f}s"


def _parse_for_kind(kind: JobKind, content: bytes) -> ParsedSheet:
    if kind == JobKind.STORES:
        return parse_workbook(content, header_rows=1)
    return parse_workbook(content, identity_fields=SALES_IDENTITY_FIELDS, header_rows=2)


def _row_data(identity: dict[str, str], status: str, message: str, **extra: Any) -> dict[str, Any]:
    data: dict[str, Any] = {key: value or "N/A" for key, value in identity.items()}
    data["status"] = status
    data["message"] = message
    data.update(extra)
    return data


class ImportOrchestrator:
    def __init__(
        self,
        reference_cache: ReferenceCache,
        writer: RecordWriter,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_every: int = 5,
        stop_on_disconnect: bool = False,
    ):
        self.reference_cache = reference_cache
        self.writer = writer
        self.chunk_size = chunk_size
        self.progress_every = max(1, progress_every)
        self.stop_on_disconnect = stop_on_disconnect

    async def run(self, job: ImportJob, channel: ProgressChannel) -> ImportSummary | None:
        try:
            summary = await self._run(job, channel)
        except ImportFatalError as exc:
            self._fail(job, channel, exc.message)
            return None
        except Exception as exc:
            logger.exception("Import job (%s) failed unexpectedly", job.kind.value)
            self._fail(job, channel, str(exc) or "Failed to process Excel file")
            return None
        finally:
            channel.close()
        return summary

    def _fail(self, job: ImportJob, channel: ProgressChannel, message: str) -> None:
        job.state = JobState.FAILED
        job.error_message = message
        logger.error("Import job (%s) failed: %s", job.kind.value, message)
        channel.emit(failure(message))

    async def _run(self, job: ImportJob, channel: ProgressChannel) -> ImportSummary:
        channel.emit(phase_marker("cache_init", "Initializing reference data cache..."))
        snapshot = await self.reference_cache.build()
        job.state = JobState.CACHE_READY
        channel.emit(phase_marker("cache_complete", "Reference data cache ready"))

        job.state = JobState.PARSING
        channel.emit(phase_marker("file_parse", "Parsing Excel file..."))
        sheet = await run_in_threadpool(_parse_for_kind, job.kind, job.content)
        total_rows = sheet.total_rows

        if total_rows == 0:
            channel.emit(phase_marker("file_parse", "No data rows found in Excel file. Please check your file format."))
            return self._finish(job, channel, ImportSummary(0, 0, 0, [NO_ROWS_MESSAGE], _elapsed(job)))

        job.state = JobState.VALIDATING
        channel.emit(
            row_progress(
                0,
                total_rows,
                phase="validating",
                message=f"Validating {total_rows} rows...",
            )
        )

        failures: list[tuple[int, str]] = []
        validated: list[ValidatedRecord] = []
        failed = 0
        for row in sheet.rows:
            outcome = validate_row(job.kind, row, snapshot)
            if isinstance(outcome, RowFailure):
                failed += 1
                failures.append((row.sequence, outcome.message))
                channel.emit(
                    row_progress(
                        row.sequence,
                        total_rows,
                        phase="validating",
                        row_data=_row_data(outcome.identity, "error", outcome.reason),
                    )
                )
            else:
                validated.append(outcome.record)

            if row.sequence % self.progress_every == 0 or row.sequence == total_rows:
                channel.emit(
                    row_progress(
                        row.sequence,
                        total_rows,
                        phase="validating",
                        message=f"Validated {row.sequence}/{total_rows} rows",
                    )
                )
                # Let the transport drain between batches of rows.
                await asyncio.sleep(0)

        channel.emit(
            phase_marker(
                "validating",
                f"Validation complete: {len(validated)} ready to write, {failed} failed",
            )
        )

        commit = CommitResult()
        if validated:
            job.state = JobState.COMMITTING
            channel.emit(phase_marker("committing", f"Writing {len(validated)} validated records to database..."))
            commit = await self._commit(channel, validated)
            channel.emit(
                phase_marker(
                    "batch_complete",
                    f"Batch processing complete: {commit.successful} successful, {commit.failed} failed",
                )
            )
            if job.kind == JobKind.STORES and commit.successful:
                # Store/brand associations changed; the next job must reload them.
                self.reference_cache.invalidate()

        summary = ImportSummary(
            total_rows=total_rows,
            successful=commit.successful,
            failed=failed + commit.failed,
            errors=[message for _, message in sorted(failures + commit.failures, key=lambda item: item[0])],
            processing_time=_elapsed(job),
        )
        if job.kind == JobKind.STORES:
            stores = [record for record in commit.committed if isinstance(record, StoreRecord)]
            summary.extras = {
                "totalExecutivesAdded": sum(len(r.executives_to_add) for r in stores),
                "totalExecutivesRemoved": sum(len(r.executives_to_remove) for r in stores),
            }
        return self._finish(job, channel, summary)

    async def _commit(
        self,
        channel: ProgressChannel,
        records: list[ValidatedRecord],
    ) -> CommitResult:
        processed = 0
        total = len(records)

        def on_result(record: ValidatedRecord, error: CommitError | None) -> None:
            nonlocal processed
            processed += 1
            extra: dict[str, Any] = {}
            if isinstance(record, StoreRecord):
                extra = {
                    "executivesAdded": 0 if error else len(record.executives_to_add),
                    "executivesRemoved": 0 if error else len(record.executives_to_remove),
                }
            if error is None:
                row_data = _row_data(record.identity, "success", "Database write successful", **extra)
            else:
                row_data = _row_data(record.identity, "error", error.message, **extra)
            channel.emit(row_progress(processed, total, phase="committing", row_data=row_data))

        def should_stop() -> bool:
            return self.stop_on_disconnect and channel.disconnected

        return await commit_records(
            records,
            self.writer,
            chunk_size=self.chunk_size,
            on_result=on_result,
            should_stop=should_stop,
        )

    def _finish(self, job: ImportJob, channel: ProgressChannel, summary: ImportSummary) -> ImportSummary:
        job.state = JobState.DONE
        logger.info(
            "Import job (%s) done: %s rows, %s successful, %s failed in %s",
            job.kind.value,
            summary.total_rows,
            summary.successful,
            summary.failed,
            summary.processing_time,
        )
        channel.emit(completion(summary.to_payload()))
        return summary
