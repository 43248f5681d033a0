"""
Phase 2: write validated records in fixed-size chunks.

All writes of one chunk run concurrently and the whole chunk is awaited before
the next one starts, so at most ``chunk_size`` writes are ever in flight.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from app.errors import CommitError
from app.validation import ValidatedRecord

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50


class RecordWriter(Protocol):
    async def write(self, record: ValidatedRecord) -> None: ...


ResultCallback = Callable[[ValidatedRecord, "CommitError | None"], None]


@dataclass
class CommitResult:
    successful: int = 0
    failed: int = 0
    failures: list[tuple[int, str]] = field(default_factory=list)
    committed: list[ValidatedRecord] = field(default_factory=list)
    halted: bool = False

    def record_failure(self, record: ValidatedRecord, error: CommitError) -> None:
        self.failed += 1
        self.failures.append((record.row_number, f"Row {record.row_number}: {error.message}. {record.context}"))

    @property
    def errors(self) -> list[str]:
        """Error lines in sheet row order, whatever order the writes finished in."""
        return [message for _, message in sorted(self.failures, key=lambda item: item[0])]


def chunked(records: Sequence[ValidatedRecord], chunk_size: int) -> list[Sequence[ValidatedRecord]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return [records[i : i + chunk_size] for i in range(0, len(records), chunk_size)]


async def commit_records(
    records: Sequence[ValidatedRecord],
    writer: RecordWriter,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_result: ResultCallback | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> CommitResult:
    """Persist ``records`` chunk by chunk.

    A failing write only fails its own record. ``on_result`` is called once per
    record, right after that record's write has resolved. ``should_stop`` is
    checked between chunks; records of chunks that never start are reported as
    failed so the totals still add up.
    """
    result = CommitResult()
    chunks = chunked(records, chunk_size)
    stop_reason = ""

    async def run_one(record: ValidatedRecord) -> None:
        nonlocal stop_reason
        error: CommitError | None = None
        try:
            await writer.write(record)
        except CommitError as exc:
            error = exc
        except Exception as exc:
            logger.exception("Unexpected error while writing %s", record.context)
            error = CommitError(f"Unexpected error: {exc}", context=record.context)

        if error is None:
            result.successful += 1
            result.committed.append(record)
        else:
            result.record_failure(record, error)
            logger.error("Commit failed for %s: %s", record.context, error.message)
        if on_result is not None:
            on_result(record, error)
        if error is not None and error.chunk_fatal:
            stop_reason = stop_reason or "database connection lost"

    for index, chunk in enumerate(chunks):
        if not stop_reason and should_stop is not None and should_stop():
            stop_reason = "import stopped after the caller disconnected"
        if stop_reason:
            _fail_unstarted(result, chunks[index:], stop_reason, on_result)
            result.halted = True
            logger.warning("Stopped committing at chunk %s/%s: %s", index + 1, len(chunks), stop_reason)
            break

        if len(records) > 100:
            start = index * chunk_size
            logger.info(
                "Committing chunk %s/%s (%s-%s of %s records)",
                index + 1,
                len(chunks),
                start + 1,
                start + len(chunk),
                len(records),
            )
        await asyncio.gather(*(run_one(record) for record in chunk))

    return result


def _fail_unstarted(
    result: CommitResult,
    chunks: list[Sequence[ValidatedRecord]],
    reason: str,
    on_result: ResultCallback | None,
) -> None:
    for chunk in chunks:
        for record in chunk:
            error = CommitError(f"Not written: {reason}", context=record.context)
            result.record_failure(record, error)
            if on_result is not None:
                on_result(record, error)

