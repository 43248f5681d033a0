import asyncio
import logging
from typing import Callable

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from app import models  # noqa: F401  registers tables on Base.metadata
from app.config import settings
from app.database import Base, SessionLocal, engine
from app.logging_config import configure_logging
from app.pipeline import ImportJob, ImportOrchestrator
from app.progress import SSE_HEADERS, ProgressChannel, failure
from app.reference_cache import ReferenceCache
from app.repository import SqlRecordWriter
from app.tabular import ACCEPTED_SUFFIXES
from app.validation import JobKind

app = FastAPI(title="Sales Import")
logger = logging.getLogger(__name__)

# Strong references to running import tasks; asyncio only keeps weak ones.
_running_imports: set[asyncio.Task] = set()


@app.on_event("startup")
def prepare_database():
    configure_logging(settings.log_level)
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_reference_cache(
    request: Request,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> ReferenceCache:
    cache = getattr(request.app.state, "reference_cache", None)
    if cache is None or cache.session_factory is not session_factory:
        cache = ReferenceCache(session_factory, ttl_seconds=settings.reference_cache_ttl_seconds)
        request.app.state.reference_cache = cache
    return cache


def get_record_writer(
    request: Request,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
) -> SqlRecordWriter:
    # Shared across jobs so concurrent imports of the same key queue on one lock.
    writer = getattr(request.app.state, "record_writer", None)
    if writer is None or writer.session_factory is not session_factory:
        writer = SqlRecordWriter(session_factory)
        request.app.state.record_writer = writer
    return writer


def build_orchestrator(
    reference_cache: ReferenceCache = Depends(get_reference_cache),
    writer: SqlRecordWriter = Depends(get_record_writer),
) -> ImportOrchestrator:
    return ImportOrchestrator(
        reference_cache,
        writer,
        chunk_size=settings.chunk_size,
        progress_every=settings.progress_every,
        stop_on_disconnect=settings.stop_on_disconnect,
    )


def parse_job_kind(value: str | None) -> JobKind:
    cleaned = (value or "").strip().lower() or JobKind.MONTHLY.value
    try:
        return JobKind(cleaned)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid import type. Use monthly, daily or stores.") from exc


async def read_import_upload(file: UploadFile | None, import_type: str | None) -> ImportJob:
    kind = parse_job_kind(import_type)
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    filename = file.filename
    if not filename.lower().endswith(ACCEPTED_SUFFIXES):
        raise HTTPException(status_code=400, detail="Invalid file type. Please upload an Excel workbook (.xlsx).")

    content = await file.read(settings.max_upload_bytes + 1)
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File is too large. Maximum upload size is {settings.max_upload_bytes // (1024 * 1024)} MB.",
        )
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    return ImportJob(kind=kind, content=content, filename=filename)


def start_import(orchestrator: ImportOrchestrator, job: ImportJob, channel: ProgressChannel) -> asyncio.Task:
    task = asyncio.create_task(orchestrator.run(job, channel))
    _running_imports.add(task)
    task.add_done_callback(_running_imports.discard)
    return task


async def stream_channel(channel: ProgressChannel):
    try:
        async for event in channel.events():
            yield event.to_sse()
    finally:
        # Covers both normal completion and the client going away mid-stream.
        channel.disconnect()


async def single_event_stream(message: str):
    yield failure(message).to_sse()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.post("/api/admin/excel-import/stream")
async def excel_import_stream(
    file: UploadFile | None = File(None),
    import_type: str = Form("monthly", alias="type"),
    orchestrator: ImportOrchestrator = Depends(build_orchestrator),
):
    try:
        job = await read_import_upload(file, import_type)
    except HTTPException as exc:
        logger.warning("Rejected import upload: %s", exc.detail)
        return StreamingResponse(
            single_event_stream(str(exc.detail)),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    logger.info("Starting %s import from %s (%s bytes)", job.kind.value, job.filename, len(job.content))
    channel = ProgressChannel()
    start_import(orchestrator, job, channel)
    return StreamingResponse(
        stream_channel(channel),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/admin/excel-import")
async def excel_import(
    file: UploadFile | None = File(None),
    import_type: str = Form("monthly", alias="type"),
    orchestrator: ImportOrchestrator = Depends(build_orchestrator),
):
    job = await read_import_upload(file, import_type)
    logger.info("Starting %s import from %s (%s bytes)", job.kind.value, job.filename, len(job.content))
    summary = await orchestrator.run(job, ProgressChannel(listening=False))
    if summary is None:
        raise HTTPException(status_code=400, detail=job.error_message or "Failed to process Excel file")
    return {"summary": summary.to_payload()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host=settings.app_host, port=settings.app_port, log_level=settings.log_level.lower())
