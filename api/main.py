#!/usr/bin/env python3
import asyncio
import json
import logging
import mimetypes
import os

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from engine.context import build_context
from engine.logging_utils import log_event, setup_logging
from engine.outputs import FORMAT_EXTENSIONS, cleanup_temp_files
from engine.runtime import get_runtime_info
from input.source_router import detect_source

APP_NAME = "Mediaflow API"
GC_JOB_ID = "job_gc"
STREAM_INTERVAL_SECONDS = 1.0

app = FastAPI(title=APP_NAME)
app.state.context = None
app.state.scheduler = None


class CreateJobRequest(BaseModel):
    source: str
    format: str = "mp3"
    bitrate: str | None = None
    is_playlist: bool | None = None
    selected_ids: list[str] | None = None
    playlist_items: list[int] | None = None
    frozen_entries: list[dict] | None = None
    frozen_title: str | None = None
    is_video: bool = False
    max_height: int | None = None
    selected_streams: list[int] | str | None = None
    client_batch: bool = False


class CancelJobRequest(BaseModel):
    reason: str | None = None


def _context():
    ctx = app.state.context
    if ctx is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return ctx


def _get_job_or_404(job_id):
    job = _context().registry.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _safe_filename(name):
    cleaned = name.replace('"', "'").replace("\n", " ").replace("\r", " ").strip()
    return cleaned or "download"


def _iter_file(path, chunk_size=1024 * 1024):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _collect_garbage():
    ctx = app.state.context
    if ctx is None:
        return
    ctx.registry.collect_garbage(ctx.paths.output_dir)


@app.on_event("startup")
async def startup():
    ctx = build_context()
    app.state.context = ctx
    setup_logging(ctx.paths.log_dir)
    app.state.scheduler = AsyncIOScheduler(timezone="UTC")
    app.state.scheduler.add_job(
        _collect_garbage,
        trigger=IntervalTrigger(seconds=ctx.settings.gc_interval_seconds),
        id=GC_JOB_ID,
        replace_existing=True,
    )
    app.state.scheduler.start()
    log_event(logging.INFO, "service_started", output_dir=ctx.paths.output_dir, temp_dir=ctx.paths.temp_dir)


@app.on_event("shutdown")
async def shutdown():
    scheduler = app.state.scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
    ctx = app.state.context
    if ctx is None:
        return
    for job in ctx.registry.list_jobs():
        if not job.is_terminal:
            ctx.cancel(job.id, reason="shutdown")


@app.post("/api/jobs", status_code=202)
async def create_job(payload: CreateJobRequest):
    ctx = _context()
    fmt = payload.format.strip().lower()
    if fmt not in FORMAT_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported format: {payload.format}")
    try:
        source = detect_source(payload.source)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    is_batch = source.is_batch if payload.is_playlist is None else bool(payload.is_playlist)
    if isinstance(payload.selected_streams, str) and payload.selected_streams != "all":
        raise HTTPException(status_code=400, detail="selected_streams must be a list of indexes or 'all'")

    request = payload.model_dump(exclude_none=True)
    request["format"] = fmt
    job = ctx.submit(
        source=payload.source.strip(),
        format=fmt,
        bitrate=payload.bitrate,
        is_batch=is_batch,
        request=request,
    )
    return {"job_id": job.id, "status": job.status, "queue_position": len(ctx.dispatch.queued_job_ids())}


@app.get("/api/jobs")
async def list_jobs():
    return {"jobs": [job.to_dict() for job in _context().registry.list_jobs()]}


@app.get("/api/jobs/{job_id}")
async def get_job(job_id: str):
    return _get_job_or_404(job_id).to_dict()


@app.post("/api/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, payload: CancelJobRequest = Body(default=CancelJobRequest())):
    ctx = _context()
    _get_job_or_404(job_id)
    reason = (payload.reason or "user").strip() if payload else "user"
    job = ctx.cancel(job_id, reason=reason)
    cleanup_temp_files(job_id, ctx.paths.temp_dir)
    return {"ok": True, "job_id": job_id, "status": job.status, "canceled_by": job.canceled_by}


@app.get("/api/stream/{job_id}")
async def stream_job(job_id: str):
    _get_job_or_404(job_id)

    async def events():
        while True:
            job = app.state.context.registry.get_job(job_id)
            if job is None:
                break
            yield f"data: {json.dumps(job.to_dict(), default=str)}\n\n"
            if job.is_terminal:
                break
            await asyncio.sleep(STREAM_INTERVAL_SECONDS)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(events(), media_type="text/event-stream", headers=headers)


@app.get("/download/{name}")
async def download_file(name: str):
    ctx = _context()
    if os.path.basename(name) != name or name in {"", ".", ".."}:
        raise HTTPException(status_code=400, detail="Invalid file name")
    candidate = os.path.join(ctx.paths.output_dir, name)
    if not os.path.isfile(candidate):
        raise HTTPException(status_code=404, detail="File not found")
    filename = _safe_filename(name)
    content_type, _ = mimetypes.guess_type(candidate)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(_iter_file(candidate), media_type=content_type or "application/octet-stream", headers=headers)


@app.get("/api/version")
async def api_version():
    ctx = app.state.context
    return get_runtime_info(ctx.settings if ctx else None)


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("MEDIAFLOW_HOST", "127.0.0.1")
    port = int(os.environ.get("MEDIAFLOW_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False)
