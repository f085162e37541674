import asyncio
import json
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.database import get_db
from crawl_orchestrator.schemas import JobResponse, TickResponse, normalize_target_url
from crawl_orchestrator.services import job_events, job_ledger
from crawl_orchestrator.services.scheduler import (
    CrawlScheduler,
    JobNotFoundError,
    JobOutstandingError,
    TargetNotFoundError,
    get_crawl_scheduler,
)

router = APIRouter(prefix="/api", tags=["jobs"])


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    url: str,
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await job_ledger.list_jobs_for_target(db, normalize_target_url(url), limit=limit)


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def trigger_job(
    url: str, crawl_scheduler: CrawlScheduler = Depends(get_crawl_scheduler)
):
    try:
        return await crawl_scheduler.trigger(normalize_target_url(url))
    except TargetNotFoundError:
        raise HTTPException(status_code=404, detail="Target not found")
    except JobOutstandingError:
        raise HTTPException(status_code=409, detail="Target already has an outstanding job")


async def job_event_stream(
    request: Request, queue: asyncio.Queue, heartbeat_seconds: float = 15.0
):
    """Relay completion events from ``queue`` as server-sent events."""
    last_sent_at = time.monotonic()
    while True:
        if await request.is_disconnected():
            break
        try:
            event = await asyncio.wait_for(queue.get(), timeout=1.0)
        except asyncio.TimeoutError:
            event = None

        if event is not None:
            yield f"data: {json.dumps(event)}\n\n"
            last_sent_at = time.monotonic()
        elif time.monotonic() - last_sent_at >= heartbeat_seconds:
            yield ": heartbeat\n\n"
            last_sent_at = time.monotonic()


@router.get("/jobs/events")
async def stream_job_events(request: Request, url: str | None = None):
    key = normalize_target_url(url) if url else job_events.ALL_TARGETS
    queue = job_events.subscribe(key)

    async def event_generator():
        try:
            async for chunk in job_event_stream(request, queue):
                yield chunk
        finally:
            job_events.unsubscribe(key, queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(url: str, job_id: str, db: AsyncSession = Depends(get_db)):
    job = await job_ledger.get_job(db, normalize_target_url(url), job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    url: str,
    job_id: str,
    crawl_scheduler: CrawlScheduler = Depends(get_crawl_scheduler),
):
    try:
        return await crawl_scheduler.cancel(normalize_target_url(url), job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/scheduler/tick", response_model=TickResponse)
async def run_tick(crawl_scheduler: CrawlScheduler = Depends(get_crawl_scheduler)):
    stats = await crawl_scheduler.tick()
    return TickResponse(**stats.as_dict())
