import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crawl_orchestrator.config import settings
from crawl_orchestrator.database import init_models
from crawl_orchestrator.routers import jobs, targets
from crawl_orchestrator.services.scheduler import get_crawl_scheduler, scheduler, start_schedule

logging.basicConfig(level=logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    if settings.run_scheduler:
        start_schedule(get_crawl_scheduler(), settings.scheduler_cron)
    yield
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(title="Crawl Orchestrator", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(targets.router)
app.include_router(jobs.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
