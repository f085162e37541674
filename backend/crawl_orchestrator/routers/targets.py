from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from crawl_orchestrator.config import settings
from crawl_orchestrator.database import get_db
from crawl_orchestrator.schemas import (
    TargetListResponse,
    TargetResponse,
    TargetUpsert,
    normalize_target_url,
)
from crawl_orchestrator.services import target_store
from crawl_orchestrator.services.target_store import StaleWriteError

router = APIRouter(prefix="/api/targets", tags=["targets"])


@router.put("", response_model=TargetResponse)
async def upsert_target(body: TargetUpsert, db: AsyncSession = Depends(get_db)):
    try:
        return await target_store.upsert_target(
            db, body, attempts=settings.store_write_attempts
        )
    except StaleWriteError:
        raise HTTPException(status_code=409, detail="Target is being modified concurrently")


@router.get("", response_model=TargetListResponse)
async def list_targets(
    after: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    targets = await target_store.list_targets(db, after=after, limit=limit)
    return TargetListResponse(targets=targets)


@router.get("/lookup", response_model=TargetResponse)
async def get_target(url: str, db: AsyncSession = Depends(get_db)):
    target = await target_store.get_target(db, normalize_target_url(url))
    if not target:
        raise HTTPException(status_code=404, detail="Target not found")
    return target


@router.delete("", status_code=204)
async def delete_target(url: str, db: AsyncSession = Depends(get_db)):
    # Deleting an unknown target is not an error: deregistration is idempotent.
    await target_store.delete_target(db, normalize_target_url(url))
    return Response(status_code=204)
