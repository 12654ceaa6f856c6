from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from jobctl.api.deps import DbSession, Engine
from jobctl.domain.errors import JobNotFoundError
from jobctl.monitoring import dashboard
from jobctl.monitoring.dashboard import JobSummary

router = APIRouter()


class ProgressResponse(BaseModel):
    job_id: str
    progress: float


class CancelResponse(BaseModel):
    job_id: str
    accepted: bool


@router.get("/active", response_model=list[JobSummary])
async def list_active(session: DbSession):
    return await dashboard.list_active(session)


@router.get("/jobs/{job_id}/progress", response_model=ProgressResponse)
async def job_progress(job_id: str, session: DbSession):
    try:
        value = await dashboard.progress(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return ProgressResponse(job_id=job_id, progress=value)


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, session: DbSession, engine: Engine):
    try:
        accepted = await dashboard.cancel(session, engine, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return CancelResponse(job_id=job_id, accepted=accepted)


@router.get("/history", response_model=list[JobSummary])
async def job_history(session: DbSession, logical_name: str, since: Optional[datetime] = Query(default=None)):
    return await dashboard.history(session, logical_name, since)
