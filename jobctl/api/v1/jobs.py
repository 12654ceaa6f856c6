from typing import Any, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from jobctl.api.deps import DbSession, Engine
from jobctl.domain.errors import (
    ChainDepthExceeded, ConcurrencyLimitExceeded, DuplicateJobError, JobNotFoundError, UnitValidationError,
    UnknownUnitError,
)
from jobctl.domain.models import ChainStage, JobConfig
from jobctl.domain.states import JobMode
from jobctl.monitoring import dashboard
from jobctl.monitoring.dashboard import JobSummary, ErrorEntry
from jobctl.scheduler.dispatcher import dispatch_job

router = APIRouter()


class ConfigIn(BaseModel):
    chunk_size: Optional[int] = Field(default=None, ge=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    allow_external_calls: bool = False
    cron_schedule: Optional[str] = None

    def to_config(self) -> JobConfig:
        return JobConfig(**self.model_dump())


class StageIn(BaseModel):
    logical_name: str
    unit: str
    mode: JobMode = JobMode.SINGLE_SHOT
    config: ConfigIn = Field(default_factory=ConfigIn)


class JobCreate(BaseModel):
    logical_name: str
    unit: str
    mode: JobMode = JobMode.SINGLE_SHOT
    config: ConfigIn = Field(default_factory=ConfigIn)
    context: dict[str, Any] = Field(default_factory=dict)
    max_retries: Optional[int] = Field(default=None, ge=0)
    error_tolerance: Optional[int] = Field(default=None, ge=0)
    chain: list[StageIn] = Field(default_factory=list)


@router.post("", response_model=JobSummary, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, session: DbSession, engine: Engine):
    stages = [
        ChainStage(logical_name=s.logical_name, unit_name=s.unit, mode=s.mode, config=s.config.to_config())
        for s in payload.chain
    ]
    try:
        record = await dispatch_job(
            session,
            engine,
            payload.logical_name,
            payload.unit,
            payload.mode,
            payload.config.to_config(),
            context=payload.context,
            chain=stages,
            error_tolerance=payload.error_tolerance,
            max_retries=payload.max_retries,
        )
    except DuplicateJobError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "job_id": e.job_id})
    except ConcurrencyLimitExceeded as e:
        raise HTTPException(status_code=429, detail=str(e))
    except UnknownUnitError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (UnitValidationError, ChainDepthExceeded) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return dashboard.summarize(record)


@router.get("/{job_id}", response_model=JobSummary)
async def get_job(job_id: str, session: DbSession):
    try:
        return await dashboard.get_summary(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.get("/{job_id}/errors", response_model=list[ErrorEntry])
async def get_job_errors(job_id: str, session: DbSession):
    try:
        return await dashboard.error_log(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
