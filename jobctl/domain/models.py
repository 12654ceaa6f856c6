from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Any

from jobctl.domain.states import JobStatus, JobMode, FailureKind


@dataclass(frozen=True)
class ConcurrencyBudget:
    """Ceiling on units the engine may hold in a non-terminal state at once."""
    limit: int

    def admits(self, active: int) -> bool:
        return active < self.limit


@dataclass
class JobConfig:
    chunk_size: Optional[int] = None
    timeout_seconds: Optional[float] = None
    allow_external_calls: bool = False
    cron_schedule: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "JobConfig":
        data = data or {}
        return cls(
            chunk_size=data.get("chunk_size"),
            timeout_seconds=data.get("timeout_seconds"),
            allow_external_calls=bool(data.get("allow_external_calls", False)),
            cron_schedule=data.get("cron_schedule"),
        )


@dataclass
class ChainStage:
    logical_name: str
    unit_name: str
    mode: JobMode = JobMode.SINGLE_SHOT
    config: JobConfig = field(default_factory=JobConfig)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logical_name": self.logical_name,
            "unit_name": self.unit_name,
            "mode": str(self.mode),
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChainStage":
        return cls(
            logical_name=data["logical_name"],
            unit_name=data["unit_name"],
            mode=JobMode(data.get("mode", JobMode.SINGLE_SHOT)),
            config=JobConfig.from_dict(data.get("config")),
        )


@dataclass(frozen=True)
class ItemError:
    message: str
    item_ref: Optional[str] = None


@dataclass(frozen=True)
class UnitFailure:
    kind: FailureKind
    message: str


@dataclass
class EngineSnapshot:
    """The engine's own view of a job. Source of truth while the job runs."""
    job_id: str
    status: JobStatus
    items_total: Optional[int] = None
    items_processed: int = 0
    slices_executed: int = 0
    errors: list[ItemError] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    failure: Optional[UnitFailure] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested_at: Optional[datetime] = None
