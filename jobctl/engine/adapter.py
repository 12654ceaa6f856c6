import asyncio
import copy
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from itertools import islice
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from croniter import croniter

from jobctl.domain.errors import ConcurrencyLimitExceeded, UnitValidationError, UnitRuntimeError
from jobctl.domain.models import ConcurrencyBudget, EngineSnapshot, JobConfig, UnitFailure
from jobctl.domain.states import JobStatus, JobMode, FailureKind, is_terminal
from jobctl.engine.units import Unit, UnitRegistry, UnitResult, RecordSource, Records, default_registry
from jobctl.settings import settings
from jobctl.utils.clock import utcnow, as_utc

logger = logging.getLogger(__name__)


class EngineAdapter(ABC):
    """
    Boundary to the platform that actually runs units.

    The engine is the source of truth for status and progress while a unit
    runs; the Job Record Store catches up by polling `status`.
    """
    registry: UnitRegistry

    @abstractmethod
    async def launch(
        self,
        unit: Unit,
        mode: JobMode,
        config: JobConfig,
        context: Optional[dict[str, Any]] = None,
        not_before: Optional[datetime] = None,
    ) -> str:
        """Queues the unit and returns the engine-assigned job id without waiting for it."""

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Requests cooperative cancellation. True only if the request was accepted."""

    @abstractmethod
    async def status(self, job_id: str) -> Optional[EngineSnapshot]:
        """Engine view of the job, or None when the engine does not know it."""

    async def forget(self, job_id: str) -> None:
        """Drops a terminal job once its final snapshot has been consumed."""
        return None


@dataclass
class _EngineJob:
    job_id: str
    unit: Unit
    mode: JobMode
    config: JobConfig
    not_before: Optional[datetime]
    snapshot: EngineSnapshot
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Holds a slot of the concurrency budget; deferred jobs take one when they wake
    admitted: bool = False
    task: Optional[asyncio.Task] = None


class ExecutionEngine(EngineAdapter):
    """In-process engine running each unit as an asyncio task."""

    def __init__(
        self,
        budget: ConcurrencyBudget,
        registry: Optional[UnitRegistry] = None,
        default_chunk_size: Optional[int] = None,
        default_timeout_seconds: Optional[float] = None,
    ):
        self.budget = budget
        self.registry = registry if registry is not None else default_registry
        self.default_chunk_size = default_chunk_size or settings.DEFAULT_CHUNK_SIZE
        self.default_timeout_seconds = default_timeout_seconds or settings.DEFAULT_TIMEOUT_SECONDS
        self._jobs: dict[str, _EngineJob] = {}
        self._slot_freed = asyncio.Event()

    def active_count(self) -> int:
        """Jobs holding a slot. Jobs still waiting for their start time do not count."""
        return sum(1 for job in self._jobs.values() if job.admitted and not is_terminal(job.snapshot.status))

    async def launch(self, unit, mode, config, context=None, not_before=None) -> str:
        self._validate(unit, mode, config)

        not_before = as_utc(not_before)
        deferred = mode == JobMode.RECURRING or (not_before is not None and not_before > utcnow())
        if not deferred and not self.budget.admits(self.active_count()):
            raise ConcurrencyLimitExceeded(self.budget.limit)

        job_id = uuid4().hex
        job = _EngineJob(
            job_id=job_id,
            unit=unit,
            mode=JobMode(mode),
            config=config,
            not_before=not_before,
            snapshot=EngineSnapshot(
                job_id=job_id,
                status=JobStatus.QUEUED,
                context=copy.deepcopy(context or {}),
            ),
        )
        job.admitted = not deferred
        self._jobs[job_id] = job
        job.task = asyncio.create_task(self._run(job), name=f"jobctl-{job_id}")
        logger.info("Engine accepted %s as job %s (mode=%s)", unit.name, job_id, mode)
        return job_id

    async def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or is_terminal(job.snapshot.status):
            return False
        if job.cancel_event.is_set():
            return False
        job.snapshot.cancel_requested_at = utcnow()
        job.cancel_event.set()
        self._slot_freed.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    async def status(self, job_id: str) -> Optional[EngineSnapshot]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        return copy.deepcopy(job.snapshot)

    async def forget(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is not None and is_terminal(job.snapshot.status):
            del self._jobs[job_id]

    async def join(self, job_id: str) -> None:
        """Waits for one job's task to finish. Meant for tests and shutdown."""
        job = self._jobs.get(job_id)
        if job is not None and job.task is not None:
            await asyncio.shield(job.task)

    async def idle(self) -> None:
        """Waits until every task launched so far has finished."""
        tasks = [job.task for job in self._jobs.values() if job.task is not None and not job.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task is not None and not job.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Execution engine stopped (%d tasks cancelled)", len(tasks))

    def _validate(self, unit: Unit, mode: JobMode, config: JobConfig) -> None:
        if unit.makes_external_calls and not config.allow_external_calls:
            raise UnitValidationError(f"unit {unit.name} makes external calls but allow_external_calls is off")
        if config.chunk_size is not None and config.chunk_size < 1:
            raise UnitValidationError(f"chunk_size must be positive, got {config.chunk_size}")
        if mode == JobMode.RECURRING:
            if not config.cron_schedule:
                raise UnitValidationError("recurring jobs need a cron_schedule")
            if not croniter.is_valid(config.cron_schedule):
                raise UnitValidationError(f"invalid cron_schedule {config.cron_schedule!r}")

    async def _run(self, job: _EngineJob) -> None:
        timeout = job.config.timeout_seconds or self.default_timeout_seconds
        try:
            if not await self._wait_for_start(job):
                self._abort(job)
                return

            job.snapshot.status = JobStatus.PREPARING
            if timeout:
                await asyncio.wait_for(self._execute(job), timeout=timeout)
            else:
                await self._execute(job)

        except UnitValidationError as e:
            self._fail(job, FailureKind.VALIDATION, str(e) or type(e).__name__)
        except UnitRuntimeError as e:
            self._fail(job, FailureKind.RUNTIME, str(e) or type(e).__name__)
        except asyncio.TimeoutError:
            self._fail(job, FailureKind.RUNTIME, f"timed out after {timeout}s")
        except asyncio.CancelledError:
            self._fail(job, FailureKind.LOST, "engine shut down while the unit was running")
            raise
        except Exception as e:
            logger.exception("Unit %s crashed in job %s", job.unit.name, job.job_id)
            self._fail(job, FailureKind.RUNTIME, f"{type(e).__name__}: {str(e)}")
        finally:
            if job.admitted:
                self._slot_freed.set()

    async def _wait_for_start(self, job: _EngineJob) -> bool:
        """Sleeps until not_before / the next cron fire, then waits for a free slot. False if cancelled meanwhile."""
        now = utcnow()
        start_at = job.not_before if job.not_before and job.not_before > now else now

        if job.mode == JobMode.RECURRING:
            start_at = croniter(job.config.cron_schedule, start_at).get_next(datetime)

        delay = (start_at - now).total_seconds()
        if delay > 0:
            try:
                await asyncio.wait_for(job.cancel_event.wait(), timeout=delay)
                return False
            except asyncio.TimeoutError:
                pass

        return await self._wait_for_slot(job)

    async def _wait_for_slot(self, job: _EngineJob) -> bool:
        # Stays Queued while the budget is full; re-checked whenever a slot frees up
        while not job.admitted:
            if job.cancel_event.is_set():
                return False
            if self.budget.admits(self.active_count()):
                job.admitted = True
                logger.info("Job %s took a slot after waiting for its start time", job.job_id)
                break
            self._slot_freed.clear()
            await self._slot_freed.wait()
        return not job.cancel_event.is_set()

    async def _execute(self, job: _EngineJob) -> None:
        snap = job.snapshot
        unit = job.unit
        context = copy.deepcopy(snap.context)

        source = unit.records(copy.deepcopy(context))
        if inspect.isawaitable(source):
            source = await source
        if not isinstance(source, RecordSource):
            raise UnitValidationError(f"unit {unit.name} returned {type(source).__name__} instead of a RecordSource")
        snap.items_total = source.total

        size = None
        if job.mode == JobMode.CHUNKED:
            size = job.config.chunk_size or self.default_chunk_size

        consumed = 0
        async for batch in _slices(source.records, size):
            # Checkpoint: never begin a new slice once cancellation was accepted
            if job.cancel_event.is_set():
                self._abort(job)
                return

            if snap.status == JobStatus.PREPARING:
                snap.status = JobStatus.RUNNING
                snap.started_at = utcnow()

            consumed += len(batch)
            if snap.items_total is not None and consumed > snap.items_total:
                snap.items_total = consumed

            result = await unit.execute(batch, copy.deepcopy(context))
            if not isinstance(result, UnitResult):
                raise UnitValidationError(f"unit {unit.name} returned {type(result).__name__} instead of a UnitResult")

            snap.items_processed += min(max(result.items_processed, 0), len(batch))
            snap.errors.extend(result.item_errors())
            if result.context is not None:
                context = copy.deepcopy(result.context)
                snap.context = copy.deepcopy(context)
            snap.slices_executed += 1

        if snap.status == JobStatus.PREPARING:
            # Empty chunked source: nothing to run, but the job still ran
            snap.status = JobStatus.RUNNING
            snap.started_at = utcnow()

        if snap.items_total is None or consumed < snap.items_total:
            # The source declared more records than it yielded
            snap.items_total = consumed

        finished = await unit.finish(copy.deepcopy(context), copy.deepcopy(snap))
        if finished is not None:
            snap.context = copy.deepcopy(finished)

        snap.status = JobStatus.COMPLETED
        snap.finished_at = utcnow()
        logger.info(
            "Job %s completed: %s/%s items, %d errors, %d slices",
            job.job_id, snap.items_processed, snap.items_total, len(snap.errors), snap.slices_executed,
        )

    def _abort(self, job: _EngineJob) -> None:
        job.snapshot.status = JobStatus.ABORTED
        job.snapshot.finished_at = utcnow()
        logger.info("Job %s aborted at checkpoint", job.job_id)

    def _fail(self, job: _EngineJob, kind: FailureKind, message: str) -> None:
        job.snapshot.status = JobStatus.FAILED
        job.snapshot.failure = UnitFailure(kind=kind, message=message)
        job.snapshot.finished_at = utcnow()
        logger.warning("Job %s failed (%s): %s", job.job_id, kind, message)


async def _slices(records: Records, size: Optional[int]) -> AsyncIterator[list[Any]]:
    """
    Yields lists of at most `size` records. With no size, yields the whole
    source as a single slice, even when it is empty.
    """
    if hasattr(records, "__aiter__"):
        batch: list[Any] = []
        async for item in records:
            batch.append(item)
            if size and len(batch) >= size:
                yield batch
                batch = []
        if batch or not size:
            yield batch
        return

    iterator = iter(records)
    if not size:
        yield list(iterator)
        return

    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch
