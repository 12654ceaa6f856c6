import asyncio
import copy
import os
from typing import Optional
from uuid import uuid4

# Must be set before jobctl.settings is imported
os.environ.setdefault("JOBCTL_SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite://")
os.environ.setdefault("JOBCTL_AUTO_CREATE_TABLES", "false")

import pytest

from jobctl.db.session import build_engine, build_session_factory, init_models
from jobctl.domain.models import ConcurrencyBudget, EngineSnapshot
from jobctl.domain.states import JobStatus
from jobctl.engine.adapter import EngineAdapter, ExecutionEngine
from jobctl.engine.units import UnitRegistry
from jobctl.scheduler.ticker import run_reconcile
from jobctl.store import records


class FakeEngine(EngineAdapter):
    """Engine whose snapshots the test sets by hand."""

    def __init__(self, registry: UnitRegistry):
        self.registry = registry
        self.snapshots: dict[str, EngineSnapshot] = {}
        self.launched: list[str] = []
        self.accept_cancel = True

    async def launch(self, unit, mode, config, context=None, not_before=None) -> str:
        job_id = uuid4().hex
        self.snapshots[job_id] = EngineSnapshot(
            job_id=job_id, status=JobStatus.QUEUED, context=copy.deepcopy(context or {}),
        )
        self.launched.append(job_id)
        return job_id

    async def cancel(self, job_id: str) -> bool:
        return self.accept_cancel and job_id in self.snapshots

    async def status(self, job_id: str) -> Optional[EngineSnapshot]:
        snap = self.snapshots.get(job_id)
        return copy.deepcopy(snap) if snap is not None else None

    def update(self, job_id: str, **changes) -> None:
        snap = self.snapshots[job_id]
        for key, value in changes.items():
            setattr(snap, key, value)


@pytest.fixture
async def db_engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def registry():
    return UnitRegistry()


@pytest.fixture
async def engine(registry):
    eng = ExecutionEngine(ConcurrencyBudget(10), registry=registry, default_chunk_size=200)
    yield eng
    await eng.shutdown()


@pytest.fixture
def fake_engine(registry):
    return FakeEngine(registry)


async def _drain(session, engine: ExecutionEngine, rounds: int = 100) -> None:
    for _ in range(rounds):
        await engine.idle()
        report = await run_reconcile(session, engine)
        pending = await records.records_to_reconcile(session)
        unsettled = await records.records_to_settle(session)
        if not pending and not unsettled and not report.deferred:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("jobs did not settle")


@pytest.fixture
def drain(session, engine):
    """Runs the engine and the reconciler until every record is terminal and settled."""
    async def run(rounds: int = 100):
        await _drain(session, engine, rounds)
    return run
