"""
Sample units for local runs and the scripts under scripts/.

Load them with JOBCTL_UNIT_MODULES='["jobctl.units.sample"]'.
"""
import asyncio

from jobctl.domain.errors import UnitRuntimeError
from jobctl.domain.models import ItemError
from jobctl.engine import RecordSource, UnitResult, unit


def _numbered(context):
    return RecordSource.of(range(int(context.get("records", 1000))))


@unit("sample.sync", records=_numbered)
async def sync(batch, context):
    await asyncio.sleep(float(context.get("slice_delay", 0.2)))
    bad = set(context.get("bad_records", []))
    errors = [ItemError("rejected by target", item_ref=str(r)) for r in batch if r in bad]
    synced = context.get("synced", 0) + len(batch) - len(errors)
    return UnitResult(items_processed=len(batch) - len(errors), errors=errors, context={**context, "synced": synced})


_failures: dict[str, int] = {}


@unit("sample.flaky")
async def flaky(batch, context):
    # Fails the first `fail_times` runs for a given key
    key = context.get("key", "default")
    _failures[key] = _failures.get(key, 0) + 1
    if _failures[key] <= int(context.get("fail_times", 1)):
        raise UnitRuntimeError(f"simulated outage (attempt {_failures[key]})")
    return UnitResult(items_processed=0)
