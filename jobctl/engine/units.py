import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable, Iterable, Optional, Union

from jobctl.domain.errors import UnknownUnitError
from jobctl.domain.models import EngineSnapshot, ItemError

logger = logging.getLogger(__name__)

Records = Union[Iterable[Any], AsyncIterable[Any]]


@dataclass
class RecordSource:
    """
    Opaque view over a bulk-data supplier.

    `records` may be any iterable or async iterable. `total` is None when the
    supplier cannot tell up front how many records it will yield.
    """
    records: Records
    total: Optional[int] = None

    @classmethod
    def of(cls, items: Iterable[Any]) -> "RecordSource":
        items = list(items)
        return cls(records=items, total=len(items))

    @classmethod
    def empty(cls) -> "RecordSource":
        return cls(records=[], total=0)


@dataclass
class UnitResult:
    items_processed: int
    errors: list[Union[ItemError, str]] = field(default_factory=list)
    # None keeps the context the slice was given
    context: Optional[dict[str, Any]] = None

    def item_errors(self) -> list[ItemError]:
        return [e if isinstance(e, ItemError) else ItemError(message=str(e)) for e in self.errors]


class Unit:
    """
    One independently dispatchable piece of work.

    Subclasses implement `execute`. It receives one slice of records plus a
    private copy of the accumulated context and must be safe to call again
    with the same slice, since execution is at-least-once.
    """
    name: str = ""
    makes_external_calls: bool = False

    def records(self, context: dict[str, Any]) -> Union[RecordSource, Awaitable[RecordSource]]:
        return RecordSource.empty()

    async def execute(self, records: list[Any], context: dict[str, Any]) -> UnitResult:
        raise NotImplementedError

    async def finish(self, context: dict[str, Any], snapshot: EngineSnapshot) -> Optional[dict[str, Any]]:
        """Runs once after the last slice. A returned dict replaces the unit context."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


Executor = Callable[[list[Any], dict[str, Any]], Awaitable[UnitResult]]
RecordsFactory = Callable[[dict[str, Any]], Union[RecordSource, Awaitable[RecordSource]]]


class FunctionUnit(Unit):
    def __init__(
        self,
        name: str,
        fn: Executor,
        records: Optional[RecordsFactory] = None,
        makes_external_calls: bool = False,
    ):
        self.name = name
        self.fn = fn
        self._records = records
        self.makes_external_calls = makes_external_calls

    def records(self, context):
        if self._records is None:
            return RecordSource.empty()
        return self._records(context)

    async def execute(self, records, context):
        return await self.fn(records, context)


class UnitRegistry:
    def __init__(self):
        self._units: dict[str, Unit] = {}

    def register(self, unit: Unit) -> Unit:
        if not unit.name:
            raise ValueError("units must have a name to be registered")
        existing = self._units.get(unit.name)
        if existing is not None and existing is not unit:
            logger.warning("Replacing unit registered under %s", unit.name)
        self._units[unit.name] = unit
        return unit

    def get(self, name: str) -> Unit:
        try:
            return self._units[name]
        except KeyError:
            raise UnknownUnitError(name) from None

    def resolve(self, unit: Union[Unit, str]) -> Unit:
        if isinstance(unit, Unit):
            if unit.name not in self._units:
                self.register(unit)
            return unit
        return self.get(unit)

    def names(self) -> list[str]:
        return sorted(self._units)

    def __contains__(self, name: str) -> bool:
        return name in self._units


default_registry = UnitRegistry()


def unit(
    name: str,
    *,
    records: Optional[RecordsFactory] = None,
    makes_external_calls: bool = False,
    registry: Optional[UnitRegistry] = None,
) -> Callable[[Executor], FunctionUnit]:
    """Declares an async function as a unit and registers it."""
    def decorator(fn: Executor) -> FunctionUnit:
        if not inspect.iscoroutinefunction(fn):
            raise TypeError(f"unit {name!r} must be an async function")
        built = FunctionUnit(name, fn, records=records, makes_external_calls=makes_external_calls)
        (registry if registry is not None else default_registry).register(built)
        return built
    return decorator
