from .adapter import EngineAdapter, ExecutionEngine
from .units import FunctionUnit, RecordSource, Unit, UnitRegistry, UnitResult, default_registry, unit

__all__ = [
    "EngineAdapter",
    "ExecutionEngine",
    "FunctionUnit",
    "RecordSource",
    "Unit",
    "UnitRegistry",
    "UnitResult",
    "default_registry",
    "unit",
]
