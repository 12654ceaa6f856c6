from enum import StrEnum, auto


class JobStatus(StrEnum):
    QUEUED = auto()       # Accepted by the engine, waiting for capacity or not_before
    PREPARING = auto()    # Engine is opening the record source
    RUNNING = auto()      # First batch handed to the unit
    COMPLETED = auto()    # All items done (per-item errors allowed)
    FAILED = auto()       # Unrecoverable unit failure
    ABORTED = auto()      # Cancel accepted


class JobMode(StrEnum):
    SINGLE_SHOT = auto()
    CHUNKED = auto()
    RECURRING = auto()


class FailureKind(StrEnum):
    VALIDATION = auto()   # Unit rejected its own input, never retried
    RUNTIME = auto()      # Transient failure or timeout
    LOST = auto()         # Engine no longer knows the job
    CHAIN_DEPTH = auto()  # Link rejected before launch


class JobEvent(StrEnum):
    CREATED = auto()
    STARTED = auto()
    COMPLETED = auto()
    FAILED = auto()
    LOST = auto()
    RETRIED = auto()
    GIVE_UP = auto()
    CHAINED = auto()
    CHAIN_HALTED = auto()
    RECURRED = auto()
    CANCEL_REQUESTED = auto()
    ABORTED = auto()
    RECONCILED_OVERRIDE = auto()


ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PREPARING, JobStatus.RUNNING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED})

RETRYABLE_FAILURES = frozenset({FailureKind.RUNTIME, FailureKind.LOST})

_RANK = {
    JobStatus.QUEUED: 0,
    JobStatus.PREPARING: 1,
    JobStatus.RUNNING: 2,
    JobStatus.COMPLETED: 3,
    JobStatus.FAILED: 3,
    JobStatus.ABORTED: 3,
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """
    Transitions only move forward in rank, never out of a terminal state.

    Polling may observe a job late, so queued -> running or queued -> completed
    are accepted as long as they move forward.
    """
    if is_terminal(current):
        return False
    return _RANK[target] > _RANK[current]
