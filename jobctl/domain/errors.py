from typing import Optional


class JobError(Exception):
    """Base exception for job control errors."""
    pass


class JobNotFoundError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class DuplicateJobError(JobError):
    def __init__(self, logical_name: str, job_id: Optional[str]):
        self.logical_name = logical_name
        self.job_id = job_id
        holder = job_id if job_id else "a launch in progress"
        super().__init__(f"Logical job '{logical_name}' is already active ({holder})")


class ConcurrencyLimitExceeded(JobError):
    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Execution engine is at its concurrency limit ({limit})")


class ChainDepthExceeded(JobError):
    def __init__(self, job_id: str, depth: int, limit: int):
        self.job_id = job_id
        self.depth = depth
        self.limit = limit
        super().__init__(f"Chain link {job_id} would reach depth {depth} (limit {limit})")


class StoreUnavailable(JobError):
    pass


class ConcurrentUpdateError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} kept changing underneath the update")


class UnknownUnitError(JobError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No unit registered under '{name}'")


class UnitError(JobError):
    """Raised by units (or the engine on their behalf) while executing."""
    retryable = False


class UnitValidationError(UnitError):
    retryable = False


class UnitRuntimeError(UnitError):
    retryable = True
