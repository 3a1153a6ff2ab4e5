"""Domain errors raised by stores and batch orchestration."""

from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base class for user-facing orchestration failures."""


class BatchNotFoundError(OrchestrationError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch not found or access denied: {batch_id}")
        self.batch_id = batch_id


class BatchNameConflictError(OrchestrationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Batch with this name already exists: {name}")
        self.name = name


class RepositoryConflictError(OrchestrationError):
    """Repository cannot be added or retried in its current state."""


class RepositoryNotFoundError(OrchestrationError):
    def __init__(self, repository: str, batch_id: str) -> None:
        super().__init__(f"Repository {repository} is not part of batch {batch_id}")
        self.repository = repository
        self.batch_id = batch_id


class JobNotFoundError(OrchestrationError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(OrchestrationError):
    """Requested job status change would move the lifecycle backwards."""
