"""Exceptions raised by the queueing pipeline and its collaborators."""


class NavigatorError(Exception):
    """Base class for all navigator errors."""


class ValidationError(NavigatorError):
    """A request was rejected before a task was constructed."""


class DuplicateJobError(ValidationError):
    """A job id was submitted that already has an image record."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} already exists")


class EmptyQueueError(NavigatorError):
    """Raised when popping from an empty task queue."""


class TaskNotFoundError(NavigatorError):
    """The task is neither queued nor currently processing."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Task {job_id} not found")


class UnauthorizedError(NavigatorError):
    """The requester does not own the task or resource."""


class ImageNotFoundError(NavigatorError):
    """No stored image exists for the given job id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Image with ID {job_id} not found")


class PersistenceError(NavigatorError):
    """Writing a generation artifact to storage failed."""
