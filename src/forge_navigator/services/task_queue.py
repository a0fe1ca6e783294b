"""In-memory FIFO of tasks waiting for the worker."""

from collections import deque
from collections.abc import Iterator

from forge_navigator.core.exceptions import EmptyQueueError
from forge_navigator.models.task import Task


class TaskQueue:
    """Ordered collection of pending tasks.

    Every method runs without awaiting, so producers on the event loop and
    the single worker never observe a half-applied mutation.
    """

    def __init__(self) -> None:
        self._tasks: deque[Task] = deque()

    def push(self, task: Task) -> None:
        self._tasks.append(task)

    def pop_front(self) -> Task:
        """Remove and return the oldest task.

        Raises:
            EmptyQueueError: If nothing is queued.
        """
        if not self._tasks:
            raise EmptyQueueError("Task queue is empty")
        return self._tasks.popleft()

    def remove_by_id(self, job_id: str) -> bool:
        """Remove the first task with ``job_id``; report whether one was removed.

        A task that has already been dequeued for execution is not found here.
        """
        for index, task in enumerate(self._tasks):
            if task.job_id == job_id:
                del self._tasks[index]
                return True
        return False

    def contains_id(self, job_id: str) -> bool:
        return any(task.job_id == job_id for task in self._tasks)

    def size(self) -> int:
        return len(self._tasks)

    def peek_ids(self) -> list[str]:
        return [task.job_id for task in self._tasks]

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks))
