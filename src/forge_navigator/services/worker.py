"""Single consumer loop feeding queued tasks to the executor."""

import asyncio

import structlog

from forge_navigator.core.config import settings
from forge_navigator.models.task import Task, TaskStatus
from forge_navigator.services.admission import AdmissionGate
from forge_navigator.services.executor import ExecutionContext, TaskExecutor
from forge_navigator.services.notifications import TASK_STARTED, NotificationSink, cleanse_task
from forge_navigator.services.task_queue import TaskQueue

logger = structlog.get_logger()


async def start_next_task(
    queue: TaskQueue,
    executor: TaskExecutor,
    notifier: NotificationSink,
    context: ExecutionContext,
) -> Task:
    """Pop the oldest task and run it to completion.

    The caller must hold the admission permit and have checked that the
    queue is not empty.
    """
    task = queue.pop_front()
    task.queue_size = None
    task.status = TaskStatus.STARTED
    context.current_task = task
    logger.info("Starting task", job_id=task.job_id, remaining=queue.size())

    try:
        await notifier.notify(task.origin, TASK_STARTED, cleanse_task(task))
        await executor.execute(task)
    except Exception:
        logger.exception("Error executing task, continuing...", job_id=task.job_id)
    finally:
        context.current_task = None
    return task


async def run_worker(
    queue: TaskQueue,
    gate: AdmissionGate,
    executor: TaskExecutor,
    notifier: NotificationSink,
    context: ExecutionContext,
    idle_delay: float | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Run the generation queue worker.

    Holds the admission permit while it looks at the queue and for the whole
    of each execution, so at most one task is ever in flight.

    Args:
        queue: Pending tasks
        gate: Admission gate bounding concurrent executions
        executor: Runs a single task against the backend
        notifier: Receives the ``task-started`` event
        context: Shared execution state
        idle_delay: Seconds to wait when the queue is empty
        stop_event: Optional event to signal worker shutdown
    """
    delay = idle_delay if idle_delay is not None else settings.queue_idle_delay_ms / 1000
    logger.info("Starting generation queue worker")

    while True:
        if stop_event and stop_event.is_set():
            logger.info("Worker shutdown requested")
            break

        try:
            async with gate.permit():
                if queue.size() > 0:
                    await start_next_task(queue, executor, notifier, context)
                else:
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
            break
