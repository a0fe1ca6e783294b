"""Wiring of the long-lived pipeline components."""

from dataclasses import dataclass

from forge_navigator.services.admission import AdmissionGate
from forge_navigator.services.executor import ExecutionContext, TaskExecutor
from forge_navigator.services.forge import ForgeClient
from forge_navigator.services.notifications import ConnectionManager
from forge_navigator.services.parameters import ParameterResolver
from forge_navigator.services.storage import ImageStore
from forge_navigator.services.submission import QueueService
from forge_navigator.services.task_queue import TaskQueue


@dataclass
class Navigator:
    """Everything one process needs to accept, run and report on tasks."""

    client: ForgeClient
    store: ImageStore
    notifier: ConnectionManager
    context: ExecutionContext
    queue: TaskQueue
    gate: AdmissionGate
    resolver: ParameterResolver
    executor: TaskExecutor
    service: QueueService


def create_navigator(
    client: ForgeClient | None = None,
    store: ImageStore | None = None,
    notifier: ConnectionManager | None = None,
    progress_interval: float | None = None,
) -> Navigator:
    """Build the component graph, using defaults from settings where omitted."""
    client = client or ForgeClient()
    store = store or ImageStore()
    notifier = notifier or ConnectionManager()
    context = ExecutionContext()
    queue = TaskQueue()
    resolver = ParameterResolver(client, store)
    executor = TaskExecutor(
        client, store, notifier, context, resolver, progress_interval=progress_interval
    )
    service = QueueService(queue, store, resolver, client, executor, context)
    return Navigator(
        client=client,
        store=store,
        notifier=notifier,
        context=context,
        queue=queue,
        gate=AdmissionGate(),
        resolver=resolver,
        executor=executor,
        service=service,
    )
