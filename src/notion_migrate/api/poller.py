"""Polling of long-running remote generation jobs."""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..providers.base import ImageProvider
from ..utils.timing import sleep_unless_aborted


class TaskStatus(str, Enum):
    """Local view of a remote job."""

    CREATED = 'created'
    POLLING = 'polling'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.TIMED_OUT)


class GenerationTask(BaseModel):
    """A remote job tracked by one poller invocation. Never persisted."""

    task_id: str = Field(..., description='Remote task id')
    kind: str = Field(default='image', description='Kind of generated asset')
    status: TaskStatus = Field(default=TaskStatus.CREATED)
    result_ref: Optional[str] = Field(default=None, description='Result URL')
    attempts: int = Field(default=0, description='Status checks made')
    error: Optional[str] = Field(default=None)


class TaskPoller:
    """State machine ``created -> polling -> succeeded|failed|timed_out``.

    There is no remote cancel. Giving up on a task locally, by timing out or
    abandoning ``wait``, leaves the remote job running.
    """

    def __init__(
        self,
        provider: ImageProvider,
        interval: float = 5.0,
        max_attempts: int = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        before_request: Optional[Callable[[], Awaitable[None]]] = None,
        abort: Optional[asyncio.Event] = None,
    ):
        """Initialize task poller.

        Args:
            provider: Image provider that owns the remote jobs
            interval: Seconds between status checks
            max_attempts: Status checks before giving up
            sleep: Coroutine used to wait between checks
            before_request: Awaited before every remote call, e.g. a
                rate limiter acquisition
            abort: When set, ``wait`` stops polling and returns the task
                still in progress
        """
        if max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        self.provider = provider
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._before_request = before_request
        self.abort = abort
        self.logger = logger.bind(component='TaskPoller')

    async def _throttle(self) -> None:
        if self._before_request is not None:
            await self._before_request()

    async def create(self, prompt: str, kind: str = 'image') -> GenerationTask:
        """Submit a remote job."""
        await self._throttle()
        task_id = await self.provider.create_task(prompt)
        self.logger.info(f'Created {kind} generation task {task_id}')
        return GenerationTask(task_id=task_id, kind=kind)

    async def poll(self, task: GenerationTask) -> GenerationTask:
        """Perform exactly one remote status check.

        Terminal tasks are returned unchanged without a remote call.
        """
        if task.status.is_terminal:
            return task

        await self._throttle()
        result = await self.provider.poll_task(task.task_id)
        task.attempts += 1
        remote_status = result.status.lower()

        if remote_status == 'succeeded':
            if result.result_url:
                task.status = TaskStatus.SUCCEEDED
                task.result_ref = result.result_url
            else:
                task.status = TaskStatus.FAILED
                task.error = 'Task succeeded without a result URL'
        elif remote_status == 'failed':
            task.status = TaskStatus.FAILED
            task.error = result.error or 'Remote task failed'
        elif task.attempts >= self.max_attempts:
            task.status = TaskStatus.TIMED_OUT
            task.error = f'No result after {task.attempts} status checks'
        else:
            task.status = TaskStatus.POLLING

        self.logger.debug(
            f'Task {task.task_id} check {task.attempts}/{self.max_attempts}: '
            f'{remote_status} -> {task.status.value}'
        )
        return task

    async def wait(self, task: GenerationTask) -> GenerationTask:
        """Drive ``poll`` until the task reaches a terminal status.

        On abort the task is returned non-terminal.
        """
        while True:
            if self.abort is not None and self.abort.is_set():
                self.logger.info(f'Stopped polling task {task.task_id} on abort')
                return task
            await self.poll(task)
            if task.status.is_terminal:
                break
            await sleep_unless_aborted(self._sleep, self.interval, self.abort)

        if task.status != TaskStatus.SUCCEEDED:
            self.logger.warning(f'Task {task.task_id} ended {task.status.value}: {task.error}')
        return task
