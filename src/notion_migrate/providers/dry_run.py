"""Stand-ins for mutating collaborators in dry-run mode.

Each wrapper records the action it would have taken and returns values
shaped like the real ones, so the pipeline runs unchanged.
"""

from typing import List, Optional

from loguru import logger

from ..models.content import DestinationRecord
from .base import DestinationDB, ImageProvider, ObjectStore, RemoteTaskResult


class DryRunRecorder:
    """Collects the actions a dry run would have performed."""

    def __init__(self):
        self.actions: List[str] = []

    def record(self, action: str) -> None:
        logger.bind(component='DryRun').info(f'[DRY RUN] Would {action}')
        self.actions.append(action)


class DryRunImageProvider(ImageProvider):
    """Never submits a job; every task succeeds immediately."""

    def __init__(self, recorder: DryRunRecorder):
        self.recorder = recorder
        self._counter = 0

    async def create_task(self, prompt: str) -> str:
        self._counter += 1
        self.recorder.record(f'create image generation task for "{prompt[:60]}"')
        return f'dry-run-task-{self._counter}'

    async def poll_task(self, task_id: str) -> RemoteTaskResult:
        return RemoteTaskResult(status='succeeded', result_url=f'dry-run://{task_id}')

    async def download(self, url: str) -> bytes:
        return b''


class DryRunObjectStore(ObjectStore):
    def __init__(self, recorder: DryRunRecorder):
        self.recorder = recorder

    async def put(self, data: bytes, path: str) -> str:
        self.recorder.record(f'upload asset {path}')
        return f'dry-run://{path}'


class DryRunDestination(DestinationDB):
    """Reads go to the real destination; writes are only recorded."""

    def __init__(self, recorder: DryRunRecorder, wrapped: Optional[DestinationDB] = None):
        self.recorder = recorder
        self.wrapped = wrapped

    async def find_by_name(self, name: str) -> Optional[str]:
        if self.wrapped is None:
            return None
        return await self.wrapped.find_by_name(name)

    async def create(self, name: str) -> str:
        self.recorder.record(f'create category "{name}"')
        return f'dry-run-category-{name}'

    async def upsert(self, record: DestinationRecord) -> None:
        self.recorder.record(f'upsert record {record.source_id} "{record.title}"')
