"""Per-entry stage sequence with checkpointing."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..api.exceptions import ConflictError, FatalStageError, TransientError
from ..api.poller import TaskPoller, TaskStatus
from ..api.rate_limiter import ServiceClass, ServiceRateLimiter
from ..api.retry import RetryPolicy
from ..config.config import ENRICHMENT_STEPS
from ..models.content import DestinationRecord, Enrichment, SourceContent
from ..models.entry import STATUS_ORDER, Entry, EntryStatus, Stage
from ..providers.ai import fallback_keywords, fallback_summary, fallback_title
from ..providers.base import Collaborators
from ..state.store import StateStore
from ..utils.timing import sleep_unless_aborted
from .transform import normalize_content


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode='json')


class PipelineSettings(BaseModel):
    """Feature toggles for one run."""

    generate_summaries: bool = Field(default=True)
    generate_images: bool = Field(default=True)
    required_enrichments: List[str] = Field(default_factory=list)
    max_keywords: int = Field(default=10)
    default_category: str = Field(default='Uncategorized')
    asset_prefix: str = Field(default='images')
    enrichment_fallbacks: bool = Field(default=True)
    content_rules: List[str] = Field(default_factory=list)
    require_image: bool = Field(default=False)


@dataclass
class PipelineContext:
    """Everything an entry pipeline needs, shared by reference."""

    store: StateStore
    collaborators: Collaborators
    limiter: ServiceRateLimiter
    retry_policy: RetryPolicy
    poller: Optional[TaskPoller] = None
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    clock: Callable[[], datetime] = utcnow

    # Category lookups are serialized so concurrent entries never create the
    # same category twice.
    category_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    category_ids: Dict[str, str] = field(default_factory=dict)


class StageInterrupted(Exception):
    """A stage gave up waiting because the run is aborting."""


class EntryOutcome(BaseModel):
    """Result of one pipeline execution."""

    entry_id: str
    status: EntryStatus
    attempts: int = 0
    stage: Optional[Stage] = None
    error: Optional[str] = None
    skipped: bool = False
    aborted: bool = False


class EntryPipeline:
    """Runs the stages of a single entry, resuming from its checkpoint.

    Stage errors never escape ``run``: they end up as the entry's status and
    ``last_error``.
    """

    def __init__(self, entry_id: str, context: PipelineContext):
        self.entry_id = entry_id
        self.context = context
        self.logger = logger.bind(component='EntryPipeline', entry_id=entry_id)
        self._entry: Optional[Entry] = None
        self._stage: Optional[Stage] = None
        self._handlers = {
            Stage.FETCH: self._fetch,
            Stage.TRANSFORM: self._transform,
            Stage.ENRICH: self._enrich,
            Stage.UPLOAD: self._upload,
            Stage.WRITE: self._write,
        }

    @property
    def aborted(self) -> bool:
        return self.context.abort.is_set()

    async def run(self) -> EntryOutcome:
        """Execute the remaining stages, retrying per the retry policy."""
        entry = self.context.store.get_entry(self.entry_id)
        if entry is None:
            return EntryOutcome(
                entry_id=self.entry_id,
                status=EntryStatus.PENDING,
                skipped=True,
                error='Entry is not registered in the ledger',
            )
        if entry.status.is_terminal:
            return self._outcome(entry, skipped=True)

        self._entry = entry
        try:
            return await self._run_attempts()
        except ConflictError as e:
            self.logger.error(f'Giving up on entry for this run: {e}')
            return self._outcome(self._entry, error=str(e))

    async def _run_attempts(self) -> EntryOutcome:
        policy = self.context.retry_policy

        while True:
            if self.aborted:
                return self._outcome(self._entry, aborted=True)

            self._checkpoint(self._begin_attempt)
            self.logger.info(
                f'Attempt {self._entry.attempts}/{policy.max_attempts} from '
                f'checkpoint {self._checkpoint_name()}'
            )

            try:
                finished = await self._run_stages()
            except ConflictError:
                raise
            except StageInterrupted:
                finished = False
            except Exception as e:
                error_class = policy.classify(e)
                message = f'{self._stage.value}: {e}' if self._stage else str(e)

                if not policy.should_retry(error_class, self._entry.attempts):
                    self._checkpoint(lambda entry: self._mark_failed(entry, message))
                    self.logger.error(
                        f'Entry failed permanently ({error_class.value}) '
                        f'after {self._entry.attempts} attempts: {message}'
                    )
                    return self._outcome(self._entry, error=message)

                delay = policy.compute_backoff(self._entry.attempts, error_class, e)
                retry_at = self.context.clock() + timedelta(seconds=delay)

                def schedule_retry(entry: Entry) -> None:
                    entry.last_error = message
                    entry.next_retry_at = retry_at

                self._checkpoint(schedule_retry)
                self.logger.warning(
                    f'{error_class.value} failure, retrying in {delay:.1f}s: {message}'
                )
                await self._pause(delay)
                continue

            if not finished:
                self.logger.info('Stopping at checkpoint on abort')
                return self._outcome(self._entry, aborted=True)

            self._checkpoint(self._mark_completed)
            self.logger.info(f'Entry completed after {self._entry.attempts} attempts')
            return self._outcome(self._entry)

    async def _run_stages(self) -> bool:
        """Run remaining stages; False if stopped by the abort signal."""
        for index, stage in enumerate(self._entry.remaining_stages()):
            if index and self.aborted:
                return False

            self._stage = stage
            self._checkpoint(lambda entry: self._advance_status(entry, stage))

            updates = await self._handlers[stage](self._entry.artifacts)

            def complete_stage(entry: Entry) -> None:
                entry.stage_checkpoint = stage
                entry.artifacts.update(updates)
                entry.last_error = None
                entry.next_retry_at = None

            self._checkpoint(complete_stage)
            self.logger.debug(f'Checkpointed stage {stage.value}')

        self._stage = None
        return True

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await sleep_unless_aborted(self.context.sleep, seconds, self.context.abort)

    def _checkpoint(self, mutate: Callable[[Entry], None]) -> Entry:
        """Apply ``mutate`` and write the entry, reloading once on conflict."""
        store = self.context.store
        entry = self._entry.model_copy(deep=True)
        mutate(entry)
        try:
            self._entry = store.upsert_entry(entry)
        except ConflictError as e:
            self.logger.warning(f'{e}; reloading and retrying once')
            fresh = store.get_entry(self.entry_id)
            mutate(fresh)
            self._entry = store.upsert_entry(fresh)
        return self._entry

    def _begin_attempt(self, entry: Entry) -> None:
        entry.attempts += 1
        entry.next_retry_at = None
        entry.timestamps.setdefault('started', self.context.clock())

    @staticmethod
    def _advance_status(entry: Entry, stage: Stage) -> None:
        # Status only moves forward; a retried stage keeps its own status.
        if STATUS_ORDER.index(stage.status) > STATUS_ORDER.index(entry.status):
            entry.status = stage.status

    def _mark_failed(self, entry: Entry, message: str) -> None:
        entry.status = EntryStatus.FAILED
        entry.last_error = message
        entry.next_retry_at = None
        entry.timestamps['failed'] = self.context.clock()

    def _mark_completed(self, entry: Entry) -> None:
        entry.status = EntryStatus.COMPLETED
        entry.last_error = None
        entry.next_retry_at = None
        entry.timestamps['completed'] = self.context.clock()

    def _checkpoint_name(self) -> str:
        checkpoint = self._entry.stage_checkpoint
        return checkpoint.value if checkpoint else 'start'

    def _outcome(self, entry: Entry, **kwargs) -> EntryOutcome:
        return EntryOutcome(
            entry_id=entry.id,
            status=entry.status,
            attempts=entry.attempts,
            stage=self._stage,
            error=kwargs.pop('error', entry.last_error),
            **kwargs,
        )

    async def _acquire(self, service: ServiceClass) -> None:
        await self.context.limiter.acquire(service)

    # Stages. Each receives the checkpointed artifacts and returns updates.

    async def _fetch(self, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        await self._acquire(ServiceClass.CONTENT_SOURCE)
        content = await self.context.collaborators.source.fetch(self.entry_id)
        return {'content': _jsonable(content)}

    async def _transform(self, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        content = SourceContent(**artifacts['content'])
        record = normalize_content(content, self.context.settings.default_category)
        return {'record': _jsonable(record)}

    async def _enrich(self, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.context.settings
        ai = self.context.collaborators.ai
        if not settings.generate_summaries or ai is None:
            self.logger.debug('Enrichment disabled, skipping')
            return {'enrichment': None}

        record = DestinationRecord(**artifacts['record'])
        if settings.content_rules and not artifacts.get('rules_passed'):
            await self._acquire(ServiceClass.AI_PROVIDER)
            if not await ai.validate_content(record.text, settings.content_rules):
                raise FatalStageError('Content violates the configured content rules')
            # Checked once per entry, even if enrichment is retried
            self._checkpoint(lambda entry: entry.artifacts.__setitem__('rules_passed', True))

        enrichment = dict(artifacts.get('enrichment') or {})
        calls = {
            'summary': lambda: ai.summarize(record.text),
            'title': lambda: ai.title(record.text, record.title),
            'keywords': lambda: ai.keywords(record.text, settings.max_keywords),
        }
        fallbacks = {
            'summary': lambda: fallback_summary(record.text),
            'title': lambda: fallback_title(record.title),
            'keywords': lambda: fallback_keywords(record.text, settings.max_keywords),
        }

        mandatory_error: Optional[Exception] = None
        for step in ENRICHMENT_STEPS:
            if enrichment.get(step) is not None:
                continue
            try:
                await self._acquire(ServiceClass.AI_PROVIDER)
                enrichment[step] = await calls[step]()
            except Exception as e:
                if step in settings.required_enrichments:
                    self.logger.warning(f'Required enrichment {step} failed: {e}')
                    mandatory_error = mandatory_error or e
                elif settings.enrichment_fallbacks:
                    self.logger.warning(
                        f'Optional enrichment {step} failed, using fallback: {e}'
                    )
                    enrichment[step] = fallbacks[step]()
                else:
                    self.logger.warning(f'Optional enrichment {step} failed: {e}')

        if mandatory_error is not None:
            # Keep what succeeded so the retry only repeats the failed steps
            partial = dict(enrichment)
            self._checkpoint(
                lambda entry: entry.artifacts.__setitem__('enrichment', partial)
            )
            raise mandatory_error

        return {'enrichment': enrichment}

    async def _upload(self, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.context.settings
        collaborators = self.context.collaborators
        poller = self.context.poller
        if (
            not settings.generate_images
            or poller is None
            or collaborators.images is None
            or collaborators.storage is None
        ):
            self.logger.debug('Image generation disabled, skipping')
            return {'image_url': None}

        record = DestinationRecord(**artifacts['record'])
        enrichment = Enrichment(**(artifacts.get('enrichment') or {}))
        prompt = enrichment.title or record.title
        if enrichment.keywords:
            prompt = f'{prompt}: {", ".join(enrichment.keywords[:5])}'

        task = await poller.wait(await poller.create(prompt))
        if not task.status.is_terminal:
            raise StageInterrupted(f'Abandoned image task {task.task_id} on abort')

        if task.status == TaskStatus.FAILED:
            message = f'Image generation failed for task {task.task_id}: {task.error}'
            if settings.require_image:
                raise FatalStageError(message)
            self.logger.warning(f'{message}; writing the record without an image')
            return {'image_url': None}

        if task.status == TaskStatus.TIMED_OUT:
            message = f'Image generation timed out for task {task.task_id}'
            attempts_left = self._entry.attempts < self.context.retry_policy.max_attempts
            if settings.require_image or attempts_left:
                raise TransientError(message)
            self.logger.warning(f'{message}; writing the record without an image')
            return {'image_url': None}

        await self._acquire(ServiceClass.AI_PROVIDER)
        data = await collaborators.images.download(task.result_ref)

        await self._acquire(ServiceClass.OBJECT_STORAGE)
        path = f'{settings.asset_prefix.strip("/")}/{self.entry_id}.png'
        url = await collaborators.storage.put(data, path)
        self.logger.info(f'Uploaded image to {url}')
        return {'image_url': url}

    async def _resolve_category(self, name: str) -> str:
        destination = self.context.collaborators.destination
        async with self.context.category_lock:
            if name in self.context.category_ids:
                return self.context.category_ids[name]

            await self._acquire(ServiceClass.DESTINATION)
            category_id = await destination.find_by_name(name)
            if category_id is None:
                await self._acquire(ServiceClass.DESTINATION)
                category_id = await destination.create(name)
                self.logger.info(f'Created category "{name}"')

            self.context.category_ids[name] = category_id
            return category_id

    async def _write(self, artifacts: Dict[str, Any]) -> Dict[str, Any]:
        record = DestinationRecord(**artifacts['record'])
        enrichment = Enrichment(**(artifacts.get('enrichment') or {}))

        if enrichment.title:
            record.title = enrichment.title
        record.summary = enrichment.summary
        record.keywords = enrichment.keywords or []
        record.image_url = artifacts.get('image_url')
        record.category_id = await self._resolve_category(record.category)

        await self._acquire(ServiceClass.DESTINATION)
        await self.context.collaborators.destination.upsert(record)
        return {'category_id': record.category_id}
