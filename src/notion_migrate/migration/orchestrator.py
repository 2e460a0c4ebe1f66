"""Top-level driver: discovery, directives, scheduling and reporting."""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..api.exceptions import MigrationError, ValidationError
from ..api.poller import TaskPoller
from ..api.rate_limiter import ServiceClass
from ..models.entry import EntryStatus
from ..providers.dry_run import (
    DryRunDestination,
    DryRunImageProvider,
    DryRunObjectStore,
    DryRunRecorder,
)
from ..state.store import InMemoryStateStore, StateStore
from .pipeline import EntryOutcome, PipelineContext
from .scheduler import BatchScheduler, ProgressCallback
from .transform import normalize_content


class RunOptions(BaseModel):
    """Options for one orchestrator run."""

    verify_only: bool = Field(default=False, description='Read-only report')
    dry_run: bool = Field(default=False, description='Record mutations only')
    single_entry: Optional[str] = Field(default=None, description='Only this id')
    limit: Optional[int] = Field(default=None, description='Max entries to run')
    force_update: bool = Field(default=False, description='Redo finished entries')
    reset_pending: bool = Field(default=False, description='Reset stuck entries')
    skip_images: bool = Field(default=False, description='Disable images')
    skip_summaries: bool = Field(default=False, description='Disable enrichment')
    batch_size: int = Field(default=10, description='Entries per window')
    concurrency: int = Field(default=3, description='Parallel pipelines')
    batch_delay_ms: int = Field(default=1000, description='Pause between windows')

    @field_validator('limit')
    @classmethod
    def validate_limit(cls, v):
        if v is not None and v <= 0:
            raise ValueError('limit must be positive')
        return v

    @field_validator('batch_size', 'concurrency')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError('must be positive')
        return v

    @field_validator('batch_delay_ms')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError('delay must not be negative')
        return v

    @field_validator('single_entry')
    @classmethod
    def validate_single_entry(cls, v):
        if v is not None and not v.strip():
            raise ValueError('single_entry must not be blank')
        return v.strip() if v else v

    @property
    def mode(self) -> str:
        if self.verify_only:
            return 'verify'
        if self.dry_run:
            return 'dry_run'
        if self.single_entry:
            return 'single_entry'
        return 'run'


class EntryFailure(BaseModel):
    """Why an entry did not complete."""

    entry_id: str
    stage: Optional[str] = None
    reason: str


class EntryVerification(BaseModel):
    """Verify-only finding for one entry."""

    entry_id: str
    status: str
    detail: Optional[str] = None


class MigrationReport(BaseModel):
    """Summary of one orchestrator run."""

    mode: str = Field(..., description='run, verify, dry_run or single_entry')
    total: int = Field(default=0, description='Entries considered')
    completed: int = Field(default=0, description='Entries completed this run')
    failed: int = Field(default=0, description='Entries that failed')
    skipped: int = Field(default=0, description='Entries not run')
    windows: int = Field(default=0, description='Windows executed')
    aborted: bool = Field(default=False, description='Stopped by abort signal')

    started_at: datetime = Field(..., description='Run start time')
    completed_at: Optional[datetime] = Field(default=None)

    failures: List[EntryFailure] = Field(default_factory=list)
    intended_actions: List[str] = Field(default_factory=list)
    verification: List[EntryVerification] = Field(default_factory=list)


class MigrationOrchestrator:
    """Composes store, scheduler and pipelines into migration runs."""

    def __init__(
        self,
        context: PipelineContext,
        poller_factory: Optional[Callable[..., Optional[TaskPoller]]] = None,
    ):
        """Initialize migration orchestrator.

        Args:
            context: Shared pipeline context with the real collaborators
            poller_factory: Builds a poller for a given image provider. Used
                to point dry runs at the recording image provider.
        """
        self.context = context
        self.poller_factory = poller_factory
        self.logger = logger.bind(component='MigrationOrchestrator')

    @property
    def store(self) -> StateStore:
        return self.context.store

    async def execute(
        self, options: RunOptions, progress: Optional[ProgressCallback] = None
    ) -> MigrationReport:
        """Dispatch to the mode selected by ``options``."""
        if options.verify_only:
            return await self.verify(options)
        if options.dry_run:
            return await self.dry_run(options, progress)
        if options.single_entry:
            return await self.run_single(options.single_entry, options, progress)
        return await self.run(options, progress)

    async def run(
        self, options: RunOptions, progress: Optional[ProgressCallback] = None
    ) -> MigrationReport:
        """Migrate every eligible entry."""
        return await self._migrate(self.context, options, progress)

    async def run_single(
        self,
        entry_id: str,
        options: Optional[RunOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MigrationReport:
        """Process exactly one identified entry."""
        options = _copy_options(options or RunOptions(), single_entry=entry_id)
        return await self._migrate(self.context, options, progress)

    async def dry_run(
        self, options: RunOptions, progress: Optional[ProgressCallback] = None
    ) -> MigrationReport:
        """Run the pipeline against a throwaway ledger with recorded mutations."""
        options = _copy_options(options, dry_run=True)
        recorder = DryRunRecorder()

        state = self.store.load()
        overlay = InMemoryStateStore(state)
        collaborators = replace(
            self.context.collaborators,
            destination=DryRunDestination(recorder, self.context.collaborators.destination),
            images=DryRunImageProvider(recorder),
            storage=DryRunObjectStore(recorder),
        )
        poller = None
        if self.poller_factory is not None:
            poller = self.poller_factory(collaborators.images)
        elif self.context.poller is not None:
            poller = TaskPoller(
                collaborators.images,
                interval=0,
                max_attempts=self.context.poller.max_attempts,
                abort=self.context.abort,
            )

        context = replace(
            self.context,
            store=overlay,
            collaborators=collaborators,
            poller=poller,
            category_ids={},
            category_lock=asyncio.Lock(),
        )
        self.logger.info('Starting dry run; no external state will change')
        report = await self._migrate(context, options, progress)
        report.intended_actions = list(recorder.actions)
        return report

    async def verify(self, options: RunOptions) -> MigrationReport:
        """Read-only pass reporting what a run would do."""
        options = _copy_options(options, verify_only=True)
        report = MigrationReport(mode=options.mode, started_at=datetime.now())
        source = self.context.collaborators.source

        self.store.load()
        if options.single_entry:
            entry_ids = [options.single_entry]
        else:
            await self.context.limiter.acquire(ServiceClass.CONTENT_SOURCE)
            entry_ids = await source.list_ids()
        if options.limit:
            entry_ids = entry_ids[: options.limit]

        for entry_id in entry_ids:
            entry = self.store.get_entry(entry_id)
            if entry is not None and entry.status == EntryStatus.COMPLETED:
                if not options.force_update:
                    report.verification.append(
                        EntryVerification(entry_id=entry_id, status='completed')
                    )
                    report.completed += 1
                    continue

            try:
                await self.context.limiter.acquire(ServiceClass.CONTENT_SOURCE)
                content = await source.fetch(entry_id)
                record = normalize_content(
                    content, self.context.settings.default_category
                )
            except MigrationError as e:
                report.verification.append(
                    EntryVerification(entry_id=entry_id, status='invalid', detail=str(e))
                )
                report.failures.append(EntryFailure(entry_id=entry_id, reason=str(e)))
                report.failed += 1
                continue

            report.verification.append(
                EntryVerification(
                    entry_id=entry_id,
                    status='would_migrate',
                    detail=f'{record.title} ({record.word_count} words)',
                )
            )
            report.skipped += 1

        report.total = len(entry_ids)
        report.completed_at = datetime.now()
        self.logger.info(
            f'Verification finished: {report.completed} completed, '
            f'{report.skipped} to migrate, {report.failed} invalid'
        )
        return report

    async def _migrate(
        self,
        context: PipelineContext,
        options: RunOptions,
        progress: Optional[ProgressCallback],
    ) -> MigrationReport:
        report = MigrationReport(mode=options.mode, started_at=datetime.now())
        store = context.store
        settings = context.settings.model_copy(
            update={
                'generate_images': context.settings.generate_images
                and not options.skip_images,
                'generate_summaries': context.settings.generate_summaries
                and not options.skip_summaries,
            }
        )
        context = replace(context, settings=settings)

        store.load()
        if options.reset_pending:
            store.reset_pending()

        targets = await self._discover(context, options)
        store.mark_run()

        scheduler = BatchScheduler(
            context,
            batch_size=options.batch_size,
            concurrency=options.concurrency,
            batch_delay=options.batch_delay_ms / 1000,
        )
        eligible = scheduler.select_eligible(
            targets, force=options.force_update, limit=options.limit
        )
        if options.force_update:
            # Only the selected entries restart, so a limit bounds the reset
            forced = store.force_pending(eligible)
            self.logger.info(f'Force update reset {forced} entries')
        self.logger.info(
            f'{len(eligible)} of {len(targets)} entries eligible for {options.mode}'
        )

        outcomes = await scheduler.run(eligible, progress)

        self._summarize(report, targets, outcomes)
        report.windows = scheduler.windows_run
        report.aborted = context.abort.is_set()
        report.completed_at = datetime.now()

        self.logger.info(
            f'Migration finished: {report.completed} completed, '
            f'{report.failed} failed, {report.skipped} skipped'
        )
        return report

    async def _discover(self, context: PipelineContext, options: RunOptions) -> List[str]:
        """Register entries to consider and return their ids."""
        if options.single_entry:
            targets = [options.single_entry]
        else:
            await context.limiter.acquire(ServiceClass.CONTENT_SOURCE)
            targets = await context.collaborators.source.list_ids()
        context.store.register(targets)
        return list(dict.fromkeys(targets))

    @staticmethod
    def _summarize(
        report: MigrationReport, targets: List[str], outcomes: List[EntryOutcome]
    ) -> None:
        report.total = len(targets)
        for outcome in outcomes:
            if outcome.skipped:
                continue
            if outcome.status == EntryStatus.COMPLETED:
                report.completed += 1
            elif outcome.status == EntryStatus.FAILED:
                report.failed += 1
                report.failures.append(
                    EntryFailure(
                        entry_id=outcome.entry_id,
                        stage=outcome.stage.value if outcome.stage else None,
                        reason=outcome.error or 'unknown error',
                    )
                )
            elif outcome.error:
                report.failures.append(
                    EntryFailure(
                        entry_id=outcome.entry_id,
                        stage=outcome.stage.value if outcome.stage else None,
                        reason=outcome.error,
                    )
                )
        report.skipped = report.total - report.completed - report.failed


def build_options(**kwargs) -> RunOptions:
    """Create run options, reporting bad values as a ValidationError."""
    try:
        return RunOptions(**{k: v for k, v in kwargs.items() if v is not None})
    except PydanticValidationError as e:
        raise ValidationError(f'Invalid run options: {e}')


def _copy_options(options: RunOptions, **changes) -> RunOptions:
    return options.model_copy(update=changes)
