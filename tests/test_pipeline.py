"""Tests for the per-entry pipeline."""

import asyncio

from notion_migrate.api.exceptions import FatalStageError, NotFoundError, TransientError
from notion_migrate.migration.pipeline import EntryPipeline, PipelineSettings
from notion_migrate.models.entry import EntryStatus, Stage
from notion_migrate.state.store import InMemoryStateStore

from fakes import (
    MemoryDestination,
    ScriptedAI,
    ScriptedImages,
    ScriptedSource,
    StalledSleep,
    make_collaborators,
    make_context,
    pages,
)


class InterferingStore(InMemoryStateStore):
    """Store where another writer touches the entry before the first upsert."""

    def __init__(self):
        super().__init__()
        self.interfered = False

    def upsert_entry(self, entry):
        if not self.interfered:
            self.interfered = True
            other = self.get_entry(entry.id)
            other.source_ref = 'changed elsewhere'
            super().upsert_entry(other)
        return super().upsert_entry(entry)


class TestEntryPipeline:
    """Test stage execution, retries and checkpointing."""

    def setup_method(self):
        """Set up test fixtures."""
        self.pages = pages(2)
        self.entry_id = 'entry-00'

    def _context(self, **kwargs):
        settings = kwargs.pop('settings', None)
        max_attempts = kwargs.pop('max_attempts', 3)
        store = kwargs.pop('store', None)
        sleep = kwargs.pop('sleep', None)
        collaborators = make_collaborators(self.pages, **kwargs)
        context = make_context(
            collaborators, store=store, settings=settings,
            max_attempts=max_attempts, sleep=sleep,
        )
        context.store.register(list(self.pages))
        return context

    async def test_happy_path(self):
        """Test that an entry runs every stage and is written once."""
        context = self._context()

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        entry = context.store.get_entry(self.entry_id)
        assert entry.status == EntryStatus.COMPLETED
        assert entry.attempts == 1
        assert entry.stage_checkpoint == Stage.WRITE

        record = context.collaborators.destination.records[self.entry_id]
        assert record.title == 'Better Title entry-00'
        assert record.summary.startswith('Summary:')
        assert record.keywords == ['alpha', 'beta']
        assert record.image_url == 'https://cdn.example.com/images/entry-00.png'
        assert record.category == 'Essays'
        assert record.category_id == 'cat-1'
        assert record.word_count == 9

    async def test_transient_upload_failures_then_success(self):
        """Test two transient upload failures followed by a successful attempt."""
        images = ScriptedImages(create_failures=[TransientError('503'), TransientError('503')])
        context = self._context(images=images)

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.COMPLETED
        assert entry.status == EntryStatus.COMPLETED
        assert entry.attempts == 3
        assert entry.last_error is None
        assert context.collaborators.destination.upserts == [self.entry_id]
        # Completed stages are not repeated on retry
        assert context.collaborators.source.fetch_calls == [self.entry_id]
        assert context.collaborators.ai.calls == ['summary', 'title', 'keywords']
        assert context.sleep.delays == [1.0, 2.0]

    async def test_fatal_error_fails_without_retry(self):
        """Test that a missing page fails the entry on the first attempt."""
        source = ScriptedSource(self.pages, failures={self.entry_id: [NotFoundError('gone')]})
        context = self._context(source=source)

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.FAILED
        assert entry.status == EntryStatus.FAILED
        assert entry.attempts == 1
        assert entry.last_error == 'fetch: gone'
        assert outcome.stage == Stage.FETCH
        assert context.collaborators.destination.upserts == []
        assert context.sleep.delays == []

    async def test_retries_exhausted(self):
        """Test that persistent transient errors end in failed at the ceiling."""
        destination = MemoryDestination(
            upsert_failures=[TransientError('timeout') for _ in range(3)]
        )
        context = self._context(destination=destination)

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.FAILED
        assert entry.attempts == 3
        assert entry.stage_checkpoint == Stage.UPLOAD
        assert entry.last_error == 'write: timeout'
        assert context.collaborators.source.fetch_calls == [self.entry_id]

    async def test_required_enrichment_failure_retries_only_failed_step(self):
        """Test that a required enrichment step is retried alone."""
        ai = ScriptedAI(failures={'summary': [TransientError('busy')]})
        context = self._context(
            ai=ai, settings=PipelineSettings(required_enrichments=['summary'])
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.store.get_entry(self.entry_id).attempts == 2
        assert ai.calls == ['summary', 'title', 'keywords', 'summary']
        record = context.collaborators.destination.records[self.entry_id]
        assert record.summary is not None

    async def test_optional_enrichment_failure_is_tolerated(self):
        """Test that an optional enrichment failure does not fail the entry."""
        ai = ScriptedAI(broken={'keywords': FatalStageError('model refused')})
        context = self._context(
            ai=ai, settings=PipelineSettings(enrichment_fallbacks=False)
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.store.get_entry(self.entry_id).attempts == 1
        record = context.collaborators.destination.records[self.entry_id]
        assert record.keywords == []
        assert record.summary is not None

    async def test_optional_enrichment_failures_use_fallbacks(self):
        """Test that failed optional steps are filled from the content itself."""
        error = TransientError('model overloaded')
        ai = ScriptedAI(broken={'summary': error, 'title': error, 'keywords': error})
        context = self._context(ai=ai)

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.store.get_entry(self.entry_id).attempts == 1
        record = context.collaborators.destination.records[self.entry_id]
        assert record.summary == record.text
        assert record.title == 'Title entry-00'
        assert record.keywords == ['paragraph', 'entry-00', 'Second']

    async def test_content_rules_passed_once(self):
        """Test that content rules are checked before enrichment and not repeated."""
        ai = ScriptedAI(failures={'summary': [TransientError('busy')]})
        context = self._context(
            ai=ai,
            settings=PipelineSettings(
                content_rules=['No profanity'], required_enrichments=['summary']
            ),
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert ai.validated_rules == [['No profanity']]
        assert ai.calls == ['validate', 'summary', 'title', 'keywords', 'summary']
        assert context.store.get_entry(self.entry_id).artifacts['rules_passed'] is True

    async def test_content_rule_violation_fails_entry(self):
        """Test that content failing the rules is not retried or written."""
        ai = ScriptedAI(valid=False)
        context = self._context(
            ai=ai, settings=PipelineSettings(content_rules=['Must mention Python'])
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.FAILED
        assert entry.attempts == 1
        assert 'content rules' in entry.last_error
        assert ai.calls == ['validate']
        assert context.collaborators.destination.upserts == []

    async def test_disabled_features_skip_stages(self):
        """Test that disabled enrichment and images still write the record."""
        context = self._context(
            settings=PipelineSettings(generate_summaries=False, generate_images=False)
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.collaborators.ai.calls == []
        assert context.collaborators.images.created == []
        record = context.collaborators.destination.records[self.entry_id]
        assert record.title == 'Title entry-00'
        assert record.image_url is None

    async def test_image_timeout_is_retried(self):
        """Test that a timed out image job fails the attempt as transient."""
        images = ScriptedImages(statuses=['running'])
        context = self._context(
            images=images, max_attempts=2, settings=PipelineSettings(require_image=True)
        )

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.FAILED
        assert len(images.created) == 2
        assert 'timed out' in context.store.get_entry(self.entry_id).last_error

    async def test_optional_image_timeout_on_last_attempt_writes_record(self):
        """Test that an optional image stops blocking the record on the last attempt."""
        images = ScriptedImages(statuses=['running'])
        context = self._context(images=images, max_attempts=2)

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.store.get_entry(self.entry_id).attempts == 2
        assert len(images.created) == 2
        record = context.collaborators.destination.records[self.entry_id]
        assert record.image_url is None

    async def test_failed_image_task_writes_record_without_image(self):
        """Test that a remote image failure is not retried and skips the image."""
        images = ScriptedImages(statuses=['failed'])
        context = self._context(images=images)

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.status == EntryStatus.COMPLETED
        assert context.store.get_entry(self.entry_id).attempts == 1
        assert images.created == ['task-1']
        assert images.downloads == []
        assert context.collaborators.destination.upserts == [self.entry_id]
        assert context.collaborators.destination.records[self.entry_id].image_url is None

    async def test_failed_required_image_fails_entry(self):
        """Test that a remote image failure is fatal when images are required."""
        images = ScriptedImages(statuses=['failed'])
        context = self._context(images=images, settings=PipelineSettings(require_image=True))

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.FAILED
        assert entry.attempts == 1
        assert 'content policy' in entry.last_error
        assert context.collaborators.destination.upserts == []

    async def test_abort_cuts_backoff_short(self):
        """Test that an abort during a retry backoff returns without waiting it out."""
        images = ScriptedImages(create_failures=[TransientError('503')])
        sleep = StalledSleep()
        context = self._context(images=images, sleep=sleep)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, context.abort.set)

        outcome = await asyncio.wait_for(EntryPipeline(self.entry_id, context).run(), 5)

        entry = context.store.get_entry(self.entry_id)
        assert outcome.aborted is True
        assert sleep.delays == [1.0]
        assert entry.attempts == 1
        assert entry.stage_checkpoint == Stage.ENRICH
        assert context.collaborators.destination.upserts == []

    async def test_abort_while_polling_image_keeps_checkpoint(self):
        """Test that an abort between status checks stops at the enrich checkpoint."""
        images = ScriptedImages(statuses=['running'])
        sleep = StalledSleep()
        context = self._context(images=images, sleep=sleep)
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, context.abort.set)

        outcome = await asyncio.wait_for(EntryPipeline(self.entry_id, context).run(), 5)

        entry = context.store.get_entry(self.entry_id)
        assert outcome.aborted is True
        assert images.polls == ['task-1']
        assert entry.attempts == 1
        assert entry.last_error is None
        assert entry.stage_checkpoint == Stage.ENRICH
        assert context.collaborators.destination.upserts == []

    async def test_resumes_from_checkpoint_after_abort(self):
        """Test that an aborted entry resumes without repeating stages."""
        context = self._context()
        ai = context.collaborators.ai
        ai.on_call = lambda step: context.abort.set()

        first = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert first.aborted is True
        assert entry.status == EntryStatus.ENRICHING
        assert entry.stage_checkpoint == Stage.ENRICH
        assert context.collaborators.destination.upserts == []

        context.abort.clear()
        ai.on_call = None
        second = await EntryPipeline(self.entry_id, context).run()

        assert second.status == EntryStatus.COMPLETED
        assert context.collaborators.source.fetch_calls == [self.entry_id]
        assert ai.calls == ['summary', 'title', 'keywords']
        assert context.collaborators.destination.upserts == [self.entry_id]

    async def test_terminal_entry_is_skipped(self):
        """Test that a completed entry is not processed again."""
        context = self._context()
        await EntryPipeline(self.entry_id, context).run()

        outcome = await EntryPipeline(self.entry_id, context).run()

        assert outcome.skipped is True
        assert context.collaborators.destination.upserts == [self.entry_id]

    async def test_unregistered_entry_is_skipped(self):
        """Test that unknown ids are reported, not processed."""
        context = self._context()

        outcome = await EntryPipeline('unknown', context).run()

        assert outcome.skipped is True
        assert context.collaborators.source.fetch_calls == []

    async def test_conflicting_write_reloads_and_continues(self):
        """Test that a revision conflict is resolved by one reload."""
        context = self._context(store=InterferingStore())

        outcome = await EntryPipeline(self.entry_id, context).run()

        entry = context.store.get_entry(self.entry_id)
        assert outcome.status == EntryStatus.COMPLETED
        assert entry.attempts == 1
        assert entry.source_ref == 'changed elsewhere'

    async def test_category_created_once_for_concurrent_entries(self):
        """Test that concurrent entries share one created category."""
        context = self._context()

        outcomes = await asyncio.gather(
            *(EntryPipeline(entry_id, context).run() for entry_id in self.pages)
        )

        assert all(o.status == EntryStatus.COMPLETED for o in outcomes)
        assert context.collaborators.destination.created_categories == ['Essays']
