"""Migration engine - main entry point for migration operations."""

import asyncio
from typing import Dict, Optional

from loguru import logger

from ..api.poller import TaskPoller
from ..api.rate_limiter import ServiceClass, ServiceRateLimiter
from ..api.retry import RetryPolicy
from ..config.config import Config
from ..providers.base import Collaborators, ImageProvider
from ..providers.factory import ProviderFactory
from ..providers.notion import notion_client
from ..state.store import JSONFileStateStore
from .orchestrator import MigrationOrchestrator, MigrationReport, RunOptions
from .pipeline import PipelineContext, PipelineSettings
from .scheduler import ProgressCallback


class MigrationEngine:
    """Builds the collaborators from configuration and runs the orchestrator."""

    def __init__(self, config: Config, collaborators: Optional[Collaborators] = None):
        """Initialize migration engine.

        Args:
            config: Migration configuration
            collaborators: Pre-built collaborators, created from config if omitted
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        self.collaborators = collaborators or ProviderFactory.create_collaborators(config)
        self.store = JSONFileStateStore(config.migration.state_file)

        limits = config.rate_limits
        self.limiter = ServiceRateLimiter(
            {
                ServiceClass.CONTENT_SOURCE: limits.content_source,
                ServiceClass.DESTINATION: limits.destination,
                ServiceClass.AI_PROVIDER: limits.ai_provider,
                ServiceClass.OBJECT_STORAGE: limits.object_storage,
            },
            burst=limits.burst,
        )

        retry = config.retry
        self.retry_policy = RetryPolicy(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
            rate_limit_multiplier=retry.rate_limit_multiplier,
        )

        self.abort = asyncio.Event()
        self.context = PipelineContext(
            store=self.store,
            collaborators=self.collaborators,
            limiter=self.limiter,
            retry_policy=self.retry_policy,
            poller=self._create_poller(self.collaborators.images),
            settings=PipelineSettings(
                generate_summaries=config.migration.generate_summaries,
                generate_images=config.migration.generate_images,
                required_enrichments=config.migration.required_enrichments,
                enrichment_fallbacks=config.migration.enrichment_fallbacks,
                content_rules=config.migration.content_rules,
                require_image=config.migration.require_image,
                max_keywords=config.migration.max_keywords,
                default_category=config.migration.default_category,
                asset_prefix=config.storage.prefix,
            ),
            abort=self.abort,
        )
        self.orchestrator = MigrationOrchestrator(
            self.context, poller_factory=self._create_poller
        )

    def _create_poller(self, images: Optional[ImageProvider]) -> Optional[TaskPoller]:
        if images is None:
            return None

        async def throttle() -> None:
            await self.limiter.acquire(ServiceClass.AI_PROVIDER)

        return TaskPoller(
            images,
            interval=self.config.poller.interval,
            max_attempts=self.config.poller.max_attempts,
            before_request=throttle,
            abort=self.abort,
        )

    def request_abort(self) -> None:
        """Stop scheduling work; running entries stop at their next checkpoint."""
        if not self.abort.is_set():
            self.logger.warning('Abort requested, finishing in-flight stages')
        self.abort.set()

    async def migrate(
        self,
        options: Optional[RunOptions] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MigrationReport:
        """Execute a migration run.

        Args:
            options: Run options (defaults derived from configuration)
            progress: Per-entry progress callback

        Returns:
            Migration report
        """
        if options is None:
            options = self.default_options()

        self.logger.info(f'Starting Notion migration ({options.mode})')

        try:
            self._test_connectivity()
            report = await self.orchestrator.execute(options, progress)
            self.logger.info(f'Migration {options.mode} finished')
            return report
        except Exception as e:
            self.logger.error(f'Migration failed: {e}')
            raise

    def default_options(self) -> RunOptions:
        """Create run options from configuration."""
        migration = self.config.migration
        return RunOptions(
            dry_run=migration.dry_run,
            batch_size=migration.batch_size,
            concurrency=migration.max_workers,
            batch_delay_ms=migration.batch_delay_ms,
        )

    def status(self) -> Dict[str, int]:
        """Count ledger entries per status without contacting any service."""
        self.store.load()
        return self.store.summary()

    def _test_connectivity(self) -> None:
        """Test connectivity to the Notion API.

        Raises:
            ConnectionError: If connectivity test fails
        """
        self.logger.info('Testing connectivity to Notion')
        client = notion_client(self.config.notion)
        if not client.test_connection('users/me'):
            raise ConnectionError('Cannot connect to the Notion API')
        self.logger.info('Connectivity test passed')
