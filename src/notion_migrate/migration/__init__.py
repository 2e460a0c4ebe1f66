"""Migration pipeline, scheduling and orchestration."""

from .engine import MigrationEngine
from .orchestrator import MigrationOrchestrator, MigrationReport, RunOptions
from .pipeline import EntryOutcome, EntryPipeline, PipelineContext, PipelineSettings
from .scheduler import BatchScheduler, BatchWindow

__all__ = [
    'BatchScheduler',
    'BatchWindow',
    'EntryOutcome',
    'EntryPipeline',
    'MigrationEngine',
    'MigrationOrchestrator',
    'MigrationReport',
    'PipelineContext',
    'PipelineSettings',
    'RunOptions',
]
