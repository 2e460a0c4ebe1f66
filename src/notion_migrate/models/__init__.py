"""Data models for migration entries and content."""

from .entry import Entry, EntryStatus, MigrationState, Stage
from .content import ContentBlock, DestinationRecord, Enrichment, SourceContent

__all__ = [
    'Entry',
    'EntryStatus',
    'MigrationState',
    'Stage',
    'ContentBlock',
    'DestinationRecord',
    'Enrichment',
    'SourceContent',
]
