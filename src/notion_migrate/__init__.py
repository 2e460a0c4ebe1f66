"""Notion Migration Tool

Migrates Notion pages into a structured Notion database, enriching each entry
with AI-generated summaries, titles, keywords and cover images. Runs are
rate limited, retried and resumable from a JSON state file.
"""

__version__ = '0.1.0'
__author__ = 'Notion Migration Team'
__email__ = 'team@example.com'

__all__ = ['__version__']
