"""Structural normalization of source content into destination records."""

from ..api.exceptions import FatalStageError
from ..models.content import DestinationRecord, SourceContent

# Block types whose text is not part of the article body
SKIPPED_BLOCKS = {'child_database', 'table_of_contents', 'divider', 'breadcrumb'}


def normalize_content(
    content: SourceContent, default_category: str = 'Uncategorized'
) -> DestinationRecord:
    """Turn fetched content into a destination record.

    Raises:
        FatalStageError: If the page has no title and no text
    """
    paragraphs = [
        block.text.strip()
        for block in content.blocks
        if block.type not in SKIPPED_BLOCKS and block.text.strip()
    ]
    text = '\n\n'.join(paragraphs)
    title = content.title.strip()

    if not title and not text:
        raise FatalStageError(f'Page {content.id} has neither title nor text')
    if not title:
        title = paragraphs[0][:70]

    return DestinationRecord(
        source_id=content.id,
        title=title,
        category=(content.parent_title or '').strip() or default_category,
        text=text,
        word_count=len(text.split()),
        source_url=content.url,
        created_time=content.created_time,
    )
