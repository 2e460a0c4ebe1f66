"""Notion source pages and destination database."""

from typing import Any, Dict, List, Optional

from loguru import logger

from ..api.client import HTTPClient
from ..config.config import NotionConfig
from ..models.content import ContentBlock, DestinationRecord, SourceContent
from .base import ContentSource, DestinationDB

# Notion rejects rich text longer than this per object
TEXT_LIMIT = 2000
MAX_CHILDREN = 100


def notion_client(config: NotionConfig) -> HTTPClient:
    return HTTPClient(
        config.base_url,
        headers={
            'Authorization': f'Bearer {config.token}',
            'Notion-Version': config.notion_version,
        },
        timeout=config.timeout,
    )


def plain_text(rich_text: List[Dict[str, Any]]) -> str:
    return ''.join(part.get('plain_text', '') for part in rich_text or [])


def page_title(page: Dict[str, Any]) -> str:
    """Extract the title property of a page."""
    for prop in (page.get('properties') or {}).values():
        if prop.get('type') == 'title':
            return plain_text(prop.get('title'))
    return ''


def same_page(first: Optional[str], second: Optional[str]) -> bool:
    """Compare page ids, which Notion returns with or without dashes."""
    if not first or not second:
        return False
    return first.replace('-', '').lower() == second.replace('-', '').lower()


def _rich_text(text: str) -> List[Dict[str, Any]]:
    return [{'type': 'text', 'text': {'content': text[:TEXT_LIMIT]}}]


class NotionPagination:
    """Mixin collecting every page of a cursor-paginated endpoint."""

    client: HTTPClient

    async def _paginate(self, endpoint: str) -> List[Dict[str, Any]]:
        results = []
        cursor = None
        while True:
            params = {'page_size': 100}
            if cursor:
                params['start_cursor'] = cursor
            response = await self.client.get(endpoint, params=params)

            data = response.data or {}
            results.extend(data.get('results', []))
            if not data.get('has_more'):
                break
            cursor = data.get('next_cursor')
        return results


class NotionContentSource(NotionPagination, ContentSource):
    """Child pages under a root page.

    Pages directly under the root act as categories; their child pages are
    the entries. Entries placed straight under the root have no category.
    """

    def __init__(self, config: NotionConfig, client: Optional[HTTPClient] = None):
        self.config = config
        self.client = client or notion_client(config)
        # Category title per entry id, seeded by list_ids
        self._parents: Dict[str, Optional[str]] = {}
        self._page_titles: Dict[str, str] = {}

    async def list_ids(self) -> List[str]:
        entry_ids = []
        for block in await self._child_pages(self.config.root_page_id):
            category = block['child_page'].get('title', '')
            children = await self._child_pages(block['id'])
            if not children:
                entry_ids.append(block['id'])
                continue
            self._page_titles[block['id']] = category
            for child in children:
                self._parents[child['id']] = category
                entry_ids.append(child['id'])

        logger.info(f'Discovered {len(entry_ids)} pages under the root page')
        return entry_ids

    async def _child_pages(self, block_id: str) -> List[Dict[str, Any]]:
        blocks = await self._paginate(f'/blocks/{block_id}/children')
        return [block for block in blocks if block.get('type') == 'child_page']

    async def _category_of(self, entry_id: str, page: Dict[str, Any]) -> Optional[str]:
        """Title of the page holding the entry, None when that is the root."""
        if entry_id in self._parents:
            return self._parents[entry_id]

        parent_id = (page.get('parent') or {}).get('page_id')
        if not parent_id or same_page(parent_id, self.config.root_page_id):
            category = None
        else:
            if parent_id not in self._page_titles:
                parent = (await self.client.get(f'/pages/{parent_id}')).data or {}
                self._page_titles[parent_id] = page_title(parent)
            category = self._page_titles[parent_id] or None

        self._parents[entry_id] = category
        return category

    async def fetch(self, entry_id: str) -> SourceContent:
        page = (await self.client.get(f'/pages/{entry_id}')).data or {}
        blocks = []
        for block in await self._paginate(f'/blocks/{entry_id}/children'):
            block_type = block.get('type', '')
            if block_type == 'child_page':
                continue
            body = block.get(block_type) or {}
            blocks.append(
                ContentBlock(type=block_type, text=plain_text(body.get('rich_text')))
            )

        return SourceContent(
            id=entry_id,
            title=page_title(page),
            parent_title=await self._category_of(entry_id, page),
            blocks=blocks,
            url=page.get('url'),
            created_time=page.get('created_time'),
            last_edited_time=page.get('last_edited_time'),
        )


class NotionDestination(DestinationDB):
    """Destination database; rows are keyed by their ``Source ID`` property.

    Categories live in ``categories_database_id``. Without one they share the
    records database and are told apart by an empty ``Source ID``.
    """

    def __init__(self, config: NotionConfig, client: Optional[HTTPClient] = None):
        self.config = config
        self.client = client or notion_client(config)
        self.categories_database_id = (
            config.categories_database_id or config.database_id
        )
        self.shared_database = same_page(self.categories_database_id, config.database_id)
        if self.shared_database:
            logger.bind(component='NotionDestination').warning(
                'No categories database configured; categories are stored '
                'in the records database'
            )

    async def _query_first(self, database_id: str, query_filter: Dict[str, Any]) -> Optional[str]:
        response = await self.client.post(
            f'/databases/{database_id}/query',
            data={'filter': query_filter, 'page_size': 1},
        )
        results = (response.data or {}).get('results') or []
        return results[0]['id'] if results else None

    async def find_by_name(self, name: str) -> Optional[str]:
        query_filter: Dict[str, Any] = {'property': 'Name', 'title': {'equals': name}}
        if self.shared_database:
            query_filter = {
                'and': [
                    query_filter,
                    {'property': 'Source ID', 'rich_text': {'is_empty': True}},
                ]
            }
        return await self._query_first(self.categories_database_id, query_filter)

    async def create(self, name: str) -> str:
        response = await self.client.post(
            '/pages',
            data={
                'parent': {'database_id': self.categories_database_id},
                'properties': {'Name': {'title': _rich_text(name)}},
            },
        )
        return response.data['id']

    async def _find_record(self, source_id: str) -> Optional[str]:
        return await self._query_first(
            self.config.database_id,
            {'property': 'Source ID', 'rich_text': {'equals': source_id}},
        )

    def _properties(self, record: DestinationRecord) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            'Name': {'title': _rich_text(record.title)},
            'Source ID': {'rich_text': _rich_text(record.source_id)},
            'Keywords': {
                'multi_select': [{'name': k[:100].replace(',', ' ')} for k in record.keywords]
            },
            'Word Count': {'number': record.word_count},
        }
        if record.summary:
            properties['Summary'] = {'rich_text': _rich_text(record.summary)}
        if record.image_url:
            properties['Image'] = {'url': record.image_url}
        if record.source_url:
            properties['Source URL'] = {'url': record.source_url}
        if record.category_id:
            properties['Category'] = {'relation': [{'id': record.category_id}]}
        return properties

    async def upsert(self, record: DestinationRecord) -> None:
        properties = self._properties(record)
        existing = await self._find_record(record.source_id)

        if existing:
            await self.client.patch(f'/pages/{existing}', data={'properties': properties})
            logger.debug(f'Updated destination row {existing} for {record.source_id}')
            return

        paragraphs = [
            record.text[i : i + TEXT_LIMIT]
            for i in range(0, len(record.text), TEXT_LIMIT)
        ][:MAX_CHILDREN]
        payload = {
            'parent': {'database_id': self.config.database_id},
            'properties': properties,
            'children': [
                {
                    'object': 'block',
                    'type': 'paragraph',
                    'paragraph': {'rich_text': _rich_text(chunk)},
                }
                for chunk in paragraphs
            ],
        }
        if record.image_url:
            payload['cover'] = {'type': 'external', 'external': {'url': record.image_url}}
        await self.client.post('/pages', data=payload)
        logger.debug(f'Created destination row for {record.source_id}')
