"""Content models flowing between pipeline stages."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class ContentBlock(BaseModel):
    """A single structural block of source content."""

    type: str = Field(default='paragraph', description='Block type')
    text: str = Field(default='', description='Plain text of the block')


class SourceContent(BaseModel):
    """Content fetched from the source platform."""

    id: str = Field(..., description='Source id')
    title: str = Field(default='', description='Page title')
    parent_title: Optional[str] = Field(
        default=None, description='Title of the containing page'
    )
    blocks: List[ContentBlock] = Field(default_factory=list)
    url: Optional[str] = Field(default=None, description='Source URL')
    created_time: Optional[datetime] = Field(default=None)
    last_edited_time: Optional[datetime] = Field(default=None)


class Enrichment(BaseModel):
    """Generated metadata. Each field is filled independently."""

    summary: Optional[str] = None
    title: Optional[str] = None
    keywords: Optional[List[str]] = None


class DestinationRecord(BaseModel):
    """Row written to the destination database, keyed by ``source_id``."""

    source_id: str = Field(..., description='Upsert key')
    title: str = Field(..., description='Record title')
    category: str = Field(default='Uncategorized', description='Category name')
    category_id: Optional[str] = Field(default=None, description='Category row id')
    text: str = Field(default='', description='Normalized plain text')
    summary: Optional[str] = Field(default=None)
    keywords: List[str] = Field(default_factory=list)
    image_url: Optional[str] = Field(default=None)
    word_count: int = Field(default=0)
    source_url: Optional[str] = Field(default=None)
    created_time: Optional[datetime] = Field(default=None)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v):
        """Titles must not be blank."""
        if not v.strip():
            raise ValueError('Title must not be empty')
        return v.strip()
