"""Capability interfaces for the external collaborators."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.content import DestinationRecord, SourceContent


class RemoteTaskResult(BaseModel):
    """Normalized status of a remote generation job."""

    status: str = Field(
        ..., description='One of pending, running, succeeded, failed'
    )
    result_url: Optional[str] = Field(default=None, description='Result location')
    error: Optional[str] = Field(default=None, description='Remote error message')


class ContentSource(ABC):
    """Source platform holding the content to migrate."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """List ids of every entry to migrate."""
        pass

    @abstractmethod
    async def fetch(self, entry_id: str) -> SourceContent:
        """Fetch structured content.

        Raises:
            NotFoundError: If the entry no longer exists
            TransientError: On network or server failure
        """
        pass


class AIProvider(ABC):
    """Stateless text generation requests."""

    @abstractmethod
    async def summarize(self, text: str) -> str:
        pass

    @abstractmethod
    async def title(self, text: str, current: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def keywords(self, text: str, max_keywords: int = 10) -> List[str]:
        pass

    @abstractmethod
    async def validate_content(self, text: str, rules: List[str]) -> bool:
        """Ask whether the text satisfies every rule."""
        pass


class ImageProvider(ABC):
    """Asynchronous image generation backed by remote jobs."""

    @abstractmethod
    async def create_task(self, prompt: str) -> str:
        """Submit a generation job and return its task id."""
        pass

    @abstractmethod
    async def poll_task(self, task_id: str) -> RemoteTaskResult:
        """Check a job once."""
        pass

    @abstractmethod
    async def download(self, url: str) -> bytes:
        """Fetch a generated asset."""
        pass


class ObjectStore(ABC):
    """Storage for generated assets."""

    @abstractmethod
    async def put(self, data: bytes, path: str) -> str:
        """Store bytes at ``path`` and return the public URL."""
        pass


class DestinationDB(ABC):
    """Structured destination database."""

    @abstractmethod
    async def find_by_name(self, name: str) -> Optional[str]:
        """Find a category row by name."""
        pass

    @abstractmethod
    async def create(self, name: str) -> str:
        """Create a category row and return its id."""
        pass

    @abstractmethod
    async def upsert(self, record: DestinationRecord) -> None:
        """Insert or update the record keyed by ``record.source_id``."""
        pass


@dataclass
class Collaborators:
    """External collaborators chosen once at startup."""

    source: ContentSource
    destination: DestinationDB
    ai: Optional[AIProvider] = None
    images: Optional[ImageProvider] = None
    storage: Optional[ObjectStore] = None
