"""External collaborator interfaces and their implementations."""

from .base import (
    AIProvider,
    Collaborators,
    ContentSource,
    DestinationDB,
    ImageProvider,
    ObjectStore,
    RemoteTaskResult,
)

__all__ = [
    'AIProvider',
    'Collaborators',
    'ContentSource',
    'DestinationDB',
    'ImageProvider',
    'ObjectStore',
    'RemoteTaskResult',
]
