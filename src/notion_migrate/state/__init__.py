"""Migration ledger persistence."""

from .store import InMemoryStateStore, JSONFileStateStore, StateStore

__all__ = ['StateStore', 'JSONFileStateStore', 'InMemoryStateStore']
