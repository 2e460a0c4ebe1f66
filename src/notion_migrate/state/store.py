"""Durable ledger of per-entry migration progress."""

import copy
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from ..api.exceptions import ConflictError, ValidationError
from ..models.entry import Entry, EntryStatus, MigrationState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def entry_to_json(entry: Entry) -> Dict[str, Any]:
    """Serialize an entry to the ledger file layout."""
    return {
        'sourceRef': entry.source_ref,
        'status': entry.status.value,
        'attempts': entry.attempts,
        'lastError': entry.last_error,
        'stageCheckpoint': entry.stage_checkpoint.value
        if entry.stage_checkpoint
        else None,
        'revision': entry.revision,
        'nextRetryAt': _iso(entry.next_retry_at),
        'artifacts': entry.artifacts,
        'timestamps': {key: _iso(value) for key, value in entry.timestamps.items()},
    }


def entry_from_json(entry_id: str, data: Dict[str, Any]) -> Entry:
    """Rebuild an entry from the ledger file layout."""
    return Entry(
        id=entry_id,
        source_ref=data.get('sourceRef'),
        status=data.get('status', EntryStatus.PENDING.value),
        attempts=data.get('attempts', 0),
        last_error=data.get('lastError'),
        stage_checkpoint=data.get('stageCheckpoint'),
        revision=data.get('revision', 0),
        next_retry_at=_parse(data.get('nextRetryAt')),
        artifacts=data.get('artifacts') or {},
        timestamps={
            key: _parse(value)
            for key, value in (data.get('timestamps') or {}).items()
            if value
        },
    )


def state_to_json(state: MigrationState) -> Dict[str, Any]:
    return {
        'version': state.version,
        'lastRunAt': _iso(state.last_run_at),
        'entries': {
            entry_id: entry_to_json(entry)
            for entry_id, entry in sorted(state.entries.items())
        },
    }


def state_from_json(data: Dict[str, Any]) -> MigrationState:
    return MigrationState(
        version=data.get('version', 0),
        last_run_at=_parse(data.get('lastRunAt')),
        entries={
            entry_id: entry_from_json(entry_id, entry_data)
            for entry_id, entry_data in (data.get('entries') or {}).items()
        },
    )


class StateStore(ABC):
    """Sole owner of the migration ledger.

    Entries handed out are copies; the only way to change the ledger is
    ``upsert_entry`` (or the bulk directives), which checks the caller's
    revision against the stored one so concurrent writers for different
    entries never clobber each other.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._state: Optional[MigrationState] = None
        self.logger = logger.bind(component=self.__class__.__name__)

    @abstractmethod
    def _read(self) -> Optional[Dict[str, Any]]:
        """Return the raw persisted ledger, or None when there is none."""
        pass

    @abstractmethod
    def _write(self, data: Dict[str, Any]) -> None:
        """Durably replace the persisted ledger."""
        pass

    def load(self) -> MigrationState:
        """Load the ledger, or start an empty one."""
        with self._lock:
            raw = self._read()
            self._state = state_from_json(raw) if raw else MigrationState()
            self.logger.debug(
                f'Loaded ledger version {self._state.version} '
                f'with {len(self._state.entries)} entries'
            )
            return self._state.model_copy(deep=True)

    def persist(self, state: Optional[MigrationState] = None) -> None:
        """Write the ledger atomically."""
        with self._lock:
            if state is not None:
                self._state = state.model_copy(deep=True)
            self._write(state_to_json(self._current()))

    def _current(self) -> MigrationState:
        if self._state is None:
            self.load()
        return self._state

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        with self._lock:
            entry = self._current().entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    def entries(self) -> List[Entry]:
        """Snapshot of all entries, ordered by id."""
        with self._lock:
            state = self._current()
            return [state.entries[key].model_copy(deep=True) for key in sorted(state.entries)]

    def upsert_entry(self, entry: Entry) -> Entry:
        """Store an entry if nobody changed it since the caller read it.

        Args:
            entry: Entry carrying the revision the caller last saw

        Returns:
            The stored copy with its new revision

        Raises:
            ConflictError: If the stored revision differs from the caller's
        """
        with self._lock:
            state = self._current()
            stored = state.entries.get(entry.id)
            stored_revision = stored.revision if stored else 0
            if stored_revision != entry.revision:
                raise ConflictError(entry.id, entry.revision, stored_revision)

            updated = entry.model_copy(deep=True)
            updated.revision = stored_revision + 1
            now = utcnow()
            updated.timestamps.setdefault('created', now)
            updated.timestamps['updated'] = now

            state.entries[entry.id] = updated
            state.version += 1
            self.persist()
            return updated.model_copy(deep=True)

    def register(
        self,
        entry_ids: Iterable[str],
        source_refs: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Add pending entries for ids not yet in the ledger.

        Args:
            entry_ids: Source ids discovered for this run
            source_refs: Optional source URL per id

        Returns:
            Ids that were newly registered
        """
        source_refs = source_refs or {}
        with self._lock:
            state = self._current()
            added = []
            now = utcnow()
            for entry_id in entry_ids:
                if not entry_id:
                    raise ValidationError('Entry id must not be empty')
                if entry_id in state.entries:
                    continue
                state.entries[entry_id] = Entry(
                    id=entry_id,
                    source_ref=source_refs.get(entry_id),
                    revision=1,
                    timestamps={'created': now, 'updated': now},
                )
                added.append(entry_id)
            if added:
                state.version += 1
                self.persist()
                self.logger.info(f'Registered {len(added)} new entries')
            return added

    def reset_pending(self) -> int:
        """Move every non-terminal entry back to pending.

        Checkpoints and artifacts are kept, so reset entries resume where they
        stopped.

        Returns:
            Number of entries reset
        """
        with self._lock:
            state = self._current()
            count = 0
            for entry in state.entries.values():
                if entry.status.is_terminal:
                    continue
                if entry.status == EntryStatus.PENDING and entry.next_retry_at is None:
                    continue
                entry.status = EntryStatus.PENDING
                entry.next_retry_at = None
                entry.revision += 1
                entry.timestamps['updated'] = utcnow()
                count += 1
            if count:
                state.version += 1
                self.persist()
            self.logger.info(f'Reset {count} entries to pending')
            return count

    def force_pending(self, entry_ids: Iterable[str]) -> int:
        """Restart entries from scratch, including terminal ones.

        Returns:
            Number of entries reset
        """
        with self._lock:
            state = self._current()
            count = 0
            for entry_id in entry_ids:
                entry = state.entries.get(entry_id)
                if entry is None:
                    continue
                entry.status = EntryStatus.PENDING
                entry.attempts = 0
                entry.last_error = None
                entry.stage_checkpoint = None
                entry.next_retry_at = None
                entry.artifacts = {}
                entry.revision += 1
                entry.timestamps['updated'] = utcnow()
                entry.timestamps.pop('completed', None)
                count += 1
            if count:
                state.version += 1
                self.persist()
            return count

    def mark_run(self) -> None:
        """Record the start of a run."""
        with self._lock:
            state = self._current()
            state.last_run_at = utcnow()
            state.version += 1
            self.persist()

    def summary(self) -> Dict[str, int]:
        """Count entries per status."""
        with self._lock:
            counts = {status.value: 0 for status in EntryStatus}
            for entry in self._current().entries.values():
                counts[entry.status.value] += 1
            return counts


class JSONFileStateStore(StateStore):
    """Ledger persisted as a JSON file, replaced atomically on each write."""

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f'State file {self.path} is not valid JSON: {e}')

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f'.{self.path.name}.', suffix='.tmp', dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class InMemoryStateStore(StateStore):
    """Ledger kept in memory; used by tests and dry runs."""

    def __init__(self, initial: Optional[MigrationState] = None):
        super().__init__()
        self._data = state_to_json(initial) if initial else None
        self.writes = 0

    def _read(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._data)

    def _write(self, data: Dict[str, Any]) -> None:
        self._data = copy.deepcopy(data)
        self.writes += 1
