"""In-memory implementation of EntryStorePort.

Async-safe using an asyncio.Lock. Staged writes live in `_pending` until
`save_changes()`; reads see committed state overlaid with the staged writes.
Suitable for TDD and local tests; entries do not survive a restart, use the
SQLAlchemy adapter for that.
"""
from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from batchpoll.core.exceptions import StaleEntryError
from batchpoll.core.interfaces.entry_store import EntryQuery, EntryStorePort
from batchpoll.core.models.entry import JobEntry, utc_now


class InMemoryEntryStore(EntryStorePort):
    def __init__(self, dump_dir: str | None = None) -> None:
        self._entries: Dict[str, JobEntry] = {}
        # staged writes; None marks a staged delete
        self._pending: Dict[str, Optional[JobEntry]] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._dump_dir = dump_dir or os.environ.get("BATCHPOLL_ENTRY_DUMP_DIR")
        if self._dump_dir:
            os.makedirs(self._dump_dir, exist_ok=True)

    def _dump(self, entry_id: str, entry: Optional[JobEntry]) -> None:
        if not self._dump_dir:
            return
        path = os.path.join(self._dump_dir, f"{entry_id}.json")
        if entry is None:
            if os.path.exists(path):
                os.remove(path)
            return
        payload = {
            "meta": {
                "dumped_at": utc_now().isoformat(),
                "store": "in-memory",
                "version": 1,
            },
            "entry": entry.model_dump(mode="json", exclude={"content"}),
            "content_size": len(entry.content) if entry.content is not None else None,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)

    def _view(self) -> Dict[str, JobEntry]:
        view = dict(self._entries)
        for entry_id, staged in self._pending.items():
            if staged is None:
                view.pop(entry_id, None)
            else:
                view[entry_id] = staged
        return view

    async def create(self, entry: JobEntry) -> JobEntry:
        async with self._lock:
            if entry.id in self._view():
                raise ValueError(f"Entry already exists: {entry.id}")
            self._sequence += 1
            stored = entry.model_copy(deep=True)
            stored.sequence = self._sequence
            self._pending[entry.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, entry_id: str) -> Optional[JobEntry]:
        async with self._lock:
            e = self._view().get(entry_id)
            return e.model_copy(deep=True) if e else None

    async def update(self, entry: JobEntry) -> JobEntry:
        async with self._lock:
            current = self._view().get(entry.id)
            if current is None:
                raise StaleEntryError(entry.id, entry.version, None)
            if current.version != entry.version:
                raise StaleEntryError(entry.id, entry.version, current.version)
            stored = entry.model_copy(deep=True)
            stored.version = current.version + 1
            stored.touch()
            self._pending[entry.id] = stored
            return stored.model_copy(deep=True)

    async def delete(self, entry_id: str) -> None:
        async with self._lock:
            if entry_id in self._view():
                self._pending[entry_id] = None

    async def query(self, predicate: EntryQuery) -> Sequence[JobEntry]:
        async with self._lock:
            entries = sorted(self._view().values(), key=lambda e: e.sequence or 0)
            return [e.model_copy(deep=True) for e in entries if predicate.matches(e)]

    async def claim(
        self,
        entry_id: str,
        owner: str,
        expected_version: int,
        lease_expires: datetime,
    ) -> Optional[JobEntry]:
        async with self._lock:
            current = self._view().get(entry_id)
            if current is None or current.version != expected_version:
                return None
            if not current.is_claimable_by(owner):
                return None
            claimed = current.model_copy(deep=True)
            claimed.lease_owner = owner
            claimed.lease_expires = lease_expires
            claimed.version = current.version + 1
            # claims bypass the unit of work
            if entry_id in self._entries:
                self._entries[entry_id] = claimed
                self._dump(entry_id, claimed)
            if entry_id in self._pending:
                self._pending[entry_id] = claimed
            return claimed.model_copy(deep=True)

    async def save_changes(self) -> int:
        async with self._lock:
            written = len(self._pending)
            for entry_id, staged in self._pending.items():
                if staged is None:
                    self._entries.pop(entry_id, None)
                else:
                    self._entries[entry_id] = staged
                self._dump(entry_id, staged)
            self._pending.clear()
            return written

    async def discard_changes(self) -> None:
        async with self._lock:
            self._pending.clear()

    # Convenience accessor (not part of port but useful for tests)
    async def all_committed(self) -> List[JobEntry]:  # pragma: no cover simple access
        async with self._lock:
            return [e.model_copy(deep=True) for e in sorted(self._entries.values(), key=lambda e: e.sequence or 0)]
