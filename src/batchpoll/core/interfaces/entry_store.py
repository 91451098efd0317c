"""EntryStorePort: hexagonal port for persisting and querying job entries.

Writes are staged as a unit of work: `create`, `update` and `delete` become
visible to later reads through the same store right away, but are only made
durable by `save_changes()` and are dropped by `discard_changes()`.
`claim()` is the exception: it is an immediate, atomic compare-and-set.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, Optional, Sequence

from pydantic import BaseModel

from batchpoll.core.models.entry import EntryState, JobEntry, JobKind, Region


class EntryQuery(BaseModel):
	"""Predicate over entries; every field left as None matches anything."""

	kind: Optional[JobKind] = None
	region: Optional[Region] = None
	merchant_id: Optional[str] = None
	states: Optional[FrozenSet[EntryState]] = None

	def matches(self, entry: JobEntry) -> bool:
		if self.kind is not None and entry.kind != self.kind:
			return False
		if self.region is not None and entry.region != self.region:
			return False
		if self.merchant_id is not None and entry.merchant_id != self.merchant_id:
			return False
		if self.states is not None and entry.state not in self.states:
			return False
		return True


class EntryStorePort(ABC):
	"""Port abstraction for job entry persistence."""

	@abstractmethod
	async def create(self, entry: JobEntry) -> JobEntry:
		"""Stage a new entry and return the stored instance (sequence assigned)."""
		raise NotImplementedError

	@abstractmethod
	async def get(self, entry_id: str) -> Optional[JobEntry]:
		"""Return the entry or None if not found."""
		raise NotImplementedError

	@abstractmethod
	async def update(self, entry: JobEntry) -> JobEntry:
		"""Stage modifications; raises StaleEntryError if `entry.version` is outdated."""
		raise NotImplementedError

	@abstractmethod
	async def delete(self, entry_id: str) -> None:
		"""Stage removal of an entry (no-op when it does not exist)."""
		raise NotImplementedError

	@abstractmethod
	async def query(self, predicate: EntryQuery) -> Sequence[JobEntry]:
		"""Return matching entries in creation order."""
		raise NotImplementedError

	@abstractmethod
	async def claim(
		self,
		entry_id: str,
		owner: str,
		expected_version: int,
		lease_expires: datetime,
	) -> Optional[JobEntry]:
		"""Atomically lease an entry to `owner`.

		Succeeds only if the stored version still equals `expected_version` and
		no other owner holds an unexpired lease. Returns the claimed entry (with
		its new version) or None when the claim was lost.
		"""
		raise NotImplementedError

	@abstractmethod
	async def save_changes(self) -> int:
		"""Commit staged writes; return the number of entries written."""
		raise NotImplementedError

	@abstractmethod
	async def discard_changes(self) -> None:
		"""Drop staged writes."""
		raise NotImplementedError
