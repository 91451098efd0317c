"""SQLAlchemy implementation of EntryStorePort (durable across restarts).

Both job kinds share one `job_entries` table; `kind` discriminates. Staged
writes run inside an open transaction on a dedicated connection, so later
reads through this store see them; `save_changes()` commits it and
`discard_changes()` rolls it back. `update()` and `claim()` are
compare-and-set statements on the `version` column.

Note: the port is async while SQLAlchemy runs synchronously here; every call
blocks the event loop for the duration of the statement, same as the
remote calls block the tick.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from batchpoll.core.exceptions import StaleEntryError
from batchpoll.core.interfaces.entry_store import EntryQuery, EntryStorePort
from batchpoll.core.models.callback import CallbackDescriptor
from batchpoll.core.models.entry import JobEntry, JobKind, entry_adapter, utc_now

logger = logging.getLogger(__name__)

metadata = sa.MetaData()

job_entries = sa.Table(
    "job_entries",
    metadata,
    sa.Column("sequence", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("id", sa.String(36), nullable=False, unique=True, index=True),
    sa.Column("kind", sa.String(16), nullable=False),
    sa.Column("region", sa.String(32), nullable=False),
    sa.Column("merchant_id", sa.String(), nullable=False),
    sa.Column("state", sa.String(32), nullable=False, index=True),
    sa.Column("request_data", sa.Text(), nullable=False),
    sa.Column("job_type", sa.String()),
    sa.Column("callback", sa.Text(), nullable=False),
    sa.Column("remote_id", sa.String()),
    sa.Column("generated_id", sa.String()),
    sa.Column("cancelled_remote_ids", sa.Text(), nullable=False, default="[]"),
    sa.Column("last_remote_status", sa.String()),
    sa.Column("has_errors", sa.Boolean(), nullable=False, default=False),
    sa.Column("content", sa.LargeBinary()),
    sa.Column("content_digest", sa.String()),
    sa.Column("submit_retry_count", sa.Integer(), nullable=False, default=0),
    sa.Column("status_retry_count", sa.Integer(), nullable=False, default=0),
    sa.Column("download_retry_count", sa.Integer(), nullable=False, default=0),
    sa.Column("invoke_retry_count", sa.Integer(), nullable=False, default=0),
    sa.Column("verification_retry_count", sa.Integer(), nullable=False, default=0),
    sa.Column("created", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated", sa.DateTime(timezone=True)),
    sa.Column("last_submitted", sa.DateTime(timezone=True)),
    sa.Column("last_status_poll", sa.DateTime(timezone=True)),
    sa.Column("last_download", sa.DateTime(timezone=True)),
    sa.Column("last_invoke", sa.DateTime(timezone=True)),
    sa.Column("version", sa.Integer(), nullable=False, default=0),
    sa.Column("lease_owner", sa.String()),
    sa.Column("lease_expires", sa.DateTime(timezone=True)),
)

_DATETIME_FIELDS = (
    "created", "updated", "last_submitted", "last_status_poll",
    "last_download", "last_invoke", "lease_expires",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(entry: JobEntry) -> Dict[str, Any]:
    row = entry.model_dump(
        exclude={"sequence", "callback", "cancelled_remote_ids", "request_id", "submission_id"}
    )
    row["kind"] = str(entry.kind)
    row["region"] = str(entry.region)
    row["state"] = str(entry.state)
    row["callback"] = entry.callback.model_dump_json()
    row["cancelled_remote_ids"] = json.dumps(entry.cancelled_remote_ids)
    row["remote_id"] = entry.remote_id
    row.setdefault("generated_id", None)
    row.setdefault("content_digest", None)
    row.setdefault("verification_retry_count", 0)
    return row


def _from_row(row: sa.Row) -> JobEntry:
    data = dict(row._mapping)
    for name in _DATETIME_FIELDS:
        data[name] = _as_utc(data[name])
    data["callback"] = CallbackDescriptor.model_validate_json(data["callback"])
    data["cancelled_remote_ids"] = json.loads(data["cancelled_remote_ids"] or "[]")
    remote_id = data.pop("remote_id")
    if data["kind"] == JobKind.report:
        data["request_id"] = remote_id
        for name in ("content_digest", "verification_retry_count"):
            data.pop(name, None)
    else:
        data["submission_id"] = remote_id
        data.pop("generated_id", None)
    return entry_adapter.validate_python(data)


class SqlAlchemyEntryStore(EntryStorePort):
    def __init__(self, engine: Engine | str, create_schema: bool = True) -> None:
        self._engine = sa.create_engine(engine) if isinstance(engine, str) else engine
        if create_schema:
            metadata.create_all(self._engine)
        self._conn: Optional[Connection] = None

    def _uow(self) -> Connection:
        """Connection carrying the open unit of work (begun lazily)."""
        if self._conn is None:
            self._conn = self._engine.connect()
        if not self._conn.in_transaction():
            self._conn.begin()
        return self._conn

    async def create(self, entry: JobEntry) -> JobEntry:
        stored = entry.model_copy(deep=True)
        result = self._uow().execute(sa.insert(job_entries).values(**_to_row(stored)))
        stored.sequence = result.inserted_primary_key[0]
        return stored

    async def get(self, entry_id: str) -> Optional[JobEntry]:
        row = self._uow().execute(
            sa.select(job_entries).where(job_entries.c.id == entry_id)
        ).first()
        return _from_row(row) if row else None

    async def update(self, entry: JobEntry) -> JobEntry:
        stored = entry.model_copy(deep=True)
        stored.version = entry.version + 1
        stored.touch()
        conn = self._uow()
        result = conn.execute(
            sa.update(job_entries)
            .where(job_entries.c.id == entry.id)
            .where(job_entries.c.version == entry.version)  # optimistic concurrency
            .values(**_to_row(stored))
        )
        if result.rowcount != 1:
            actual = conn.execute(
                sa.select(job_entries.c.version).where(job_entries.c.id == entry.id)
            ).scalar()
            raise StaleEntryError(entry.id, entry.version, actual)
        return stored

    async def delete(self, entry_id: str) -> None:
        self._uow().execute(sa.delete(job_entries).where(job_entries.c.id == entry_id))

    async def query(self, predicate: EntryQuery) -> Sequence[JobEntry]:
        stmt = sa.select(job_entries).order_by(job_entries.c.sequence)
        if predicate.kind is not None:
            stmt = stmt.where(job_entries.c.kind == str(predicate.kind))
        if predicate.region is not None:
            stmt = stmt.where(job_entries.c.region == str(predicate.region))
        if predicate.merchant_id is not None:
            stmt = stmt.where(job_entries.c.merchant_id == predicate.merchant_id)
        if predicate.states is not None:
            stmt = stmt.where(job_entries.c.state.in_([str(s) for s in predicate.states]))
        return [_from_row(row) for row in self._uow().execute(stmt)]

    async def claim(
        self,
        entry_id: str,
        owner: str,
        expected_version: int,
        lease_expires: datetime,
    ) -> Optional[JobEntry]:
        now = utc_now()
        stmt = (
            sa.update(job_entries)
            .where(job_entries.c.id == entry_id)
            .where(job_entries.c.version == expected_version)
            .where(
                sa.or_(
                    job_entries.c.lease_owner.is_(None),
                    job_entries.c.lease_owner == owner,
                    job_entries.c.lease_expires.is_(None),
                    job_entries.c.lease_expires <= now,
                )
            )
            .values(
                lease_owner=owner,
                lease_expires=lease_expires,
                version=expected_version + 1,
            )
        )
        # claims commit on their own, outside the unit of work
        with self._engine.begin() as conn:
            if conn.execute(stmt).rowcount != 1:
                return None
            row = conn.execute(
                sa.select(job_entries).where(job_entries.c.id == entry_id)
            ).first()
        return _from_row(row)

    async def save_changes(self) -> int:
        if self._conn is None or not self._conn.in_transaction():
            return 0
        self._conn.commit()
        return 1

    async def discard_changes(self) -> None:
        if self._conn is not None and self._conn.in_transaction():
            self._conn.rollback()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        self._engine.dispose()
        logger.debug("SqlAlchemyEntryStore closed")
