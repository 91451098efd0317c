"""QueueProcessor: the stage transitions shared by report and feed entries.

One processor owns one job kind for one (region, merchant) pair. Each public
stage method is a single read-decide-write step over the entry store; the
poll orchestrator calls them in a fixed order and commits after each one.

Stages:
1. `cleanup_expired`  purge entries whose retry counters exceed their maximum.
2. `request_next`     single-flight submission of the oldest due queued entry.
3. `poll_statuses`    one batched status query for every submitted entry.
4. `download_next`    download (and verify, for feeds) one finished entry.
5. `next_for_callback` / `record_callback_failure` / `retire`  used by the
   orchestrator around handler invocation.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Collection,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Type,
    Union,
)
import uuid

from pydantic import BaseModel, ValidationError

from batchpoll.core.config import PollerConfig
from batchpoll.core.exceptions import (
    BatchPollError,
    InvalidQueueRequestError,
    StaleEntryError,
)
from batchpoll.core.interfaces.entry_store import EntryQuery, EntryStorePort
from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.interfaces.remote_service import RemoteJobServicePort
from batchpoll.core.interfaces.retry import RetryPort
from batchpoll.core.managers.callback_registry import CallbackRegistry, ResultHandler
from batchpoll.core.models.entry import EntryState, JobEntry, JobKind, Region, utc_now
from batchpoll.core.models.remote import DownloadedResult, RemoteProcessingStatus, RemoteStatusReport
from batchpoll.core.utils.backoff import is_due


class QueueProcessor:
    """Drives entries of one job kind through their lifecycle.

    Subclasses set `kind`, `entry_type` and `parameters_type` and may hook
    into `_on_remote_done` and `_accept_download`.
    """

    kind: ClassVar[JobKind]
    entry_type: ClassVar[Type[JobEntry]]
    parameters_type: ClassVar[Type[BaseModel]]

    def __init__(
        self,
        region: Region,
        merchant_id: str,
        store: EntryStorePort,
        remote: RemoteJobServicePort,
        callbacks: CallbackRegistry,
        config: PollerConfig,
        logger: LoggingPort,
        retry_port: Optional[RetryPort] = None,
        owner: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not merchant_id:
            raise ValueError("merchant_id is required")
        self.region = region
        self.merchant_id = merchant_id
        self.store = store
        self._remote = remote
        self._callbacks = callbacks
        self.config = config
        self._log = logger
        self._retry = retry_port
        self.owner = owner or f"{self.kind}-{uuid.uuid4().hex[:8]}"
        self._clock = clock
        # handlers that ran in this process; never selected for invocation again
        self._delivered_ids: Set[str] = set()

    # ----------------- Enqueue -----------------
    def _coerce_parameters(self, parameters: Union[BaseModel, Dict[str, Any], None]) -> BaseModel:
        if parameters is None:
            raise InvalidQueueRequestError(f"{self.kind} parameters are required")
        if isinstance(parameters, dict):
            try:
                return self.parameters_type.model_validate(parameters)
            except ValidationError as exc:
                raise InvalidQueueRequestError(
                    f"Invalid {self.kind} parameters", diagnostic=str(exc)
                ) from exc
        if not isinstance(parameters, self.parameters_type):
            raise InvalidQueueRequestError(
                f"Expected {self.parameters_type.__name__}, got {type(parameters).__name__}"
            )
        return parameters

    async def queue(
        self,
        parameters: Union[BaseModel, Dict[str, Any], None],
        handler: Union[str, ResultHandler, None],
        argument: Any = None,
    ) -> JobEntry:
        """Create one queued entry; raises InvalidQueueRequestError before any write."""
        params = self._coerce_parameters(parameters)
        descriptor = self._callbacks.describe(handler, argument)
        entry = self.entry_type(
            region=self.region,
            merchant_id=self.merchant_id,
            request_data=params.model_dump_json(),
            job_type=getattr(params, "job_type", None),
            callback=descriptor,
        )
        stored = await self.store.create(entry)
        await self.store.save_changes()
        self._log.info(
            "[%s:queue] queued entry_id=%s %s handler=%s",
            self.kind, stored.id, stored.describe(), descriptor.handler_name,
        )
        return stored

    # ----------------- Helpers -----------------
    def _predicate(self, *states: EntryState) -> EntryQuery:
        return EntryQuery(
            kind=self.kind,
            region=self.region,
            merchant_id=self.merchant_id,
            states=frozenset(states) if states else None,
        )

    @staticmethod
    def _oldest_first(last_attempt: Callable[[JobEntry], Optional[datetime]]):
        def key(entry: JobEntry):
            attempted = last_attempt(entry)
            # never-attempted entries first, then by attempt time, then creation order
            return (attempted is not None, attempted or entry.created, entry.sequence or 0)
        return key

    async def _call_remote(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        if self._retry is None:
            return await func(*args)
        return await self._retry.execute(
            func,
            *args,
            attempts=self.config.remote_retry_attempts,
            wait_initial=self.config.remote_retry_base_wait,
            wait_max=self.config.remote_retry_max_wait,
        )

    async def _claim_first(
        self,
        candidates: Sequence[JobEntry],
        last_attempt: Callable[[JobEntry], Optional[datetime]],
        retry_count: Callable[[JobEntry], int],
        now: datetime,
    ) -> Optional[JobEntry]:
        due = [
            e for e in candidates
            if e.is_claimable_by(self.owner, now)
            and is_due(last_attempt(e), retry_count(e), self.config.retry_delays, now)
        ]
        for entry in sorted(due, key=self._oldest_first(last_attempt)):
            claimed = await self.store.claim(
                entry.id,
                self.owner,
                entry.version,
                now + timedelta(seconds=self.config.lease_seconds),
            )
            if claimed is not None:
                return claimed
            self._log.debug(
                "[%s:claim] lost claim entry_id=%s owner=%s", self.kind, entry.id, self.owner
            )
        return None

    async def _save(self, entry: JobEntry) -> Optional[JobEntry]:
        entry.release_lease()
        try:
            return await self.store.update(entry)
        except StaleEntryError as exc:
            self._log.warning(
                "[%s:store] concurrent modification, change dropped entry_id=%s detail=%s",
                self.kind, entry.id, exc.message,
            )
            return None

    def _exceeded(self, entry: JobEntry) -> List[str]:
        return [
            stage for stage, count in entry.retry_counters().items()
            if count > self.config.max_for(stage)
        ]

    # ----------------- Stage 1: cleanup -----------------
    async def cleanup_expired(self) -> int:
        """Delete entries whose retry counters exceed the configured maxima.

        Also removes delivered entries whose deletion failed right after
        their handler ran. Only the purges are counted.
        """
        purged = 0
        entries = await self.store.query(self._predicate())
        self._delivered_ids &= {e.id for e in entries}
        for entry in entries:
            if entry.state == EntryState.delivered or entry.id in self._delivered_ids:
                await self.store.delete(entry.id)
                self._log.info(
                    "[%s:cleanup] removed delivered entry_id=%s %s",
                    self.kind, entry.id, entry.describe(),
                )
                continue
            exceeded = self._exceeded(entry)
            if not exceeded:
                continue
            await self.store.delete(entry.id)
            purged += 1
            self._log.warning(
                "[%s:cleanup] purged entry_id=%s %s state=%s exceeded=%s counters=%s",
                self.kind, entry.id, entry.describe(), entry.state, exceeded, entry.retry_counters(),
            )
        return purged

    # ----------------- Stage 2: submit -----------------
    async def request_next(self) -> Optional[JobEntry]:
        """Submit the oldest due queued entry (at most one per call)."""
        now = self._clock()
        queued = await self.store.query(self._predicate(EntryState.queued))
        entry = await self._claim_first(
            [e for e in queued if not self._exceeded(e)],
            lambda e: e.last_submitted,
            lambda e: e.submit_retry_count,
            now,
        )
        if entry is None:
            return None

        entry.last_submitted = now
        remote_id: Optional[str] = None
        try:
            remote_id = await self._call_remote(
                self._remote.submit, self.kind, self.region, self.merchant_id, entry.request_data
            )
        except Exception as exc:
            self._log.warning(
                "[%s:submit] remote submit failed entry_id=%s %s error=%s",
                self.kind, entry.id, entry.describe(), exc,
            )

        if remote_id:
            entry.assign_remote_id(remote_id)
            entry.transition(EntryState.submitted)
            self._log.info(
                "[%s:submit] accepted entry_id=%s remote_id=%s %s",
                self.kind, entry.id, remote_id, entry.describe(),
            )
        else:
            entry.submit_retry_count += 1
            entry.touch()
            self._log.warning(
                "[%s:submit] no remote id entry_id=%s retry_count=%s max=%s",
                self.kind, entry.id, entry.submit_retry_count, self.config.max_submit_retries,
            )
        return await self._save(entry)

    # ----------------- Stage 3: status poll -----------------
    def _on_remote_done(self, entry: JobEntry, report: RemoteStatusReport) -> None:
        entry.mark_result_ready(report.generated_id)

    async def poll_statuses(self) -> int:
        """Query the status of every submitted entry in one remote call.

        Returns the number of entries that changed state.
        """
        now = self._clock()
        pending = [
            e for e in await self.store.query(self._predicate(EntryState.submitted))
            if e.is_claimable_by(self.owner, now)
        ]
        if not pending:
            return 0

        remote_ids = [e.remote_id for e in pending]
        self._log.debug("[%s:status] querying remote_ids=%s", self.kind, remote_ids)
        try:
            reports = await self._call_remote(
                self._remote.query_status, self.kind, self.region, self.merchant_id, remote_ids
            )
        except Exception as exc:
            self._log.warning(
                "[%s:status] status query failed pending=%s error=%s", self.kind, len(pending), exc
            )
            for entry in pending:
                entry.status_retry_count += 1
                entry.last_status_poll = now
                entry.touch()
                await self._save(entry)
            return 0

        by_remote_id = {r.remote_id: r for r in reports}
        changed = 0
        for entry in pending:
            entry.last_status_poll = now
            report = by_remote_id.get(entry.remote_id)
            if report is None:
                entry.status_retry_count += 1
                entry.touch()
                self._log.warning(
                    "[%s:status] remote omitted remote_id=%s entry_id=%s retry_count=%s",
                    self.kind, entry.remote_id, entry.id, entry.status_retry_count,
                )
                await self._save(entry)
                continue

            entry.last_remote_status = report.status
            status = report.processing_status
            if status == RemoteProcessingStatus.done:
                try:
                    self._on_remote_done(entry, report)
                except BatchPollError as exc:
                    entry.status_retry_count += 1
                    entry.touch()
                    self._log.warning(
                        "[%s:status] unusable done report entry_id=%s error=%s",
                        self.kind, entry.id, exc.message,
                    )
                else:
                    changed += 1
                    self._log.info(
                        "[%s:status] remote done entry_id=%s remote_id=%s result_id=%s",
                        self.kind, entry.id, entry.remote_id, entry.result_id,
                    )
            elif status == RemoteProcessingStatus.done_no_data:
                # finished without a result; exhaust the counter so cleanup purges it
                entry.status_retry_count = max(
                    entry.status_retry_count, self.config.max_status_retries
                ) + 1
                entry.touch()
                self._log.warning(
                    "[%s:status] remote finished without data entry_id=%s remote_id=%s",
                    self.kind, entry.id, entry.remote_id,
                )
            elif status == RemoteProcessingStatus.cancelled:
                cancelled_id = entry.remote_id
                entry.retire_submission()
                entry.submit_retry_count += 1
                # the remote discarded the job; resubmit without waiting out the back-off
                entry.last_submitted = None
                changed += 1
                self._log.warning(
                    "[%s:status] remote cancelled entry_id=%s remote_id=%s requeued retry_count=%s",
                    self.kind, entry.id, cancelled_id, entry.submit_retry_count,
                )
            else:
                entry.touch()
                self._log.debug(
                    "[%s:status] still pending entry_id=%s status=%s",
                    self.kind, entry.id, report.status,
                )
            await self._save(entry)
        return changed

    # ----------------- Stage 4: download -----------------
    async def _accept_download(self, entry: JobEntry, result: DownloadedResult) -> bool:
        entry.content = result.content
        entry.has_errors = result.has_errors
        entry.transition(EntryState.ready_for_callback)
        return True

    async def download_next(self) -> Optional[JobEntry]:
        """Download one finished entry; returns it when it is ready for its callback."""
        now = self._clock()
        ready = await self.store.query(self._predicate(EntryState.ready_for_download))
        entry = await self._claim_first(
            [e for e in ready if not self._exceeded(e)],
            lambda e: e.last_download,
            lambda e: e.download_retry_count,
            now,
        )
        if entry is None:
            return None

        entry.last_download = now
        try:
            result = await self._call_remote(
                self._remote.download, self.kind, self.region, self.merchant_id, entry.result_id
            )
        except Exception as exc:
            entry.download_retry_count += 1
            entry.touch()
            self._log.warning(
                "[%s:download] download failed entry_id=%s result_id=%s retry_count=%s error=%s",
                self.kind, entry.id, entry.result_id, entry.download_retry_count, exc,
            )
            await self._save(entry)
            return None

        accepted = await self._accept_download(entry, result)
        saved = await self._save(entry)
        if not accepted or saved is None:
            return None
        self._log.info(
            "[%s:download] downloaded entry_id=%s bytes=%s has_errors=%s",
            self.kind, entry.id, len(result.content), result.has_errors,
        )
        return saved

    # ----------------- Stage 5: callback bookkeeping -----------------
    async def next_for_callback(
        self,
        downloaded: Optional[JobEntry] = None,
        exclude: Collection[str] = (),
    ) -> Optional[JobEntry]:
        """Claim the entry whose callback should run now.

        With `downloaded`, claims that entry. Otherwise claims the oldest due
        entry left in ready_for_callback by an earlier failed invocation,
        skipping the ids in `exclude`.
        """
        now = self._clock()
        if downloaded is not None:
            current = await self.store.get(downloaded.id)
            if (
                current is None
                or current.state != EntryState.ready_for_callback
                or current.id in self._delivered_ids
            ):
                return None
            candidates = [current]
        else:
            candidates = [
                e for e in await self.store.query(self._predicate(EntryState.ready_for_callback))
                if not self._exceeded(e)
                and e.id not in exclude
                and e.id not in self._delivered_ids
            ]
        return await self._claim_first(
            candidates,
            lambda e: e.last_invoke,
            lambda e: e.invoke_retry_count,
            now,
        )

    async def record_callback_failure(self, entry: JobEntry, error: Exception) -> None:
        entry.invoke_retry_count += 1
        entry.last_invoke = self._clock()
        entry.touch()
        self._log.error(
            "[%s:callback] invocation failed entry_id=%s handler=%s retry_count=%s max=%s error=%s",
            self.kind, entry.id, entry.callback.handler_name,
            entry.invoke_retry_count, self.config.max_invoke_retries, error,
        )
        await self._save(entry)

    async def retire(self, entry: JobEntry) -> None:
        """Delete an entry whose handler has run, committing right away.

        If the delete or its commit fails, the entry is marked `delivered`
        with its content dropped instead, and `cleanup_expired` deletes it on
        a later tick. The id is remembered first, so this process never
        invokes the handler twice even when both writes fail.
        """
        self._delivered_ids.add(entry.id)
        entry.transition(EntryState.delivered)
        try:
            await self.store.delete(entry.id)
            await self.store.save_changes()
            return
        except Exception as exc:
            self._log.warning(
                "[%s:callback] delete after delivery failed entry_id=%s error=%s; marking delivered",
                self.kind, entry.id, exc,
            )
            await self.store.discard_changes()

        current = await self.store.get(entry.id)
        if current is None:
            return
        current.transition(EntryState.delivered)
        current.content = None
        await self._save(current)
        await self.store.save_changes()
