"""PollOrchestrator: one synchronous pass over every processor per `poll()`.

For each processor (reports first, then feeds) the stages run in a fixed
order: expire -> submit one -> poll statuses -> download one -> deliver.
Every stage is its own unit of work against the entry store: committed when
it returns, rolled back when it raises. A failing stage is logged and the
tick moves on; nothing escapes `poll()`. Delivery invokes the entry
downloaded in this tick and then the oldest due leftover of an earlier
failed invocation, committing after each handler call.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Sequence

from batchpoll.core.exceptions import CallbackError
from batchpoll.core.interfaces.entry_store import EntryStorePort
from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.logging_config import correlation_id_var, new_correlation_id
from batchpoll.core.managers.callback_registry import CallbackRegistry
from batchpoll.core.managers.queue_processor import QueueProcessor
from batchpoll.core.models.entry import JobEntry


class PollOrchestrator:
    def __init__(
        self,
        processors: Sequence[QueueProcessor],
        store: EntryStorePort,
        callbacks: CallbackRegistry,
        logger: LoggingPort,
    ) -> None:
        self._processors = list(processors)
        self._store = store
        self._callbacks = callbacks
        self._log = logger

    async def poll(self) -> None:
        """Run one orchestration pass. Never raises."""
        token = correlation_id_var.set(new_correlation_id())
        try:
            self._log.debug("[poll:start] processors=%s", [p.kind for p in self._processors])
            for processor in self._processors:
                await self._poll_processor(processor)
            self._log.debug("[poll:end]")
        except Exception:
            # stages already guard themselves; this only catches failures around them
            self._log.exception("[poll:error] unexpected failure outside a stage")
        finally:
            correlation_id_var.reset(token)

    async def _poll_processor(self, processor: QueueProcessor) -> None:
        await self._run_stage(processor, "cleanup", processor.cleanup_expired)
        await self._run_stage(processor, "submit", processor.request_next)
        await self._run_stage(processor, "status", processor.poll_statuses)
        downloaded = await self._run_stage(processor, "download", processor.download_next)
        await self._run_stage(processor, "callback", lambda: self._deliver(processor, downloaded))
        await self._run_stage(processor, "persist", self._store.save_changes)

    async def _run_stage(
        self,
        processor: QueueProcessor,
        stage: str,
        func: Callable[[], Awaitable[Any]],
    ) -> Optional[Any]:
        try:
            result = await func()
            await self._store.save_changes()
            return result
        except Exception:
            self._log.exception(
                "[poll:%s] stage failed kind=%s; rolling back its changes", stage, processor.kind
            )
            try:
                await self._store.discard_changes()
            except Exception:
                self._log.exception("[poll:%s] rollback failed kind=%s", stage, processor.kind)
            return None

    async def _deliver(self, processor: QueueProcessor, downloaded: Optional[JobEntry]) -> int:
        """Invoke the entry downloaded this tick, then the oldest due leftover."""
        delivered = 0
        attempted = set()
        if downloaded is not None:
            fresh = await processor.next_for_callback(downloaded)
            if fresh is not None:
                attempted.add(fresh.id)
                delivered += await self._invoke(processor, fresh)
        leftover = await processor.next_for_callback(exclude=attempted)
        if leftover is not None:
            delivered += await self._invoke(processor, leftover)
        return delivered

    async def _invoke(self, processor: QueueProcessor, entry: JobEntry) -> bool:
        try:
            await self._callbacks.invoke(entry.callback, entry.content or b"", entry_id=entry.id)
        except CallbackError as exc:
            await processor.record_callback_failure(entry, exc)
            await self._store.save_changes()
            return False

        await processor.retire(entry)
        self._log.info(
            "[%s:callback] delivered entry_id=%s %s handler=%s",
            processor.kind, entry.id, entry.describe(), entry.callback.handler_name,
        )
        return True
