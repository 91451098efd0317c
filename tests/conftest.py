"""Shared test adapters: in-process implementations of the ports."""

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import pytest

from batchpoll.adapters.entry_store_inmemory import InMemoryEntryStore
from batchpoll.core.config import PollerConfig
from batchpoll.core.exceptions import RemoteServiceError
from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.interfaces.remote_service import RemoteJobServicePort
from batchpoll.core.managers.callback_registry import CallbackRegistry
from batchpoll.core.managers.feed_processor import FeedSubmissionProcessor, content_md5
from batchpoll.core.managers.poll_orchestrator import PollOrchestrator
from batchpoll.core.managers.report_processor import ReportRequestProcessor
from batchpoll.core.models.entry import JobKind, Region
from batchpoll.core.models.remote import DownloadedResult, RemoteStatusReport


class RecordingLogger(LoggingPort):
    def __init__(self):
        self.records: List[tuple] = []

    def _record(self, level: str, msg: str, *args):
        self.records.append((level, msg % args if args else msg))

    def info(self, msg: str, *args):
        self._record("info", msg, *args)

    def warning(self, msg: str, *args):
        self._record("warning", msg, *args)

    def error(self, msg: str, *args):
        self._record("error", msg, *args)

    def debug(self, msg: str, *args):
        self._record("debug", msg, *args)

    def exception(self, msg: str, *args):
        self._record("exception", msg, *args)

    def messages(self, level: str) -> List[str]:
        return [m for lvl, m in self.records if lvl == level]


class FakeRemoteService(RemoteJobServicePort):
    """Scripted remote: hands out ids, reports queued statuses, serves content.

    `statuses` maps a remote id to the statuses returned by successive
    queries; the last one sticks. Ids without a script report _IN_PROGRESS_.
    """

    def __init__(self):
        self.submit_calls: List[tuple] = []
        self.status_calls: List[List[str]] = []
        self.download_calls: List[str] = []
        self.submit_ids: List[Optional[str]] = []
        self.statuses: Dict[str, List[str]] = {}
        self.generated_ids: Dict[str, str] = {}
        self.omit_ids: set = set()
        self.content: bytes = b"report-content"
        self.digest: Optional[str] = None  # None means: send the correct digest
        self.fail_submit: Optional[Exception] = None
        self.fail_status: Optional[Exception] = None
        self.fail_download: Optional[Exception] = None
        self._counter = 0

    async def submit(self, kind: JobKind, region: Region, merchant_id: str, payload: str) -> Optional[str]:
        self.submit_calls.append((kind, region, merchant_id, payload))
        if self.fail_submit:
            raise self.fail_submit
        if self.submit_ids:
            return self.submit_ids.pop(0)
        self._counter += 1
        return f"{kind}-remote-{self._counter}"

    async def query_status(
        self, kind: JobKind, region: Region, merchant_id: str, remote_ids: Sequence[str]
    ) -> List[RemoteStatusReport]:
        self.status_calls.append(list(remote_ids))
        if self.fail_status:
            raise self.fail_status
        reports = []
        for remote_id in remote_ids:
            if remote_id in self.omit_ids:
                continue
            script = self.statuses.get(remote_id, ["_IN_PROGRESS_"])
            status = script.pop(0) if len(script) > 1 else script[0]
            reports.append(
                RemoteStatusReport(
                    remote_id=remote_id,
                    status=status,
                    generated_id=self.generated_ids.get(remote_id, f"gen-{remote_id}"),
                )
            )
        return reports

    async def download(self, kind: JobKind, region: Region, merchant_id: str, result_id: str) -> DownloadedResult:
        self.download_calls.append(result_id)
        if self.fail_download:
            raise self.fail_download
        digest = self.digest if self.digest is not None else content_md5(self.content)
        return DownloadedResult(content=self.content, digest=digest)


class CountingStore(InMemoryEntryStore):
    def __init__(self):
        super().__init__()
        self.calls = defaultdict(int)

    async def create(self, entry):
        self.calls["create"] += 1
        return await super().create(entry)

    async def update(self, entry):
        self.calls["update"] += 1
        return await super().update(entry)

    async def delete(self, entry_id):
        self.calls["delete"] += 1
        return await super().delete(entry_id)


@pytest.fixture
def logger():
    return RecordingLogger()


@pytest.fixture
def remote():
    return FakeRemoteService()


@pytest.fixture
def store():
    return CountingStore()


@pytest.fixture
def config():
    # no back-off between attempts so every poll retries right away
    return PollerConfig(
        max_submit_retries=2,
        max_status_retries=3,
        max_download_retries=2,
        max_invoke_retries=2,
        max_verification_retries=1,
        retry_delays=[],
    )


@pytest.fixture
def delivered():
    """Content and argument of every successful handler call."""
    return []


@pytest.fixture
def registry(delivered):
    registry = CallbackRegistry()

    @registry.handler("collect")
    def collect(stream, argument):
        delivered.append((stream.read(), argument))

    @registry.handler("explode")
    def explode(stream, argument):
        raise RuntimeError("handler blew up")

    return registry


@pytest.fixture
def make_processors(store, remote, registry, config, logger):
    def factory(**overrides):
        kwargs = dict(
            region=Region.europe,
            merchant_id="merchant-1",
            store=store,
            remote=remote,
            callbacks=registry,
            config=config,
            logger=logger,
        )
        kwargs.update(overrides)
        return ReportRequestProcessor(**kwargs), FeedSubmissionProcessor(**kwargs)
    return factory


@pytest.fixture
def report_processor(make_processors):
    return make_processors()[0]


@pytest.fixture
def feed_processor(make_processors):
    return make_processors()[1]


@pytest.fixture
def orchestrator(report_processor, feed_processor, store, registry, logger):
    return PollOrchestrator([report_processor, feed_processor], store, registry, logger)


@pytest.fixture
def transient_error():
    return RemoteServiceError("upstream unavailable", status=503, transient=True)
