"""BatchJobsClient: the facade callers use to queue jobs and drive polling."""

from typing import Any, Dict, Union

from batchpoll.core.managers.callback_registry import ResultHandler
from batchpoll.core.managers.feed_processor import FeedSubmissionProcessor
from batchpoll.core.managers.poll_orchestrator import PollOrchestrator
from batchpoll.core.managers.report_processor import ReportRequestProcessor
from batchpoll.core.models.entry import FeedEntry, ReportEntry
from batchpoll.core.models.requests import FeedSubmissionParameters, ReportRequestParameters


class BatchJobsClient:
    def __init__(
        self,
        reports: ReportRequestProcessor,
        feeds: FeedSubmissionProcessor,
        orchestrator: PollOrchestrator,
    ) -> None:
        self.reports = reports
        self.feeds = feeds
        self.orchestrator = orchestrator

    async def queue_report(
        self,
        parameters: Union[ReportRequestParameters, Dict[str, Any], None],
        handler: Union[str, ResultHandler, None],
        argument: Any = None,
    ) -> ReportEntry:
        """Queue a report request; `handler` must be registered beforehand.

        Raises InvalidQueueRequestError (nothing is written) when the
        parameters are missing or invalid or the handler is unknown.
        """
        return await self.reports.queue(parameters, handler, argument)

    async def queue_feed(
        self,
        parameters: Union[FeedSubmissionParameters, Dict[str, Any], None],
        handler: Union[str, ResultHandler, None],
        argument: Any = None,
    ) -> FeedEntry:
        """Queue a feed submission; same contract as `queue_report`."""
        return await self.feeds.queue(parameters, handler, argument)

    async def poll(self) -> None:
        """One orchestration tick over reports, then feeds. Never raises."""
        await self.orchestrator.poll()
