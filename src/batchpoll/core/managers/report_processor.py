"""ReportRequestProcessor: lifecycle of report generation requests.

queued -> submitted (remote request id) -> ready_for_download (remote
generated id) -> ready_for_callback (content stored) -> delivered.
A remote cancellation sends the entry back to queued and counts as a failed
submission.
"""

from typing import ClassVar, Type

from batchpoll.core.managers.queue_processor import QueueProcessor
from batchpoll.core.models.entry import JobKind, ReportEntry
from batchpoll.core.models.remote import RemoteStatusReport
from batchpoll.core.models.requests import ReportRequestParameters


class ReportRequestProcessor(QueueProcessor):
    kind: ClassVar[JobKind] = JobKind.report
    entry_type: ClassVar[Type[ReportEntry]] = ReportEntry
    parameters_type: ClassVar[Type[ReportRequestParameters]] = ReportRequestParameters

    def _on_remote_done(self, entry: ReportEntry, report: RemoteStatusReport) -> None:
        # reports are downloaded by the id the remote assigns once generation finished
        entry.mark_result_ready(report.generated_id)
