"""FeedSubmissionProcessor: lifecycle of feed submissions.

Same stages as reports, keyed by a single submission id, plus an integrity
check after download: the remote sends a base64 MD5 digest with the
processing report and the content only reaches the callback when the digest
recomputed over the downloaded bytes matches it.
"""

import base64
import hashlib
from typing import ClassVar, Optional, Type

from batchpoll.core.exceptions import IntegrityCheckError
from batchpoll.core.managers.queue_processor import QueueProcessor
from batchpoll.core.models.entry import FeedEntry, JobKind
from batchpoll.core.models.remote import DownloadedResult
from batchpoll.core.models.requests import FeedSubmissionParameters


def content_md5(content: bytes) -> str:
    """Base64 encoded MD5 of `content` (the Content-MD5 header format)."""
    return base64.b64encode(hashlib.md5(content).digest()).decode("ascii")


def verify_digest(entry_id: str, content: bytes, expected: Optional[str]) -> str:
    actual = content_md5(content)
    if not expected or expected.strip() != actual:
        raise IntegrityCheckError(entry_id, expected, actual)
    return actual


class FeedSubmissionProcessor(QueueProcessor):
    kind: ClassVar[JobKind] = JobKind.feed
    entry_type: ClassVar[Type[FeedEntry]] = FeedEntry
    parameters_type: ClassVar[Type[FeedSubmissionParameters]] = FeedSubmissionParameters

    async def _accept_download(self, entry: FeedEntry, result: DownloadedResult) -> bool:
        try:
            digest = verify_digest(entry.id, result.content, result.digest)
        except IntegrityCheckError as exc:
            # content is discarded; the entry stays ready_for_download for a fresh download
            entry.verification_retry_count += 1
            entry.touch()
            self._log.warning(
                "[feed:verify] digest mismatch entry_id=%s expected=%s actual=%s retry_count=%s max=%s",
                entry.id, exc.expected_digest, exc.actual_digest,
                entry.verification_retry_count, self.config.max_verification_retries,
            )
            return False
        entry.content_digest = digest
        return await super()._accept_download(entry, result)
