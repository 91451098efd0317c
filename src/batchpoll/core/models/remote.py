from enum import StrEnum
from typing import Optional

from pydantic import BaseModel


class RemoteProcessingStatus(StrEnum):
    done = "_DONE_"
    done_no_data = "_DONE_NO_DATA_"
    cancelled = "_CANCELLED_"
    submitted = "_SUBMITTED_"
    in_progress = "_IN_PROGRESS_"
    awaiting_asynchronous_reply = "_AWAITING_ASYNCHRONOUS_REPLY_"
    unconfirmed = "_UNCONFIRMED_"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["RemoteProcessingStatus"]:
        """Map a raw remote status string to a member, None when unrecognized."""
        if not raw:
            return None
        normalized = raw.strip().upper()
        if not normalized.startswith("_"):
            normalized = f"_{normalized}_"
        try:
            return cls(normalized)
        except ValueError:
            return None


class RemoteStatusReport(BaseModel):
    """One row of a batched status query answer."""

    remote_id: str
    status: str
    generated_id: Optional[str] = None

    @property
    def processing_status(self) -> Optional[RemoteProcessingStatus]:
        return RemoteProcessingStatus.parse(self.status)


class DownloadedResult(BaseModel):
    content: bytes
    digest: Optional[str] = None  # base64 MD5, Content-MD5 style
    has_errors: bool = False
