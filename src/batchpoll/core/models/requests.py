from datetime import datetime
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ContentUpdateFrequency(StrEnum):
    unknown = "unknown"
    near_real_time = "near_real_time"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class ReportRequestParameters(BaseModel):
    """Arguments needed to request one report from the remote service.

    Serialized into `JobEntry.request_data` at enqueue time; the processors
    never look inside, only the remote service adapter does.
    """

    report_type: str = Field(min_length=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    marketplace_ids: List[str] = Field(default_factory=list)
    report_options: Optional[str] = None
    content_update_frequency: ContentUpdateFrequency = ContentUpdateFrequency.unknown

    @model_validator(mode="after")
    def check_date_range(self) -> "ReportRequestParameters":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self

    @property
    def job_type(self) -> str:
        return self.report_type


class FeedSubmissionParameters(BaseModel):
    feed_type: str = Field(min_length=1)
    feed_content: str = Field(min_length=1)
    marketplace_ids: List[str] = Field(default_factory=list)
    purge_and_replace: bool = False

    @property
    def job_type(self) -> str:
        return self.feed_type
