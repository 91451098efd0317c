"""Configuration models for core domain components.

This module provides Pydantic-based configuration classes that consolidate
settings for the processors and the poll orchestrator, enabling dependency
injection and testability.
"""

from typing import List
from pydantic import BaseModel, Field, field_validator


class PollerConfig(BaseModel):
    """Configuration for processor and orchestrator behavior.

    Attributes:
        max_submit_retries: Failed submissions tolerated before an entry is purged
        max_status_retries: Failed status lookups tolerated before an entry is purged
        max_download_retries: Failed downloads tolerated before an entry is purged
        max_invoke_retries: Failed callback invocations tolerated before an entry is purged
        max_verification_retries: Digest mismatches tolerated before a feed entry is purged
        retry_delays: Back-off schedule (seconds) for single-flight stages; the last value repeats
        lease_seconds: How long a claim keeps other orchestrators away from an entry
        remote_retry_attempts: In-stage attempts for transient remote errors
    """

    max_submit_retries: int = Field(
        default=4,
        ge=0,
        description="An entry whose submit counter exceeds this value is purged"
    )

    max_status_retries: int = Field(
        default=10,
        ge=0,
        description="An entry whose status-poll counter exceeds this value is purged"
    )

    max_download_retries: int = Field(
        default=4,
        ge=0,
        description="An entry whose download counter exceeds this value is purged"
    )

    max_invoke_retries: int = Field(
        default=4,
        ge=0,
        description="An entry whose callback counter exceeds this value is purged"
    )

    max_verification_retries: int = Field(
        default=3,
        ge=0,
        description="A feed entry whose digest-mismatch counter exceeds this value is purged"
    )

    retry_delays: List[float] = Field(
        default_factory=lambda: [30 * 60, 60 * 60, 4 * 60 * 60],
        description="Seconds to wait after the 1st, 2nd, 3rd+ failure of a single-flight stage"
    )

    lease_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Lifetime of an entry claim taken by an orchestrator"
    )

    remote_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for transient remote errors inside one stage"
    )

    remote_retry_base_wait: float = Field(
        default=0.5,
        gt=0,
        description="Base wait time in seconds for exponential backoff between in-stage attempts"
    )

    remote_retry_max_wait: float = Field(
        default=5.0,
        gt=0,
        description="Maximum wait time in seconds between in-stage attempts"
    )

    model_config = {
        "frozen": True,  # Immutable after creation
        "extra": "forbid",  # Reject unknown fields
    }

    @field_validator("retry_delays")
    @classmethod
    def non_negative_delays(cls, value: List[float]) -> List[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("retry_delays must not contain negative values")
        return value

    def max_for(self, stage: str) -> int:
        """Configured maximum for a retry counter name as used by JobEntry.retry_counters()."""
        return {
            "submit": self.max_submit_retries,
            "status": self.max_status_retries,
            "download": self.max_download_retries,
            "invoke": self.max_invoke_retries,
            "verification": self.max_verification_retries,
        }[stage]

    @classmethod
    def from_app_settings(cls, settings) -> "PollerConfig":
        """Factory method to construct config from a BatchPollSettings instance."""
        return cls(
            max_submit_retries=settings.BATCHPOLL_MAX_SUBMIT_RETRIES,
            max_status_retries=settings.BATCHPOLL_MAX_STATUS_RETRIES,
            max_download_retries=settings.BATCHPOLL_MAX_DOWNLOAD_RETRIES,
            max_invoke_retries=settings.BATCHPOLL_MAX_INVOKE_RETRIES,
            max_verification_retries=settings.BATCHPOLL_MAX_VERIFICATION_RETRIES,
            retry_delays=settings.BATCHPOLL_RETRY_DELAYS,
            lease_seconds=settings.BATCHPOLL_LEASE_SECONDS,
            remote_retry_attempts=settings.BATCHPOLL_REMOTE_RETRY_ATTEMPTS,
            # remote_retry_base_wait and remote_retry_max_wait use defaults
        )
