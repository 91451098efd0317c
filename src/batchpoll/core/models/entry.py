from datetime import datetime, timezone
from enum import StrEnum
from typing import Annotated, Dict, FrozenSet, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from batchpoll.core.exceptions import BatchPollError, IllegalTransitionError
from batchpoll.core.models.callback import CallbackDescriptor


class JobKind(StrEnum):
    report = "report"
    feed = "feed"


class Region(StrEnum):
    north_america = "north_america"
    brazil = "brazil"
    europe = "europe"
    india = "india"
    china = "china"
    japan = "japan"
    australia = "australia"


class EntryState(StrEnum):
    queued = "queued"
    submitted = "submitted"  # accepted by the remote, waiting for it to finish
    ready_for_download = "ready_for_download"
    ready_for_callback = "ready_for_callback"  # content downloaded (and verified)
    delivered = "delivered"  # terminal; deleted on delivery or by the next cleanup


TRANSITIONS: Dict[EntryState, FrozenSet[EntryState]] = {
    EntryState.queued: frozenset({EntryState.queued, EntryState.submitted}),
    EntryState.submitted: frozenset(
        {EntryState.submitted, EntryState.ready_for_download, EntryState.queued}
    ),
    EntryState.ready_for_download: frozenset(
        {EntryState.ready_for_download, EntryState.ready_for_callback}
    ),
    EntryState.ready_for_callback: frozenset(
        {EntryState.ready_for_callback, EntryState.delivered}
    ),
    EntryState.delivered: frozenset(),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobEntry(BaseModel):
    """One persisted report request or feed submission and its lifecycle state.

    Notes:
    - `state` is stored explicitly; `check_consistency` keeps it in line with
      the remote id fields so a state that contradicts them cannot be loaded.
    - Remote ids are write-once per submission attempt. A remote cancellation
      retires the attempt: its id moves to `cancelled_remote_ids`.
    - Retry counters only ever grow. An entry whose counter exceeds the
      configured maximum is purged, never reset.
    - `version` is the optimistic concurrency token; stores bump it on every
      write and reject writes based on an older version.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), frozen=True)
    kind: JobKind = Field(frozen=True)
    sequence: Optional[int] = None  # creation order, assigned by the store
    region: Region = Field(frozen=True)
    merchant_id: str = Field(min_length=1, frozen=True)

    request_data: str = Field(min_length=1, frozen=True)
    job_type: Optional[str] = None
    callback: CallbackDescriptor = Field(frozen=True)

    state: EntryState = EntryState.queued
    cancelled_remote_ids: List[str] = Field(default_factory=list)
    last_remote_status: Optional[str] = None
    has_errors: bool = False

    submit_retry_count: int = Field(default=0, ge=0)
    status_retry_count: int = Field(default=0, ge=0)
    download_retry_count: int = Field(default=0, ge=0)
    invoke_retry_count: int = Field(default=0, ge=0)

    created: datetime = Field(default_factory=utc_now)
    updated: Optional[datetime] = None
    last_submitted: Optional[datetime] = None
    last_status_poll: Optional[datetime] = None
    last_download: Optional[datetime] = None
    last_invoke: Optional[datetime] = None

    content: Optional[bytes] = None

    version: int = 0
    lease_owner: Optional[str] = None
    lease_expires: Optional[datetime] = None

    # --- kind specific remote correlation (overridden by variants) ---
    @property
    def remote_id(self) -> Optional[str]:
        raise NotImplementedError

    @property
    def result_id(self) -> Optional[str]:
        """Identifier passed to the remote download call."""
        raise NotImplementedError

    def _set_remote_id(self, value: Optional[str]) -> None:
        raise NotImplementedError

    def mark_result_ready(self, generated_id: Optional[str]) -> None:
        raise NotImplementedError

    def _consistency_problem(self) -> Optional[str]:
        if self.state != EntryState.queued and not self.remote_id:
            return f"state {self.state} requires a remote id"
        if self.state == EntryState.ready_for_callback and self.content is None:
            return "state ready_for_callback requires downloaded content"
        return None

    @model_validator(mode="after")
    def check_consistency(self) -> "JobEntry":
        problem = self._consistency_problem()
        if problem:
            raise ValueError(problem)
        return self

    # --- derived status flags ---
    @property
    def accepted_by_remote(self) -> bool:
        return self.state != EntryState.queued

    @property
    def result_ready(self) -> bool:
        return self.state in {
            EntryState.ready_for_download,
            EntryState.ready_for_callback,
            EntryState.delivered,
        }

    # --- mutation helpers ---
    def touch(self) -> None:
        self.updated = utc_now()

    def transition(self, target: EntryState) -> None:
        """Move to `target` if the transition table allows it and ids agree."""
        source = self.state
        if target not in TRANSITIONS[source]:
            raise IllegalTransitionError(self.id, str(source), str(target))
        self.state = target
        problem = self._consistency_problem()
        if problem:
            self.state = source
            raise IllegalTransitionError(self.id, str(source), f"{target} ({problem})")
        self.touch()

    def assign_remote_id(self, remote_id: str) -> None:
        current = self.remote_id
        if current and current != remote_id:
            raise BatchPollError(
                f"Remote id already assigned ({current}); refusing to overwrite with {remote_id}",
                entry_id=self.id,
            )
        self._set_remote_id(remote_id)

    def retire_submission(self) -> None:
        """Archive the current remote id after the remote discarded the job."""
        if self.remote_id:
            self.cancelled_remote_ids.append(self.remote_id)
        self.state = EntryState.queued
        self._set_remote_id(None)
        self.touch()

    def retry_counters(self) -> Dict[str, int]:
        return {
            "submit": self.submit_retry_count,
            "status": self.status_retry_count,
            "download": self.download_retry_count,
            "invoke": self.invoke_retry_count,
        }

    def is_claimable_by(self, owner: str, now: Optional[datetime] = None) -> bool:
        if not self.lease_owner or self.lease_owner == owner:
            return True
        now = now or utc_now()
        return self.lease_expires is None or self.lease_expires <= now

    def release_lease(self) -> None:
        self.lease_owner = None
        self.lease_expires = None

    def describe(self) -> str:
        return f"[kind:'{self.kind}', region:'{self.region}', type:'{self.job_type}']"


class ReportEntry(JobEntry):
    kind: Literal[JobKind.report] = Field(default=JobKind.report, frozen=True)
    request_id: Optional[str] = None
    generated_id: Optional[str] = None

    @property
    def remote_id(self) -> Optional[str]:
        return self.request_id

    @property
    def result_id(self) -> Optional[str]:
        return self.generated_id

    def _set_remote_id(self, value: Optional[str]) -> None:
        self.request_id = value
        if value is None:
            self.generated_id = None

    def mark_result_ready(self, generated_id: Optional[str]) -> None:
        if not generated_id:
            raise BatchPollError("Report marked done without a generated id", entry_id=self.id)
        if self.generated_id and self.generated_id != generated_id:
            raise BatchPollError(
                f"Generated id already assigned ({self.generated_id}); refusing {generated_id}",
                entry_id=self.id,
            )
        self.generated_id = generated_id
        self.transition(EntryState.ready_for_download)

    def _consistency_problem(self) -> Optional[str]:
        if self.state in {EntryState.ready_for_download, EntryState.ready_for_callback} and not self.generated_id:
            return f"state {self.state} requires a generated report id"
        return super()._consistency_problem()


class FeedEntry(JobEntry):
    kind: Literal[JobKind.feed] = Field(default=JobKind.feed, frozen=True)
    submission_id: Optional[str] = None
    content_digest: Optional[str] = None
    verification_retry_count: int = Field(default=0, ge=0)

    @property
    def remote_id(self) -> Optional[str]:
        return self.submission_id

    @property
    def result_id(self) -> Optional[str]:
        return self.submission_id

    def _set_remote_id(self, value: Optional[str]) -> None:
        self.submission_id = value

    def mark_result_ready(self, generated_id: Optional[str]) -> None:
        # feeds are downloaded by their submission id
        self.transition(EntryState.ready_for_download)

    def retry_counters(self) -> Dict[str, int]:
        counters = super().retry_counters()
        counters["verification"] = self.verification_retry_count
        return counters


AnyEntry = Annotated[Union[ReportEntry, FeedEntry], Field(discriminator="kind")]

entry_adapter: TypeAdapter = TypeAdapter(AnyEntry)
