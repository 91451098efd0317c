"""Tests for the JobEntry state machine and its consistency rules."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from batchpoll.core.exceptions import BatchPollError, IllegalTransitionError
from batchpoll.core.models.callback import CallbackDescriptor
from batchpoll.core.models.entry import (
    EntryState,
    FeedEntry,
    JobKind,
    Region,
    ReportEntry,
    TRANSITIONS,
    entry_adapter,
    utc_now,
)


def _report(**kwargs) -> ReportEntry:
    return ReportEntry(
        region=Region.europe,
        merchant_id="m-1",
        request_data='{"report_type": "inventory"}',
        callback=CallbackDescriptor(handler_name="collect"),
        **kwargs,
    )


def _feed(**kwargs) -> FeedEntry:
    return FeedEntry(
        region=Region.europe,
        merchant_id="m-1",
        request_data='{"feed_type": "price"}',
        callback=CallbackDescriptor(handler_name="collect"),
        **kwargs,
    )


def test_new_entry_is_queued():
    entry = _report()
    assert entry.state == EntryState.queued
    assert entry.kind == JobKind.report
    assert not entry.accepted_by_remote
    assert not entry.result_ready
    assert entry.retry_counters() == {"submit": 0, "status": 0, "download": 0, "invoke": 0}


def test_report_walks_the_full_lifecycle():
    entry = _report()
    entry.assign_remote_id("req-1")
    entry.transition(EntryState.submitted)
    assert entry.accepted_by_remote

    entry.mark_result_ready("gen-1")
    assert entry.state == EntryState.ready_for_download
    assert entry.result_id == "gen-1"
    assert entry.result_ready

    entry.content = b"data"
    entry.transition(EntryState.ready_for_callback)
    entry.transition(EntryState.delivered)
    assert TRANSITIONS[entry.state] == frozenset()


def test_transition_outside_table_is_rejected():
    entry = _report()
    with pytest.raises(IllegalTransitionError) as excinfo:
        entry.transition(EntryState.ready_for_callback)
    assert excinfo.value.source == EntryState.queued
    assert entry.state == EntryState.queued


def test_transition_that_contradicts_ids_is_reverted():
    entry = _report()
    # queued -> submitted is allowed by the table but needs a request id
    with pytest.raises(IllegalTransitionError):
        entry.transition(EntryState.submitted)
    assert entry.state == EntryState.queued


def test_ready_for_callback_requires_content():
    entry = _feed()
    entry.assign_remote_id("sub-1")
    entry.transition(EntryState.submitted)
    entry.mark_result_ready(None)
    with pytest.raises(IllegalTransitionError):
        entry.transition(EntryState.ready_for_callback)
    assert entry.state == EntryState.ready_for_download


def test_report_done_without_generated_id_fails():
    entry = _report()
    entry.assign_remote_id("req-1")
    entry.transition(EntryState.submitted)
    with pytest.raises(BatchPollError):
        entry.mark_result_ready(None)
    assert entry.state == EntryState.submitted


def test_remote_id_is_write_once():
    entry = _report()
    entry.assign_remote_id("req-1")
    entry.assign_remote_id("req-1")
    with pytest.raises(BatchPollError):
        entry.assign_remote_id("req-2")
    assert entry.request_id == "req-1"


def test_retire_submission_archives_the_id():
    entry = _report()
    entry.assign_remote_id("req-1")
    entry.transition(EntryState.submitted)

    entry.retire_submission()

    assert entry.state == EntryState.queued
    assert entry.request_id is None
    assert entry.cancelled_remote_ids == ["req-1"]
    entry.assign_remote_id("req-2")
    assert entry.request_id == "req-2"


def test_inconsistent_state_cannot_be_loaded():
    with pytest.raises(ValidationError):
        _report(state=EntryState.submitted)
    with pytest.raises(ValidationError):
        _report(state=EntryState.ready_for_download, request_id="req-1")


def test_feed_counters_include_verification():
    entry = _feed(verification_retry_count=2)
    assert entry.retry_counters()["verification"] == 2


def test_negative_counter_is_rejected():
    with pytest.raises(ValidationError):
        _report(submit_retry_count=-1)


def test_lease_claimability():
    now = utc_now()
    entry = _report(lease_owner="a", lease_expires=now + timedelta(minutes=5))
    assert entry.is_claimable_by("a", now)
    assert not entry.is_claimable_by("b", now)
    assert entry.is_claimable_by("b", now + timedelta(minutes=6))
    entry.release_lease()
    assert entry.is_claimable_by("b", now)


def test_entry_adapter_dispatches_on_kind():
    feed = _feed(submission_id="sub-1", state=EntryState.submitted)
    loaded = entry_adapter.validate_python(feed.model_dump())
    assert isinstance(loaded, FeedEntry)
    assert loaded.remote_id == "sub-1"

    report = entry_adapter.validate_json(_report().model_dump_json())
    assert isinstance(report, ReportEntry)


def test_describe_names_kind_region_and_type():
    entry = _report(job_type="inventory")
    assert entry.describe() == "[kind:'report', region:'europe', type:'inventory']"
