"""Contract tests run against both EntryStorePort adapters."""

from datetime import timedelta

import pytest

from batchpoll.adapters.entry_store_inmemory import InMemoryEntryStore
from batchpoll.adapters.entry_store_sqlalchemy import SqlAlchemyEntryStore
from batchpoll.core.exceptions import StaleEntryError
from batchpoll.core.interfaces.entry_store import EntryQuery
from batchpoll.core.models.callback import CallbackDescriptor
from batchpoll.core.models.entry import EntryState, FeedEntry, JobKind, Region, ReportEntry, utc_now


def _report(merchant_id="m-1", **kwargs) -> ReportEntry:
    return ReportEntry(
        region=Region.europe,
        merchant_id=merchant_id,
        request_data='{"report_type": "r"}',
        job_type="r",
        callback=CallbackDescriptor(handler_name="collect", argument_json='{"a": 1}'),
        **kwargs,
    )


def _feed(**kwargs) -> FeedEntry:
    return FeedEntry(
        region=Region.japan,
        merchant_id="m-1",
        request_data='{"feed_type": "f", "feed_content": "x"}',
        callback=CallbackDescriptor(handler_name="collect"),
        **kwargs,
    )


@pytest.fixture(params=["memory", "sqlalchemy"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryEntryStore()
        return
    store = SqlAlchemyEntryStore(f"sqlite+pysqlite:///{tmp_path / 'entries.db'}")
    yield store
    store.close()


@pytest.mark.asyncio
async def test_create_assigns_sequence_in_creation_order(any_store):
    first = await any_store.create(_report())
    second = await any_store.create(_feed())
    await any_store.save_changes()

    assert first.sequence < second.sequence
    assert [e.id for e in await any_store.query(EntryQuery())] == [first.id, second.id]
    assert await any_store.get("missing") is None


@pytest.mark.asyncio
async def test_staged_writes_are_visible_then_discarded(any_store):
    entry = await any_store.create(_report())
    assert await any_store.get(entry.id) is not None

    await any_store.discard_changes()

    assert await any_store.get(entry.id) is None


@pytest.mark.asyncio
async def test_update_bumps_version_and_rejects_stale_writes(any_store):
    entry = await any_store.create(_report())
    await any_store.save_changes()

    entry.submit_retry_count = 1
    updated = await any_store.update(entry)
    await any_store.save_changes()
    assert updated.version == entry.version + 1
    assert updated.updated is not None

    entry.submit_retry_count = 2  # still based on the old version
    with pytest.raises(StaleEntryError) as excinfo:
        await any_store.update(entry)
    assert excinfo.value.actual_version == updated.version
    assert (await any_store.get(entry.id)).submit_retry_count == 1


@pytest.mark.asyncio
async def test_update_of_deleted_entry_is_stale(any_store):
    entry = await any_store.create(_report())
    await any_store.save_changes()
    await any_store.delete(entry.id)
    await any_store.save_changes()

    with pytest.raises(StaleEntryError):
        await any_store.update(entry)


@pytest.mark.asyncio
async def test_delete_is_committed_by_save(any_store):
    entry = await any_store.create(_report())
    await any_store.save_changes()

    await any_store.delete(entry.id)
    await any_store.discard_changes()
    assert await any_store.get(entry.id) is not None

    await any_store.delete(entry.id)
    await any_store.save_changes()
    assert await any_store.get(entry.id) is None


@pytest.mark.asyncio
async def test_query_filters(any_store):
    report = await any_store.create(_report())
    other_merchant = await any_store.create(_report(merchant_id="m-2"))
    feed = await any_store.create(_feed(submission_id="s-1", state=EntryState.submitted))
    await any_store.save_changes()

    reports = await any_store.query(EntryQuery(kind=JobKind.report, merchant_id="m-1"))
    assert [e.id for e in reports] == [report.id]

    submitted = await any_store.query(EntryQuery(states=frozenset({EntryState.submitted})))
    assert [e.id for e in submitted] == [feed.id]

    japan = await any_store.query(EntryQuery(region=Region.japan))
    assert [e.id for e in japan] == [feed.id]
    assert other_merchant.id in {e.id for e in await any_store.query(EntryQuery())}


@pytest.mark.asyncio
async def test_claim_is_a_compare_and_set(any_store):
    entry = await any_store.create(_report())
    await any_store.save_changes()
    expires = utc_now() + timedelta(minutes=10)

    claimed = await any_store.claim(entry.id, "a", entry.version, expires)
    assert claimed.lease_owner == "a"
    assert claimed.version == entry.version + 1

    # stale version and foreign lease both lose
    assert await any_store.claim(entry.id, "b", entry.version, expires) is None
    assert await any_store.claim(entry.id, "b", claimed.version, expires) is None
    # the owner may renew its own lease
    renewed = await any_store.claim(entry.id, "a", claimed.version, expires)
    assert renewed.version == claimed.version + 1


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over(any_store):
    entry = await any_store.create(_report())
    await any_store.save_changes()
    claimed = await any_store.claim(entry.id, "a", entry.version, utc_now() - timedelta(seconds=1))

    taken = await any_store.claim(entry.id, "b", claimed.version, utc_now() + timedelta(minutes=1))

    assert taken.lease_owner == "b"


@pytest.mark.asyncio
async def test_claim_of_missing_entry(any_store):
    assert await any_store.claim("missing", "a", 0, utc_now()) is None


@pytest.mark.asyncio
async def test_all_fields_survive_a_round_trip(any_store):
    report = _report(
        request_id="req-1",
        generated_id="gen-1",
        state=EntryState.ready_for_callback,
        content=b"\x00\x01binary",
    )
    report.has_errors = True
    report.cancelled_remote_ids = ["old-1", "old-2"]
    report.invoke_retry_count = 2
    report.last_invoke = utc_now()
    feed = _feed(submission_id="s-1", state=EntryState.ready_for_download, verification_retry_count=1)
    feed.content_digest = "XUFAKrxLKna5cZ2REBfFkg=="
    await any_store.create(report)
    await any_store.create(feed)
    await any_store.save_changes()

    loaded_report = await any_store.get(report.id)
    loaded_feed = await any_store.get(feed.id)

    assert isinstance(loaded_report, ReportEntry)
    assert loaded_report.content == b"\x00\x01binary"
    assert loaded_report.generated_id == "gen-1"
    assert loaded_report.cancelled_remote_ids == ["old-1", "old-2"]
    assert loaded_report.callback == report.callback
    assert loaded_report.has_errors is True
    assert loaded_report.last_invoke == report.last_invoke
    assert loaded_report.created.tzinfo is not None
    assert isinstance(loaded_feed, FeedEntry)
    assert loaded_feed.submission_id == "s-1"
    assert loaded_feed.verification_retry_count == 1
    assert loaded_feed.content_digest == "XUFAKrxLKna5cZ2REBfFkg=="


@pytest.mark.asyncio
async def test_sqlalchemy_store_survives_restart(tmp_path):
    url = f"sqlite+pysqlite:///{tmp_path / 'restart.db'}"
    first = SqlAlchemyEntryStore(url)
    entry = await first.create(_report())
    await first.create(_report())
    await first.save_changes()
    staged = await first.create(_report())  # never saved, lost on close
    first.close()

    second = SqlAlchemyEntryStore(url)
    try:
        ids = [e.id for e in await second.query(EntryQuery())]
        assert entry.id in ids
        assert staged.id not in ids
        assert len(ids) == 2
    finally:
        second.close()


@pytest.mark.asyncio
async def test_inmemory_dump_dir_mirrors_committed_entries(tmp_path):
    store = InMemoryEntryStore(dump_dir=str(tmp_path))
    entry = await store.create(_report())
    assert not (tmp_path / f"{entry.id}.json").exists()

    await store.save_changes()
    assert (tmp_path / f"{entry.id}.json").exists()

    await store.delete(entry.id)
    await store.save_changes()
    assert not (tmp_path / f"{entry.id}.json").exists()
