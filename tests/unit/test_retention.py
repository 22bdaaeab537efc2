from datetime import UTC, datetime, timedelta

import pytest

from omnicrm.jobs.domain import JobKind
from omnicrm.jobs.processors.retention import run_data_retention
from omnicrm.models.domain import RawEventRecord


def _raw_event(source_id: str, age_days: int, user_id: str = "user-1") -> RawEventRecord:
    return RawEventRecord(
        user_id=user_id,
        provider="gmail",
        source_id=source_id,
        payload={},
        occurred_at=datetime.now(UTC) - timedelta(days=age_days),
    )


@pytest.fixture
def aged_data(job_store, crm_store):
    crm_store.raw_events.extend([_raw_event("old", 800), _raw_event("fresh", 5)])
    job_store.add("user-1", "embed", status="done")
    job_store.add("user-1", "embed", status="queued")
    job_store.advance(timedelta(days=120).total_seconds())
    return job_store, crm_store


@pytest.mark.asyncio
async def test_deletes_expired_rows(aged_data, make_job):
    job_store, crm_store = aged_data

    result = await run_data_retention(make_job(JobKind.DATA_RETENTION, {}))

    assert result.counts == {"raw_events": 1, "jobs": 1}
    assert result.total_cleaned == 2
    assert [e.source_id for e in crm_store.raw_events] == ["fresh"]
    assert [row["status"] for row in job_store.rows.values()] == ["queued"]


@pytest.mark.asyncio
async def test_dry_run_counts_without_deleting(aged_data, make_job):
    job_store, crm_store = aged_data

    result = await run_data_retention(make_job(JobKind.DATA_RETENTION, {"dryRun": True}))

    assert result.counts == {"raw_events": 1, "jobs": 1}
    assert result.total_cleaned == 0
    assert len(crm_store.raw_events) == 2
    assert len(job_store.rows) == 2


@pytest.mark.asyncio
async def test_target_table_limits_sweep(aged_data, make_job):
    job_store, crm_store = aged_data

    result = await run_data_retention(make_job(JobKind.DATA_RETENTION, {"targetTable": "jobs"}))

    assert result.counts == {"jobs": 1}
    assert len(crm_store.raw_events) == 2


@pytest.mark.asyncio
async def test_older_than_days_overrides_defaults(aged_data, make_job):
    job_store, crm_store = aged_data

    result = await run_data_retention(
        make_job(JobKind.DATA_RETENTION, {"olderThanDays": 1, "targetTable": "raw_events"})
    )

    assert result.counts == {"raw_events": 2}
    assert crm_store.raw_events == []


@pytest.mark.asyncio
async def test_older_than_days_only_touches_own_rows(job_store, crm_store, make_job):
    crm_store.raw_events.extend([_raw_event("mine", 5), _raw_event("theirs", 5, user_id="user-2")])
    job_store.add("user-1", "embed", status="done")
    theirs = job_store.add("user-2", "embed", status="done")
    job_store.advance(timedelta(days=3).total_seconds())

    result = await run_data_retention(make_job(JobKind.DATA_RETENTION, {"olderThanDays": 1}))

    assert result.scope_user_id == "user-1"
    assert result.counts == {"raw_events": 1, "jobs": 1}
    assert [e.source_id for e in crm_store.raw_events] == ["theirs"]
    assert list(job_store.rows) == [theirs]


@pytest.mark.asyncio
async def test_policy_sweep_covers_all_users(job_store, crm_store, make_job):
    crm_store.raw_events.extend([_raw_event("mine", 800), _raw_event("theirs", 800, user_id="user-2")])

    result = await run_data_retention(make_job(JobKind.DATA_RETENTION, {"targetTable": "raw_events"}))

    assert result.scope_user_id is None
    assert result.counts == {"raw_events": 2}
