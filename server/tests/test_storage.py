"""Tests for the file-backed job store."""

import asyncio
import json

import pytest

from app.models.job import JobOption, JobRecord
from app.services.storage import JobStore

HOUR_MS = 60 * 60 * 1000


class FakeClock:
    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _record(job_id: str) -> JobRecord:
    return JobRecord(
        id=job_id,
        flags=64,
        result_url=f"https://cdn.example.com/{job_id}.png",
        options=[JobOption(label="V1", custom=f"MJ::JOB::variation::1::{job_id}")],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock) -> JobStore:
    return JobStore(tmp_path / "storage" / "data.json", max_entries=3, max_age_ms=24 * HOUR_MS, clock=clock)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_creates_missing_file(self, store: JobStore):
        await store.initialize()
        assert json.loads(store.path.read_text()) == {"messages": {}}

    @pytest.mark.asyncio
    async def test_resets_empty_file(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("   ")
        await store.initialize()
        assert json.loads(store.path.read_text()) == {"messages": {}}

    @pytest.mark.asyncio
    async def test_resets_corrupted_file(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        await store.initialize()
        assert json.loads(store.path.read_text()) == {"messages": {}}

    @pytest.mark.asyncio
    async def test_keeps_valid_file(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        document = {"messages": {"a": {"id": "a", "timestamp": 1}}}
        store.path.write_text(json.dumps(document))
        await store.initialize()
        assert json.loads(store.path.read_text()) == document


class TestGetAndPut:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store: JobStore):
        await store.initialize()
        assert await store.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_get_without_file_returns_none(self, store: JobStore):
        assert await store.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        await store.put("job-1", _record("job-1"))

        job = await store.get("job-1")
        assert job is not None
        assert job.id == "job-1"
        assert job.flags == 64
        assert job.option_labels == ["V1"]
        assert job.timestamp == clock.now

    @pytest.mark.asyncio
    async def test_put_overrides_caller_timestamp(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        record = _record("job-1").model_copy(update={"timestamp": 5})
        stored = await store.put("job-1", record)
        assert stored.timestamp == clock.now
        assert record.timestamp == 5

    @pytest.mark.asyncio
    async def test_put_replaces_whole_record(self, store: JobStore):
        await store.initialize()
        await store.put("job-1", _record("job-1"))
        await store.put("job-1", JobRecord(id="job-1"))

        job = await store.get("job-1")
        assert job is not None
        assert job.options == []
        assert job.result_url is None

    @pytest.mark.asyncio
    async def test_persisted_document_shape(self, store: JobStore):
        await store.initialize()
        await store.put("job-1", _record("job-1"))

        document = json.loads(store.path.read_text())
        stored = document["messages"]["job-1"]
        assert stored["resultUrl"] == "https://cdn.example.com/job-1.png"
        assert stored["options"] == [{"label": "V1", "custom": "MJ::JOB::variation::1::job-1"}]
        assert not store.path.with_name(store.path.name + ".tmp").exists()

    @pytest.mark.asyncio
    async def test_survives_restart(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        await store.put("job-1", _record("job-1"))
        await store.put("job-2", _record("job-2"))

        reopened = JobStore(store.path, max_entries=3, clock=clock)
        await reopened.initialize()
        assert await reopened.list_ids() == ["job-1", "job-2"]
        assert await reopened.get("job-2") == await store.get("job-2")

    @pytest.mark.asyncio
    async def test_reads_legacy_flat_document(self, store: JobStore, clock: FakeClock):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"old": {"id": "old", "timestamp": clock.now}}))
        job = await store.get("old")
        assert job is not None
        assert job.id == "old"

    @pytest.mark.asyncio
    async def test_put_drops_non_dict_entry(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"messages": {"bad": "oops"}}))

        await store.put("job-1", JobRecord(id="job-1"))

        assert await store.list_ids() == ["job-1"]
        assert await store.get("bad") is None

    @pytest.mark.asyncio
    async def test_non_numeric_timestamp_counts_as_fresh(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"messages": {"odd": {"id": "odd", "timestamp": "yesterday"}}}))

        await store.put("job-1", JobRecord(id="job-1"))

        assert await store.list_ids() == ["odd", "job-1"]

    @pytest.mark.asyncio
    async def test_get_invalid_record_returns_none(self, store: JobStore, clock: FakeClock):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"messages": {"bad": {"timestamp": clock.now}}}))

        assert await store.get("bad") is None

    @pytest.mark.asyncio
    async def test_corruption_after_start_reads_as_empty(self, store: JobStore):
        await store.initialize()
        await store.put("job-1", _record("job-1"))
        store.path.write_text("garbage")

        assert await store.get("job-1") is None
        assert json.loads(store.path.read_text()) == {"messages": {}}


class TestEviction:
    @pytest.mark.asyncio
    async def test_size_cap_drops_least_recently_inserted(self, store: JobStore):
        await store.initialize()
        # Ids chosen so insertion order differs from sort order
        for job_id in ["m", "z", "a", "k"]:
            await store.put(job_id, _record(job_id))

        assert await store.list_ids() == ["z", "a", "k"]
        assert await store.get("m") is None

    @pytest.mark.asyncio
    async def test_reinsert_moves_to_newest(self, store: JobStore):
        await store.initialize()
        for job_id in ["a", "b", "c"]:
            await store.put(job_id, _record(job_id))
        await store.put("a", _record("a"))
        await store.put("d", _record("d"))

        assert await store.list_ids() == ["c", "a", "d"]

    @pytest.mark.asyncio
    async def test_expired_entries_dropped_on_put(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        await store.put("old", _record("old"))
        clock.now += 25 * HOUR_MS
        await store.put("new", _record("new"))

        assert await store.list_ids() == ["new"]

    @pytest.mark.asyncio
    async def test_expired_entry_hidden_below_cap(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        await store.put("old", _record("old"))
        clock.now += 24 * HOUR_MS + 1

        assert await store.get("old") is None

    @pytest.mark.asyncio
    async def test_entry_at_age_limit_is_kept(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        await store.put("edge", _record("edge"))
        clock.now += 24 * HOUR_MS
        await store.put("new", _record("new"))

        assert await store.get("edge") is not None

    @pytest.mark.asyncio
    async def test_age_filter_runs_before_size_cap(self, store: JobStore, clock: FakeClock):
        await store.initialize()
        for job_id in ["a", "b", "c"]:
            await store.put(job_id, _record(job_id))
        clock.now += 25 * HOUR_MS
        await store.put("d", _record("d"))

        # Expired entries do not count toward the cap
        assert await store.list_ids() == ["d"]

    @pytest.mark.asyncio
    async def test_missing_timestamp_counts_as_fresh(self, store: JobStore):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"messages": {"legacy": {"id": "legacy"}}}))
        await store.put("job-1", _record("job-1"))

        assert await store.list_ids() == ["legacy", "job-1"]


class TestConcurrentWrites:
    @pytest.mark.asyncio
    async def test_concurrent_puts_keep_every_update(self, tmp_path):
        store = JobStore(tmp_path / "data.json", max_entries=100)
        await store.initialize()

        await asyncio.gather(*(store.put(f"job-{i}", _record(f"job-{i}")) for i in range(20)))

        assert len(await store.list_ids()) == 20
