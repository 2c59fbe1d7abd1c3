import asyncio
import json

import httpx
import pytest

from storyverse.errors import JobNotFound
from storyverse.models import FinalUrls, JobStatus, new_job
from storyverse.store import INDEX_KEY, FileJobStore, KVStorage


@pytest.mark.asyncio
async def test_round_trip_survives_reload(tmp_path):
    path = str(tmp_path / "jobs.json")
    store = FileJobStore(path)
    job = new_job(story_title="Beach Day")
    assert job.is_draft and job.status == JobStatus.Idle
    await store.put(job)

    reloaded = await FileJobStore(path).get(job.id)
    assert reloaded == job


@pytest.mark.asyncio
async def test_get_returns_copies(store):
    job = new_job()
    await store.put(job)
    copy = await store.get(job.id)
    copy.story_title = "changed outside the store"
    assert (await store.get(job.id)).story_title == ""


@pytest.mark.asyncio
async def test_list_in_creation_order(store):
    first, second = new_job(created_at=1.0), new_job(created_at=2.0)
    await store.put(second)
    await store.put(first)
    assert [j.id for j in await store.list()] == [first.id, second.id]


@pytest.mark.asyncio
async def test_concurrent_updates_on_distinct_jobs_both_land(store):
    a, b = new_job(), new_job()
    await store.put(a)
    await store.put(b)

    async def bump(job_id, progress):
        for p in range(0, progress + 1, 5):
            def mutate(job, p=p):
                job.progress = p
            await store.update(job_id, mutate)
            await asyncio.sleep(0)

    await asyncio.gather(bump(a.id, 40), bump(b.id, 70))
    assert (await store.get(a.id)).progress == 40
    assert (await store.get(b.id)).progress == 70


@pytest.mark.asyncio
async def test_update_rejects_invalid_values(store):
    job = new_job()
    await store.put(job)

    def mutate(job):
        job.progress = 150

    with pytest.raises(ValueError):
        await store.update(job.id, mutate)
    assert (await store.get(job.id)).progress == 0


@pytest.mark.asyncio
async def test_update_missing_job(store):
    with pytest.raises(JobNotFound):
        await store.update("job-missing", lambda job: None)


@pytest.mark.asyncio
async def test_delete(store):
    job = new_job()
    await store.put(job)
    assert await store.delete(job.id)
    assert not await store.delete(job.id)
    assert await store.get(job.id) is None


def test_unreadable_file_is_treated_as_empty(tmp_path):
    path = tmp_path / "jobs.json"
    path.write_text("{not json")
    assert FileJobStore(str(path))._jobs == {}


class FakeKV:
    def __init__(self):
        self.data = {}
        self.commands = []

    def __call__(self, request: httpx.Request):
        assert request.headers["Authorization"] == "Bearer secret"
        command = request.url.path.rsplit("/", 1)[-1]
        args = json.loads(request.content)
        self.commands.append(command)
        if command == "get":
            return httpx.Response(200, json={"result": self.data.get(args[0])})
        if command == "set":
            self.data[args[0]] = args[1]
            return httpx.Response(200, json={"result": "OK"})
        if command == "del":
            return httpx.Response(200, json={"result": 1 if self.data.pop(args[0], None) is not None else 0})
        return httpx.Response(400, json={"error": f"unknown command {command}"})


@pytest.mark.asyncio
async def test_kv_store_round_trip():
    kv = FakeKV()
    store = KVStorage("https://kv.example.test", "secret", transport=httpx.MockTransport(kv))
    job = new_job(story_title="Stargazer Trip")
    await store.put(job)

    assert json.loads(kv.data[INDEX_KEY]) == [job.id]
    assert await store.get(job.id) == job

    def finish(job):
        job.transition(JobStatus.InProgress)
        job.transition(JobStatus.Completed)
        job.final_urls = FinalUrls(film="f", trailer="t", captions="c", poster="p", script="s")

    updated = await store.update(job.id, finish)
    assert updated.status == JobStatus.Completed
    assert [j.id for j in await store.list()] == [job.id]

    assert await store.delete(job.id)
    assert await store.get(job.id) is None
    assert json.loads(kv.data[INDEX_KEY]) == []


@pytest.mark.asyncio
async def test_kv_store_propagates_failures():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "down"}))
    store = KVStorage("https://kv.example.test", "secret", transport=transport)
    with pytest.raises(httpx.HTTPStatusError):
        await store.get("job-1")
