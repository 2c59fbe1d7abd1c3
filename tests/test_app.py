import io

import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

from conftest import FakeAI, FakeMergeClient
from storyverse.ai_client import AIClient
from storyverse.app import create_app
from storyverse.models import JobStatus


@pytest.fixture
def app(store, media_root, clock):
    return create_app(store=store, ai=FakeAI(clock=clock), merge_client=FakeMergeClient(),
                      media_root=media_root, sleep=clock.sleep)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _png():
    buf = io.BytesIO()
    Image.new("RGB", (32, 32), (0, 128, 255)).save(buf, format="PNG")
    return buf.getvalue()


async def _named_draft(client):
    job = (await client.post("/v1/jobs")).json()
    job["characters"][0]["name"] = "Mia"
    resp = await client.patch(f"/v1/jobs/{job['id']}", json={"characters": job["characters"]})
    assert resp.status_code == 200
    return resp.json()


async def _ready_to_render(client):
    job = await _named_draft(client)
    job_id = job["id"]
    resp = await client.post(f"/v1/jobs/{job_id}/story:generate", json={"prompt": "a rainy day fort"})
    assert resp.status_code == 200
    resp = await client.post(f"/v1/jobs/{job_id}/story:expand")
    assert resp.status_code == 200
    return resp.json()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert isinstance(body["missing"], list)


@pytest.mark.asyncio
async def test_create_list_and_editor_state(client):
    resp = await client.post("/v1/jobs")
    assert resp.status_code == 201
    job = resp.json()
    assert job["status"] == JobStatus.Idle
    assert job["is_draft"] is True

    listed = (await client.get("/v1/jobs")).json()
    assert [j["id"] for j in listed] == [job["id"]]
    editor = (await client.get("/v1/editor")).json()
    assert editor["active_job_id"] == job["id"]


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    resp = await client.get("/v1/jobs/job-missing")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "job job-missing not found"


@pytest.mark.asyncio
async def test_editing_inactive_job_is_rejected(client):
    first = (await client.post("/v1/jobs")).json()
    await client.post("/v1/jobs")
    resp = await client.patch(f"/v1/jobs/{first['id']}", json={"story_title": "x"})
    assert resp.status_code == 400

    assert (await client.post(f"/v1/jobs/{first['id']}:open")).status_code == 200
    resp = await client.patch(f"/v1/jobs/{first['id']}", json={"story_title": "x"})
    assert resp.json()["story_title"] == "x"


@pytest.mark.asyncio
async def test_step_navigation(client):
    job = (await client.post("/v1/jobs")).json()
    resp = await client.put(f"/v1/jobs/{job['id']}/step", json={"step": 2})
    assert resp.status_code == 400

    job = await _named_draft(client)
    resp = await client.put(f"/v1/jobs/{job['id']}/step", json={"step": 2})
    assert resp.status_code == 200
    assert resp.json()["current_step"] == 2


@pytest.mark.asyncio
async def test_characters_and_photos(client):
    job = (await client.post("/v1/jobs")).json()
    job_id = job["id"]
    added = await client.post(f"/v1/jobs/{job_id}/characters")
    assert added.status_code == 201
    cid = added.json()["id"]

    resp = await client.post(f"/v1/jobs/{job_id}/characters/{cid}/photos",
                             files={"photo": ("kid.png", _png(), "image/png")})
    assert resp.status_code == 201
    photo_url = resp.json()["photos"][0]
    assert photo_url == f"/media/{job_id}/photos/{cid}_1.png"
    served = await client.get(photo_url)
    assert served.status_code == 200
    assert served.content.startswith(b"\x89PNG")

    resp = await client.post(f"/v1/jobs/{job_id}/characters/{cid}/avatar")
    assert resp.status_code == 200
    avatar = next(c for c in resp.json()["characters"] if c["id"] == cid)["avatar_url"]
    assert avatar == f"/media/{job_id}/avatar_{cid}.png"

    assert (await client.delete(f"/v1/jobs/{job_id}/characters/{cid}")).status_code == 200
    assert (await client.delete(f"/v1/jobs/{job_id}/characters/{cid}")).status_code == 404


@pytest.mark.asyncio
async def test_avatar_without_photos_is_rejected(client):
    job = (await client.post("/v1/jobs")).json()
    cid = job["characters"][0]["id"]
    resp = await client.post(f"/v1/jobs/{job['id']}/characters/{cid}/avatar")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_world_preview_and_story_generation(client):
    job = await _named_draft(client)
    job_id = job["id"]
    resp = await client.post(f"/v1/jobs/{job_id}/world/preview")
    assert resp.json()["world"]["preview_url"] == f"/media/{job_id}/world_preview.mp4"

    job = await _ready_to_render(client)
    assert job["story"]["title"] == "The Pillow Fort"
    assert job["story"]["scenes"] == ["Rain starts", "Building the fort", "Story time inside"]
    assert job["story"]["expanded_script"].startswith("NARRATOR:")


@pytest.mark.asyncio
async def test_render_flow(client, app):
    job = await _ready_to_render(client)
    job_id = job["id"]

    resp = await client.post(f"/v1/jobs/{job_id}/render")
    assert resp.status_code == 202
    assert resp.json()["status"] == JobStatus.InProgress

    handle = app.state.orchestrator.handle(job_id)
    if handle is not None:
        await handle.wait()

    status = (await client.get(f"/v1/jobs/{job_id}/render")).json()
    assert status["status"] == JobStatus.Completed
    assert status["progress"] == 100
    assert status["final_urls"]["film"].startswith("http://worker.test/videos/")
    assert status["in_flight"] is False

    # a reload of a finished job does not start another render
    again = await client.post(f"/v1/jobs/{job_id}/render")
    assert again.json()["status"] == JobStatus.Completed

    resp = await client.post(f"/v1/jobs/{job_id}/captions:resync", json={"strategy": "heuristic"})
    assert resp.status_code == 200
    assert resp.json()["final_urls"]["captions"] == f"/media/{job_id}/captions.vtt"

    finished = await client.post(f"/v1/jobs/{job_id}:finish")
    assert finished.json()["is_draft"] is False

    copy = await client.post(f"/v1/jobs/{job_id}:duplicate")
    assert copy.status_code == 201
    assert copy.json()["status"] == JobStatus.Idle
    assert copy.json()["final_urls"] is None


@pytest.mark.asyncio
async def test_retry_needs_failed_job_and_cancel_needs_render(client):
    job = await _ready_to_render(client)
    assert (await client.post(f"/v1/jobs/{job['id']}/render:retry")).status_code == 409
    assert (await client.post(f"/v1/jobs/{job['id']}/render:cancel")).status_code == 409


@pytest.mark.asyncio
async def test_render_without_script_is_rejected(client):
    job = await _named_draft(client)
    resp = await client.post(f"/v1/jobs/{job['id']}/render")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_delete_job(client):
    job = (await client.post("/v1/jobs")).json()
    assert (await client.delete(f"/v1/jobs/{job['id']}")).json() == {"deleted": True}
    assert (await client.delete(f"/v1/jobs/{job['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_proxy_endpoints(client):
    resp = await client.post("/ai/describe-image-batch", json={"prompts": ["a", "b"]})
    assert resp.json() == {"descriptions": ["Visual description 1", "Visual description 2"]}

    resp = await client.post("/ai/generate-scene-video", json={"description": "a fox"})
    body = resp.json()
    assert body["fallback"] is False
    assert body["url"].startswith("/media/proxy/scene")

    resp = await client.post("/ai/resync-captions", json={"script": "Alice: Hello", "strategy": "heuristic"})
    assert resp.json()["captions"].startswith("WEBVTT")

    resp = await client.post("/ai/resync-captions", json={"script": "Alice: Hello", "strategy": "guess"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_proxy_reports_missing_credentials(store, media_root, clock):
    app = create_app(store=store, ai=AIClient(openai_api_key="", replicate_token=""),
                     merge_client=FakeMergeClient(), media_root=media_root, sleep=clock.sleep)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.post("/ai/story/generate", json={"prompt": "a beach day"})
        assert resp.status_code == 500
        assert resp.json()["detail"].startswith("Server configuration error")

        resp = await client.post("/ai/generate-scene-video", json={"description": "a fox"})
        assert resp.status_code == 500
        assert "REPLICATE_API_TOKEN" in resp.json()["detail"]
