import logging
import os
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

import httpx
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import ALLOWED_ORIGINS, MEDIA_DIR, has_all_keys, missing_keys
from .ai_client import AIClient
from .backoff import BackoffExecutor
from .drafts import DraftEditor
from .errors import (
    AssetUnavailable, CharacterNotFound, ConfigurationError, ContractViolation, InvalidTransition,
    JobNotFound, RenderInProgress, StoryverseError, WizardError,
)
from .generation import StoryStudio
from .media import MEDIA_ROUTE, job_dir, public_url
from .merge_client import RemoteMergeClient
from .models import Character, GenerationJob, JobPatch, Step, Story, World, new_id
from .orchestrator import RenderHandle, RenderOrchestrator
from .scenes import SceneDescriptionBatcher, SceneVideoGenerator
from .store import get_store

logger = logging.getLogger(__name__)

PROXY_DIR = "proxy"

_ERROR_STATUS = [
    (JobNotFound, 404),
    (CharacterNotFound, 404),
    (RenderInProgress, 409),
    (InvalidTransition, 409),
    (WizardError, 400),
    (ConfigurationError, 500),
    (ContractViolation, 502),
    (AssetUnavailable, 502),
]


def _status_for(exc: StoryverseError) -> int:
    for cls, code in _ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


class StepRequest(BaseModel):
    step: Step


class StoryPromptRequest(BaseModel):
    prompt: str = Field(min_length=1)


class CaptionResyncRequest(BaseModel):
    strategy: Optional[Literal["ai", "heuristic"]] = None


class DescribeBatchRequest(BaseModel):
    prompts: List[str] = Field(min_length=1)


class SceneVideoRequest(BaseModel):
    description: str = Field(min_length=1)
    resolution: str = "1080p"
    aspect_ratio: str = "16:9"


class StoryGenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    characters: List[Character] = Field(default_factory=list)


class StoryExpandRequest(BaseModel):
    story: Story
    characters: List[Character] = Field(default_factory=list)


class ScriptCaptionsRequest(BaseModel):
    script: str
    strategy: Literal["ai", "heuristic"] = "ai"


def render_status(job: GenerationJob, handle: Optional[RenderHandle]) -> dict:
    return {
        "job_id": job.id,
        "status": job.status,
        "progress": job.progress,
        "message": job.message,
        "in_flight": handle is not None and not handle.done,
        "last_throttle": handle.last_throttle if handle else None,
        "final_urls": job.final_urls,
        "warnings": job.warnings,
    }


def create_app(store=None, ai=None, merge_client=None, media_root: str = None, sleep=None) -> FastAPI:
    store = store or get_store()
    ai = ai or AIClient()
    merge_client = merge_client or RemoteMergeClient()
    media_root = media_root or MEDIA_DIR
    os.makedirs(media_root, exist_ok=True)

    orchestrator = RenderOrchestrator(store, ai, merge_client, media_root=media_root, sleep=sleep)
    editor = DraftEditor(store, media_root)
    backoff = BackoffExecutor(sleep=sleep)
    scene_generator = SceneVideoGenerator(ai, backoff, sleep=sleep)
    studio = StoryStudio(ai, backoff, scene_generator, media_root)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        has_all_keys()
        await orchestrator.recover_interrupted()
        yield

    app = FastAPI(title="StoryVerse Backend", lifespan=lifespan)
    app.state.store = store
    app.state.editor = editor
    app.state.orchestrator = orchestrator
    app.state.studio = studio

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.mount(MEDIA_ROUTE, StaticFiles(directory=media_root), name="media")

    @app.exception_handler(StoryverseError)
    async def storyverse_error(request: Request, exc: StoryverseError):
        status = _status_for(exc)
        detail = f"Server configuration error: {exc}" if isinstance(exc, ConfigurationError) else str(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {detail}")
        return JSONResponse(status_code=status, content={"detail": detail})

    @app.exception_handler(httpx.HTTPError)
    async def upstream_error(request: Request, exc: httpx.HTTPError):
        logger.error(f"{request.method} {request.url.path} upstream failure: {exc}")
        return JSONResponse(status_code=502, content={"detail": f"Upstream service error: {exc}"})

    async def require_job(job_id: str) -> GenerationJob:
        job = await store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @app.get("/health")
    def health():
        keys_ok = has_all_keys()
        logger.info(f"Health check: API keys present = {keys_ok}")
        return {"ok": True, "has_keys": keys_ok, "missing": missing_keys()}

    # --- jobs & drafts ----------------------------------------------------------

    @app.get("/v1/jobs")
    async def list_jobs():
        return await store.list()

    @app.post("/v1/jobs", status_code=201)
    async def create_job():
        return await editor.start_creation()

    @app.get("/v1/editor")
    async def editor_state():
        return {"active_job_id": editor.active_job_id, "job": await editor.active_job()}

    @app.get("/v1/jobs/{job_id}")
    async def get_job(job_id: str):
        return await require_job(job_id)

    @app.patch("/v1/jobs/{job_id}")
    async def patch_job(job_id: str, patch: JobPatch):
        return await editor.update_active(job_id, patch)

    @app.delete("/v1/jobs/{job_id}")
    async def delete_job(job_id: str):
        handle = orchestrator.handle(job_id)
        if handle and handle.cancel():
            await handle.wait()
        if not await editor.delete(job_id):
            raise HTTPException(404, "job not found")
        return {"deleted": True}

    @app.post("/v1/jobs/{job_id}:open")
    async def open_job(job_id: str):
        return await editor.open(job_id)

    @app.post("/v1/jobs/{job_id}:close")
    async def close_job(job_id: str):
        job = await require_job(job_id)
        if editor.active_job_id == job_id:
            editor.close()
        return job

    @app.post("/v1/jobs/{job_id}:duplicate", status_code=201)
    async def duplicate_job(job_id: str):
        return await editor.duplicate(job_id)

    @app.post("/v1/jobs/{job_id}:reset")
    async def reset_job(job_id: str):
        if editor.active_job_id != job_id:
            raise WizardError(f"Job {job_id} is not open in the editor")
        return await editor.reset_active()

    @app.post("/v1/jobs/{job_id}:finish")
    async def finish_job(job_id: str):
        return await editor.finish(job_id)

    @app.put("/v1/jobs/{job_id}/step")
    async def set_step(job_id: str, req: StepRequest):
        return await editor.go_to_step(job_id, req.step)

    # --- characters -------------------------------------------------------------

    @app.post("/v1/jobs/{job_id}/characters", status_code=201)
    async def add_character(job_id: str):
        return await editor.add_character(job_id)

    @app.delete("/v1/jobs/{job_id}/characters/{character_id}")
    async def remove_character(job_id: str, character_id: str):
        return await editor.remove_character(job_id, character_id)

    @app.post("/v1/jobs/{job_id}/characters/{character_id}/photos", status_code=201)
    async def upload_photo(job_id: str, character_id: str, photo: UploadFile = File(...)):
        data = await photo.read()
        if not data:
            raise HTTPException(400, "empty upload")
        return await editor.add_photo(job_id, character_id, data)

    @app.post("/v1/jobs/{job_id}/characters/{character_id}/avatar")
    async def generate_avatar(job_id: str, character_id: str):
        job = await require_job(job_id)
        url = await studio.avatar(job_id, job.character(character_id))
        return await editor.set_avatar(job_id, character_id, url)

    # --- world & story ----------------------------------------------------------

    @app.post("/v1/jobs/{job_id}/world/preview")
    async def world_preview(job_id: str):
        job = await require_job(job_id)
        url = await studio.world_preview(job_id, job.world)
        return await editor.set_world_preview(job_id, url)

    @app.post("/v1/jobs/{job_id}/story:generate")
    async def generate_story(job_id: str, req: StoryPromptRequest):
        job = await require_job(job_id)
        idea = await studio.story_from_prompt(req.prompt, job.characters)
        return await editor.apply_story_idea(job_id, idea)

    @app.post("/v1/jobs/{job_id}/story:expand")
    async def expand_story(job_id: str):
        job = await require_job(job_id)
        script = await studio.expand_story(job.story, job.characters)
        return await editor.set_expanded_script(job_id, script)

    # --- render -----------------------------------------------------------------

    @app.post("/v1/jobs/{job_id}/render", status_code=202)
    async def start_render(job_id: str):
        handle = await orchestrator.ensure_started(job_id)
        return render_status(await require_job(job_id), handle)

    @app.post("/v1/jobs/{job_id}/render:retry", status_code=202)
    async def retry_render(job_id: str):
        handle = await orchestrator.retry(job_id)
        return render_status(await require_job(job_id), handle)

    @app.post("/v1/jobs/{job_id}/render:cancel")
    async def cancel_render(job_id: str):
        handle = orchestrator.handle(job_id)
        if handle is None or not handle.cancel():
            raise HTTPException(409, "no render in progress")
        await handle.wait()
        return render_status(await require_job(job_id), handle)

    @app.get("/v1/jobs/{job_id}/render")
    async def get_render(job_id: str):
        job = await require_job(job_id)
        return render_status(job, orchestrator.handle(job_id))

    @app.post("/v1/jobs/{job_id}/captions:resync")
    async def resync_captions(job_id: str, req: Optional[CaptionResyncRequest] = None):
        return await orchestrator.resync_captions(job_id, req.strategy if req else None)

    # --- AI proxy ---------------------------------------------------------------

    @app.post("/ai/describe-image-batch")
    async def proxy_describe(req: DescribeBatchRequest):
        descriptions = await SceneDescriptionBatcher(ai, backoff).describe(req.prompts)
        return {"descriptions": descriptions}

    @app.post("/ai/generate-scene-video")
    async def proxy_scene_video(req: SceneVideoRequest):
        dest = os.path.join(job_dir(PROXY_DIR, media_root), f"{new_id('scene')}.mp4")
        clip = await scene_generator.generate(req.description, dest, req.resolution, req.aspect_ratio)
        return {"url": public_url(clip.ref, media_root), "fallback": clip.fallback}

    @app.post("/ai/generate-avatar")
    async def proxy_avatar(character: Character):
        return {"url": await studio.avatar(PROXY_DIR, character)}

    @app.post("/ai/generate-world-preview")
    async def proxy_world_preview(world: World):
        return {"url": await studio.world_preview(PROXY_DIR, world)}

    @app.post("/ai/story/generate")
    async def proxy_story_generate(req: StoryGenerateRequest):
        return await studio.story_from_prompt(req.prompt, req.characters)

    @app.post("/ai/story/expand")
    async def proxy_story_expand(req: StoryExpandRequest):
        return {"script": await studio.expand_story(req.story, req.characters)}

    @app.post("/ai/resync-captions")
    async def proxy_resync_captions(req: ScriptCaptionsRequest):
        synchronizer = orchestrator.caption_synchronizer(backoff, req.strategy)
        return {"captions": await synchronizer.sync(req.script)}

    return app


app = create_app()
