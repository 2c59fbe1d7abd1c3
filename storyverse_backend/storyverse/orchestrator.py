"""
Render orchestration for a single job.

A render walks a langgraph StateGraph (describe -> scenes -> merge -> ancillary)
and writes every checkpoint straight to the job store. Each attempt owns its own
BackoffExecutor so throttle events reach only that job's observers, and the
RenderRegistry keeps at most one attempt per job id in flight.
"""
import asyncio
import logging
import os
from typing import Callable, Dict, List, Optional, Set

from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field

from .assets import materialize
from .backoff import BackoffExecutor
from .captions import CaptionSynchronizer
from .errors import InvalidTransition, JobNotFound, RenderInProgress, WizardError
from .media import job_dir, public_url, write_text
from .models import FinalUrls, GenerationJob, JobStatus, RenderUpdate, ThrottleEvent
from .prompts import POSTER_PROMPT_TEMPLATE, SHORT_PROMPT_TEMPLATE, TRAILER_PROMPT_TEMPLATE
from .scenes import SceneDescriptionBatcher, SceneVideoGenerator, build_scene_prompts
from .settings import CAPTION_STRATEGY

logger = logging.getLogger(__name__)

DESCRIBING = "describing"
GENERATING_SCENES = "generating_scenes"
MERGING = "merging"
GENERATING_ANCILLARY = "generating_ancillary"
COMPLETED = "completed"
FAILED = "failed"

SCENES_START = 10
SCENES_END = 65


def scene_progress(index: int, total: int) -> int:
    """Progress before generating scene ``index`` (0-based) of ``total``."""
    return SCENES_START + (SCENES_END - SCENES_START) * index // total


class RenderState(BaseModel):
    job_id: str
    descriptions: List[str] = Field(default_factory=list)
    scene_refs: List[str] = Field(default_factory=list)
    film_url: str = ""
    final_urls: Optional[FinalUrls] = None
    warnings: List[str] = Field(default_factory=list)


RenderListener = Callable[[object], None]


class RenderHandle:
    """Observer-side view of one render attempt.

    ``detach`` only stops delivering events; the render keeps running and still
    writes its final state to the store. ``cancel`` stops the render itself.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.last_throttle: Optional[ThrottleEvent] = None
        self.last_update: Optional[RenderUpdate] = None
        self.error: Optional[BaseException] = None
        self.detached = False
        self._listeners: List[RenderListener] = []
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()
        self._result: Optional[GenerationJob] = None

    def subscribe(self, listener: RenderListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def notify(self, event):
        if isinstance(event, ThrottleEvent):
            self.last_throttle = event
        elif isinstance(event, RenderUpdate):
            self.last_update = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Render listener failed for job {self.job_id}")

    def detach(self):
        self._listeners.clear()
        self.detached = True

    def cancel(self) -> bool:
        if self._task is None or self._task.done():
            return False
        self._task.cancel()
        return True

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> Optional[GenerationJob]:
        """Wait for the attempt to end and return the job as it was left in the store."""
        await self._done.wait()
        if self._task is None and self.error is not None:
            raise self.error
        return self._result

    def _finish(self, job: Optional[GenerationJob] = None, error: BaseException = None):
        self._result = job
        self.error = error
        self._done.set()


class RenderRegistry:
    """In-flight renders and the ids started during this process lifetime."""

    def __init__(self):
        self._in_flight: Dict[str, RenderHandle] = {}
        self._started: Set[str] = set()

    def claim(self, job_id: str, handle: RenderHandle) -> bool:
        # No await in here: check-and-set is atomic for the event loop
        if job_id in self._in_flight:
            return False
        self._in_flight[job_id] = handle
        self._started.add(job_id)
        return True

    def release(self, job_id: str, forget: bool = False):
        self._in_flight.pop(job_id, None)
        if forget:
            self._started.discard(job_id)

    def get(self, job_id: str) -> Optional[RenderHandle]:
        return self._in_flight.get(job_id)

    def is_in_flight(self, job_id: str) -> bool:
        return job_id in self._in_flight

    def was_started(self, job_id: str) -> bool:
        return job_id in self._started


class RenderPipeline:
    """One render attempt; its bound methods are the graph nodes."""

    def __init__(self, orchestrator: "RenderOrchestrator", job_id: str, handle: RenderHandle, backoff: BackoffExecutor):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.ai = orchestrator.ai
        self.job_id = job_id
        self.handle = handle
        self.backoff = backoff
        self.media_dir = job_dir(job_id, orchestrator.media_root)
        self.scene_generator = orchestrator.scene_generator(backoff)

    def build_graph(self):
        g = StateGraph(RenderState)
        g.add_node("describe", self.describe)
        g.add_node("scenes", self.scenes)
        g.add_node("merge", self.merge)
        g.add_node("ancillary", self.ancillary)
        g.set_entry_point("describe")
        g.add_edge("describe", "scenes")
        g.add_edge("scenes", "merge")
        g.add_edge("merge", "ancillary")
        g.add_edge("ancillary", END)
        return g.compile()

    async def _job(self) -> GenerationJob:
        job = await self.store.get(self.job_id)
        if job is None:
            raise JobNotFound(self.job_id)
        return job

    async def report(self, stage: str, progress: int, message: str):
        def mutate(job: GenerationJob):
            job.progress = max(job.progress, progress)
            job.message = message

        await self.store.update(self.job_id, mutate)
        self.handle.notify(RenderUpdate(stage=stage, progress=progress, message=message))

    def _public(self, ref: str) -> str:
        return public_url(ref, self.orchestrator.media_root)

    async def describe(self, state: RenderState) -> dict:
        job = await self._job()
        await self.report(DESCRIBING, 5, "Analyzing your story scenes...")
        prompts = build_scene_prompts(job)
        logger.info(f"Job {self.job_id}: describing {len(prompts)} scenes")
        descriptions = await SceneDescriptionBatcher(self.ai, self.backoff).describe(prompts)
        return {"descriptions": descriptions}

    async def scenes(self, state: RenderState) -> dict:
        total = len(state.descriptions)
        refs, warnings = [], []
        for i, description in enumerate(state.descriptions):
            await self.report(GENERATING_SCENES, scene_progress(i, total), f"Generating video for scene {i + 1} of {total}...")
            dest = os.path.join(self.media_dir, f"scene_{i + 1}.mp4")
            clip = await self.scene_generator.generate(description, dest, resolution="1080p", aspect_ratio="16:9")
            if clip.fallback:
                warnings.append(f"Scene {i + 1} uses stock footage because its video could not be generated.")
            refs.append(clip.ref)
            logger.info(f"Job {self.job_id}: scene {i + 1}/{total} ready ({'fallback' if clip.fallback else 'generated'})")
        await self.report(GENERATING_SCENES, 70, "All scenes generated.")
        return {"scene_refs": refs, "warnings": warnings}

    async def merge(self, state: RenderState) -> dict:
        await self.report(MERGING, 80, "Merging scenes into your film...")
        logger.info(f"Job {self.job_id}: merging {len(state.scene_refs)} segments")
        film_url = await self.backoff.run(self.orchestrator.merge_client.merge, state.scene_refs)
        logger.info(f"Job {self.job_id}: film merged at {film_url}")
        return {"film_url": film_url}

    async def ancillary(self, state: RenderState) -> dict:
        await self.report(GENERATING_ANCILLARY, 85, "Creating trailer, short, poster and captions...")
        job = await self._job()
        title = job.story.title or job.story_title or "Untitled"
        synopsis = job.story.synopsis
        warnings = list(state.warnings)

        trailer = await self.scene_generator.generate(
            TRAILER_PROMPT_TEMPLATE.format(title=title, synopsis=synopsis),
            os.path.join(self.media_dir, "trailer.mp4"), resolution="1080p", aspect_ratio="16:9",
        )
        short = await self.scene_generator.generate(
            SHORT_PROMPT_TEMPLATE.format(title=title, synopsis=synopsis),
            os.path.join(self.media_dir, "short_1.mp4"), resolution="1080p", aspect_ratio="9:16",
        )
        for name, clip in (("trailer", trailer), ("short", short)):
            if clip.fallback:
                warnings.append(f"The {name} uses stock footage because its video could not be generated.")

        poster_prompt = POSTER_PROMPT_TEMPLATE.format(
            title=title,
            style=job.world.style.value,
            synopsis=synopsis,
            characters=", ".join(c.name for c in job.characters if c.name) or "the family",
        )
        poster_asset = await self.backoff.run(self.ai.generate_image, poster_prompt, "2:3")
        poster_path = await self.backoff.run(
            materialize, poster_asset, os.path.join(self.media_dir, "poster.png"), self.orchestrator.transport,
        )

        script = job.story.expanded_script
        script_path = os.path.join(self.media_dir, "script.txt")
        write_text(script_path, script)

        captions = await self.orchestrator.caption_synchronizer(self.backoff).sync(script)
        captions_path = os.path.join(self.media_dir, "captions.vtt")
        write_text(captions_path, captions)

        poster_url = self._public(poster_path)
        final_urls = FinalUrls(
            film=state.film_url,
            trailer=self._public(trailer.ref),
            shorts=[self._public(short.ref)],
            captions=self._public(captions_path),
            poster=poster_url,
            thumbnails=[poster_url],
            script=self._public(script_path),
        )
        return {"final_urls": final_urls, "warnings": warnings}


class RenderOrchestrator:
    def __init__(self, store, ai, merge_client, media_root: str = None, caption_strategy: str = None,
                 spacing_s: float = None, allow_fallback: bool = None, sleep=None,
                 backoff_factory: Callable[[], BackoffExecutor] = None, transport=None,
                 registry: RenderRegistry = None):
        self.store = store
        self.ai = ai
        self.merge_client = merge_client
        self.media_root = media_root
        self.caption_strategy = caption_strategy or CAPTION_STRATEGY
        self.spacing_s = spacing_s
        self.allow_fallback = allow_fallback
        self.transport = transport
        self.registry = registry or RenderRegistry()
        self._sleep = sleep
        self._backoff_factory = backoff_factory or (lambda: BackoffExecutor(sleep=sleep))

    def scene_generator(self, backoff: BackoffExecutor) -> SceneVideoGenerator:
        return SceneVideoGenerator(
            self.ai, backoff, spacing_s=self.spacing_s, allow_fallback=self.allow_fallback,
            sleep=self._sleep, transport=self.transport,
        )

    def caption_synchronizer(self, backoff: BackoffExecutor, strategy: str = None) -> CaptionSynchronizer:
        return CaptionSynchronizer(self.ai, backoff, strategy=strategy or self.caption_strategy)

    async def _require(self, job_id: str) -> GenerationJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def _check_renderable(job: GenerationJob):
        if not all(scene.strip() for scene in job.story.scenes):
            raise WizardError("Every scene needs a description before rendering")
        if not job.story.expanded_script.strip():
            raise WizardError("Generate the full script before rendering")

    async def start(self, job_id: str, retry: bool = False) -> RenderHandle:
        handle = RenderHandle(job_id)
        first_start = not self.registry.was_started(job_id)
        if not self.registry.claim(job_id, handle):
            raise RenderInProgress(f"Job {job_id} is already rendering")
        try:
            job = await self._require(job_id)
            if retry and job.status != JobStatus.Failed:
                raise InvalidTransition(f"Only a failed job can be retried (job {job_id} is {job.status.name})")
            self._check_renderable(job)

            def begin(job: GenerationJob):
                job.transition(JobStatus.InProgress)
                job.progress = 0
                job.message = "Starting render..."
                job.final_urls = None
                job.trailer_url = None
                job.warnings = []

            await self.store.update(job_id, begin)
        except BaseException as e:
            # a rejected start never ran
            self.registry.release(job_id, forget=first_start)
            handle._finish(error=e)
            raise

        logger.info(f"Starting render for job {job_id}{' (retry)' if retry else ''}")
        handle._task = asyncio.create_task(self._run(job_id, handle))
        return handle

    async def retry(self, job_id: str) -> RenderHandle:
        """Restart a failed render from the beginning; nothing from the failed attempt is reused."""
        return await self.start(job_id, retry=True)

    async def ensure_started(self, job_id: str) -> Optional[RenderHandle]:
        """Start a render for a reloaded job at most once per process lifetime.

        Returns the in-flight handle (if any) when the job does not need starting.
        """
        if self.registry.was_started(job_id):
            return self.registry.get(job_id)
        job = await self._require(job_id)
        if job.status == JobStatus.InProgress or job.final_urls is not None:
            return self.registry.get(job_id)
        # another caller may have started it while we were reading the store
        if self.registry.was_started(job_id):
            return self.registry.get(job_id)
        return await self.start(job_id)

    def handle(self, job_id: str) -> Optional[RenderHandle]:
        return self.registry.get(job_id)

    async def _run(self, job_id: str, handle: RenderHandle):
        backoff = self._backoff_factory()
        backoff.subscribe(handle.notify)
        try:
            pipeline = RenderPipeline(self, job_id, handle, backoff)
            result = await pipeline.build_graph().ainvoke(RenderState(job_id=job_id))
            final_urls = FinalUrls.model_validate(result["final_urls"])
            warnings = list(result.get("warnings") or [])

            def complete(job: GenerationJob):
                job.transition(JobStatus.Completed)
                job.progress = 100
                job.message = "Your film is ready!"
                job.final_urls = final_urls
                job.trailer_url = final_urls.trailer
                job.warnings = warnings

            job = await self.store.update(job_id, complete)
            logger.info(f"Render completed for job {job_id}: {final_urls.film}")
            handle.notify(RenderUpdate(stage=COMPLETED, progress=100, message=job.message))
            handle._finish(job)
        except asyncio.CancelledError as e:
            logger.warning(f"Render cancelled for job {job_id}")
            job = await self._fail(job_id, "Render cancelled")
            handle._finish(job, error=e)
            raise
        except Exception as e:
            logger.error(f"Render failed for job {job_id}: {e}")
            job = await self._fail(job_id, str(e) or e.__class__.__name__)
            handle._finish(job, error=e)
        finally:
            self.registry.release(job_id)

    async def _fail(self, job_id: str, message: str) -> Optional[GenerationJob]:
        def mutate(job: GenerationJob):
            if job.status == JobStatus.InProgress:
                job.transition(JobStatus.Failed)
            job.progress = 0
            job.message = message

        try:
            job = await self.store.update(job_id, mutate)
        except JobNotFound:
            logger.warning(f"Job {job_id} was deleted while rendering")
            return None
        handle = self.registry.get(job_id)
        if handle:
            handle.notify(RenderUpdate(stage=FAILED, progress=0, message=message))
        return job

    async def resync_captions(self, job_id: str, strategy: str = None) -> GenerationJob:
        """Regenerate the caption track from the current script; other deliverables are untouched."""
        job = await self._require(job_id)
        if job.final_urls is None:
            raise WizardError("Captions can only be resynced for a rendered film")
        synchronizer = self.caption_synchronizer(self._backoff_factory(), strategy)
        captions = await synchronizer.sync(job.story.expanded_script)
        path = os.path.join(job_dir(job_id, self.media_root), "captions.vtt")
        write_text(path, captions)
        url = public_url(path, self.media_root)

        def mutate(job: GenerationJob):
            job.final_urls = job.final_urls.with_captions(url)

        logger.info(f"Captions resynced for job {job_id}")
        return await self.store.update(job_id, mutate)

    async def recover_interrupted(self) -> List[str]:
        """Fail jobs left InProgress by a previous process so they can be retried."""
        recovered = []
        for job in await self.store.list():
            if job.status == JobStatus.InProgress and not self.registry.is_in_flight(job.id):
                await self._fail(job.id, "Render interrupted")
                recovered.append(job.id)
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted renders as failed: {', '.join(recovered)}")
        return recovered
