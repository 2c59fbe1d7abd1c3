"""
Draft editing with a single active job.

The editor never holds its own copy of a job: every read goes to the store and
every change is written through immediately, so the store stays the only
durable owner and a render running in the background never races a stale
working copy.
"""
import logging
import os
from typing import Optional

from .errors import JobNotFound, WizardError
from .media import job_dir, normalize_photo, public_url, write_bytes
from .models import (
    MAX_CHARACTER_PHOTOS, Character, GenerationJob, JobPatch, JobStatus, Step, new_job,
)

logger = logging.getLogger(__name__)

_DUPLICATE_EXCLUDE = {
    "id", "created_at", "status", "progress", "message", "trailer_url", "final_urls", "is_draft", "warnings",
}


class DraftEditor:
    def __init__(self, store, media_root: str = None):
        self.store = store
        self.media_root = media_root
        self.active_job_id: Optional[str] = None

    async def _require(self, job_id: str) -> GenerationJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _require_active(self, job_id: str):
        if self.active_job_id != job_id:
            raise WizardError(f"Job {job_id} is not open in the editor")

    async def active_job(self) -> Optional[GenerationJob]:
        if self.active_job_id is None:
            return None
        return await self.store.get(self.active_job_id)

    async def start_creation(self) -> GenerationJob:
        job = new_job()
        await self.store.put(job)
        self.active_job_id = job.id
        logger.info(f"Started new draft {job.id}")
        return job

    async def open(self, job_id: str) -> GenerationJob:
        job = await self._require(job_id)
        self.active_job_id = job.id
        return job

    def close(self):
        """Leave the editor; the draft is already saved."""
        self.active_job_id = None

    async def update_active(self, job_id: str, patch: JobPatch) -> GenerationJob:
        self._require_active(job_id)
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        def mutate(job: GenerationJob):
            data = job.model_dump()
            data.update(changes)
            return GenerationJob.model_validate(data)

        return await self.store.update(job_id, mutate)

    async def duplicate(self, job_id: str) -> GenerationJob:
        source = await self._require(job_id)
        job = new_job(**source.model_dump(exclude=_DUPLICATE_EXCLUDE))
        job.story_title = f"{source.story_title or 'Untitled'} (Copy)"
        await self.store.put(job)
        self.active_job_id = job.id
        logger.info(f"Duplicated job {job_id} as {job.id}")
        return job

    async def reset_active(self) -> GenerationJob:
        job = await self.active_job()
        if job is None:
            raise WizardError("No job is open in the editor")
        if job.status == JobStatus.InProgress:
            raise WizardError("Cannot start over while the film is rendering")
        fresh = new_job(id=job.id, created_at=job.created_at)
        await self.store.put(fresh)
        return fresh

    async def go_to_step(self, job_id: str, step: Step) -> GenerationJob:
        self._require_active(job_id)

        def mutate(job: GenerationJob):
            if step > job.current_step + 1:
                raise WizardError("Wizard steps cannot be skipped")
            if step > job.current_step:
                if job.current_step == Step.Characters and any(not c.name.strip() for c in job.characters):
                    raise WizardError("Every character needs a name")
                if step > Step.Story and not job.story.expanded_script.strip():
                    raise WizardError("Generate the full script before continuing past the Story step")
            job.current_step = step

        return await self.store.update(job_id, mutate)

    async def finish(self, job_id: str) -> GenerationJob:
        def mutate(job: GenerationJob):
            if job.status != JobStatus.Completed:
                raise WizardError("Only a completed film can be finished")
            job.is_draft = False

        job = await self.store.update(job_id, mutate)
        if self.active_job_id == job_id:
            self.active_job_id = None
        return job

    async def delete(self, job_id: str) -> bool:
        if self.active_job_id == job_id:
            self.active_job_id = None
        return await self.store.delete(job_id)

    # --- characters ---------------------------------------------------------------

    async def add_character(self, job_id: str) -> Character:
        self._require_active(job_id)
        character = Character(role="Family Member")

        def mutate(job: GenerationJob):
            job.characters.append(character)

        await self.store.update(job_id, mutate)
        return character

    async def remove_character(self, job_id: str, character_id: str) -> GenerationJob:
        self._require_active(job_id)

        def mutate(job: GenerationJob):
            character = job.character(character_id)
            if len(job.characters) <= 1:
                raise WizardError("A story needs at least one character")
            job.characters.remove(character)

        return await self.store.update(job_id, mutate)

    async def add_photo(self, job_id: str, character_id: str, data: bytes) -> Character:
        self._require_active(job_id)
        job = await self._require(job_id)
        character = job.character(character_id)
        if len(character.photos) >= MAX_CHARACTER_PHOTOS:
            raise WizardError(f"A character can have at most {MAX_CHARACTER_PHOTOS} photos")
        try:
            content, ext = normalize_photo(data)
        except OSError as e:
            raise WizardError(f"Unsupported image: {e}") from e

        path = os.path.join(job_dir(job_id, self.media_root), "photos", f"{character_id}_{len(character.photos) + 1}.{ext}")
        write_bytes(path, content)
        url = public_url(path, self.media_root)

        def mutate(job: GenerationJob):
            target = job.character(character_id)
            if len(target.photos) >= MAX_CHARACTER_PHOTOS:
                raise WizardError(f"A character can have at most {MAX_CHARACTER_PHOTOS} photos")
            target.photos.append(url)

        job = await self.store.update(job_id, mutate)
        return job.character(character_id)

    # --- generation results ------------------------------------------------------
    # These may land after the user has moved on, so they do not require the job to be active.

    async def set_avatar(self, job_id: str, character_id: str, avatar_url: str) -> GenerationJob:
        def mutate(job: GenerationJob):
            job.character(character_id).avatar_url = avatar_url

        return await self.store.update(job_id, mutate)

    async def set_world_preview(self, job_id: str, preview_url: str) -> GenerationJob:
        def mutate(job: GenerationJob):
            job.world.preview_url = preview_url

        return await self.store.update(job_id, mutate)

    async def apply_story_idea(self, job_id: str, idea: dict) -> GenerationJob:
        def mutate(job: GenerationJob):
            job.story = job.story.model_copy(update={**idea, "expanded_script": ""})
            job.story_title = idea.get("title", job.story_title)

        return await self.store.update(job_id, mutate)

    async def set_expanded_script(self, job_id: str, script: str) -> GenerationJob:
        def mutate(job: GenerationJob):
            job.story.expanded_script = script
            job.story_title = job.story.title or job.story_title

        return await self.store.update(job_id, mutate)
