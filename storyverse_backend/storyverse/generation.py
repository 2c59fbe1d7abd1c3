import base64
import logging
import os
from typing import List

from .assets import materialize
from .errors import AssetUnavailable, ConfigurationError, ContractViolation, WizardError
from .media import is_remote, job_dir, local_path, public_url
from .models import Character, Story, World
from .prompts import (
    AVATAR_PROMPT_TEMPLATE, EXPAND_STORY_TEMPLATE, STORY_FROM_PROMPT_TEMPLATE,
    SYSTEM_PROMPT, WORLD_PREVIEW_TEMPLATE, describe_characters,
)

logger = logging.getLogger(__name__)


class StoryStudio:
    """Generation steps the wizard runs before the final render."""

    def __init__(self, ai, backoff, scene_generator, media_root: str = None):
        self.ai = ai
        self.backoff = backoff
        self.scene_generator = scene_generator
        self.media_root = media_root

    def _reference_image(self, ref: str) -> str:
        """Photos we host are inlined as data URIs; data URIs and remote URLs are passed as-is."""
        if ref.startswith("data:") or is_remote(ref):
            return ref
        try:
            photo_path = local_path(ref, self.media_root)
        except ValueError as e:
            raise WizardError(f"Unusable reference photo: {e}") from e
        with open(photo_path, "rb") as f:
            encoded = base64.b64encode(f.read()).decode("ascii")
        mime_type = "image/jpeg" if photo_path.endswith(".jpg") else "image/png"
        return f"data:{mime_type};base64,{encoded}"

    async def avatar(self, job_id: str, character: Character) -> str:
        logger.info(f"Generating avatar for: {character.name}")
        if not character.photos:
            raise WizardError("Cannot generate avatar without reference photos.")
        reference = self._reference_image(character.photos[0])

        prompt = AVATAR_PROMPT_TEMPLATE.format(
            name=character.name,
            role=character.role,
            age=character.age,
            details=character.details,
            costume_color=character.costume_color,
        )
        dest = os.path.join(job_dir(job_id, self.media_root), f"avatar_{character.id}.png")
        try:
            asset = await self.backoff.run(self.ai.generate_image, prompt, "1:1", reference)
            await self.backoff.run(materialize, asset, dest)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Avatar generation failed for {character.id}: {e}")
            raise AssetUnavailable("The AI could not process the reference photo. Please try a different one.") from e
        return public_url(dest, self.media_root)

    async def world_preview(self, job_id: str, world: World) -> str:
        logger.info(f"Generating world preview for: {world.style.value}")
        prompt = WORLD_PREVIEW_TEMPLATE.format(
            background=world.background_set,
            style=world.style.value,
            strength=world.stylization_strength,
            time_period=world.time_period,
            season=world.season,
            time_of_day=world.time_of_day,
            lighting=world.lighting_mood,
            props=f"Props: {', '.join(world.props)}. " if world.props else "",
        )
        dest = os.path.join(job_dir(job_id, self.media_root), "world_preview.mp4")
        clip = await self.scene_generator.generate(prompt, dest, resolution="720p", aspect_ratio="16:9")
        return public_url(clip.ref, self.media_root)

    async def story_from_prompt(self, prompt: str, characters: List[Character]) -> dict:
        logger.info(f"Generating story idea from prompt: {prompt}")
        payload = await self.backoff.run(
            self.ai.generate_json,
            STORY_FROM_PROMPT_TEMPLATE.format(prompt=prompt, characters=describe_characters(characters)),
            SYSTEM_PROMPT,
        )
        scenes = payload.get("scenes") if isinstance(payload, dict) else None
        if not isinstance(scenes, list) or not scenes or not payload.get("title"):
            raise ContractViolation("AI story idea is missing a title or scenes.")
        return {
            "title": str(payload["title"]),
            "synopsis": str(payload.get("synopsis", "")),
            "location": str(payload.get("location", "")),
            "age_group": str(payload.get("ageGroup", "")),
            "scenes": [str(s) for s in scenes],
        }

    async def expand_story(self, story: Story, characters: List[Character]) -> str:
        logger.info(f"Expanding story: {story.template.value}")
        if not story.title or not story.synopsis:
            raise WizardError("A title and synopsis are required to expand the story.")
        prompt = EXPAND_STORY_TEMPLATE.format(
            minutes=story.target_duration,
            title=story.title,
            template=story.template.value,
            synopsis=story.synopsis,
            location=story.location or "unspecified",
            time_period=story.time_period,
            age_group=story.age_group or "family",
            characters=describe_characters(characters),
            scenes="\n".join(f"{i}. {s}" for i, s in enumerate(story.scenes, 1)),
        )
        script = (await self.backoff.run(self.ai.generate_text, prompt, SYSTEM_PROMPT)).strip()
        if not script:
            raise ContractViolation("AI returned an empty script.")
        return script
