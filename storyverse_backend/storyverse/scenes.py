import asyncio
import logging
from typing import List, NamedTuple

from .assets import materialize
from .errors import AssetUnavailable, ConfigurationError, ContractViolation
from .prompts import DESCRIBE_BATCH_TEMPLATE, SCENE_PROMPT_TEMPLATE, SYSTEM_PROMPT
from .settings import SCENE_FALLBACK_ENABLED, SCENE_SPACING_MS

logger = logging.getLogger(__name__)

FALLBACK_VIDEO_SOURCES = {
    "16:9": "https://interactive-examples.mdn.mozilla.net/media/cc0-videos/flower.mp4",
    "9:16": "https://interactive-examples.mdn.mozilla.net/media/cc0-videos/flower.mp4",
}


def fallback_source(aspect_ratio: str) -> str:
    return FALLBACK_VIDEO_SOURCES.get(aspect_ratio, FALLBACK_VIDEO_SOURCES["16:9"])


def build_scene_prompts(job) -> List[str]:
    names = ", ".join(c.name for c in job.characters if c.name) or "None"
    return [
        SCENE_PROMPT_TEMPLATE.format(
            index=i + 1,
            scene=scene.strip(),
            style=job.world.style.value,
            lighting=job.world.lighting_mood,
            characters=names,
        )
        for i, scene in enumerate(job.story.scenes)
    ]


class SceneDescriptionBatcher:
    """Turns all scene prompts into visual descriptions with a single remote call."""

    def __init__(self, ai, backoff):
        self.ai = ai
        self.backoff = backoff

    async def describe(self, prompts: List[str]) -> List[str]:
        if not prompts:
            raise ValueError("At least one scene prompt is required")
        numbered = "\n".join(f"{i}. {p}" for i, p in enumerate(prompts, 1))
        prompt = DESCRIBE_BATCH_TEMPLATE.format(scenes=numbered, count=len(prompts))
        payload = await self.backoff.run(self.ai.generate_json, prompt, SYSTEM_PROMPT)

        descriptions = payload.get("descriptions") if isinstance(payload, dict) else payload
        if not isinstance(descriptions, list):
            raise ContractViolation("AI did not return a list of scene descriptions.")
        if len(descriptions) != len(prompts):
            raise ContractViolation(
                f"AI did not return the correct number of scene descriptions "
                f"(expected {len(prompts)}, got {len(descriptions)})."
            )
        if not all(isinstance(d, str) and d.strip() for d in descriptions):
            raise ContractViolation("AI returned an empty scene description.")
        return [d.strip() for d in descriptions]


class SceneClip(NamedTuple):
    ref: str
    fallback: bool


class SceneVideoGenerator:
    """One description in, one playable clip out, followed by a fixed pause.

    Calls are expected to be made one at a time; the pause after each call keeps
    the request rate under the provider's limit.
    """

    def __init__(self, ai, backoff, spacing_s: float = None, allow_fallback: bool = None,
                 sleep=None, transport=None):
        self.ai = ai
        self.backoff = backoff
        self.spacing_s = SCENE_SPACING_MS / 1000.0 if spacing_s is None else spacing_s
        self.allow_fallback = SCENE_FALLBACK_ENABLED if allow_fallback is None else allow_fallback
        self._sleep = sleep or asyncio.sleep
        self._transport = transport

    async def generate(self, description: str, dest_path: str,
                       resolution: str = "1080p", aspect_ratio: str = "16:9") -> SceneClip:
        try:
            asset = await self.backoff.run(self.ai.generate_video, description, resolution, aspect_ratio)
            clip = SceneClip(await self.backoff.run(materialize, asset, dest_path, self._transport), False)
        except ConfigurationError:
            raise
        except Exception as e:
            if not self.allow_fallback:
                raise AssetUnavailable(f"Video generation failed: {e}") from e
            logger.warning(f"Scene video failed, switching to fallback content: {e}")
            clip = SceneClip(fallback_source(aspect_ratio), True)
        await self._sleep(self.spacing_s)
        return clip
