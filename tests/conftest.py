"""Test configuration: import paths, an isolated data directory and in-process fakes."""

import os
import re
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
APP_DIR = ROOT / "storyverse_backend"
for path in (str(APP_DIR), str(ROOT)):
    if path not in sys.path:
        sys.path.insert(0, path)

# Settings are read at import time, so point every service at a scratch directory first
os.environ["DATA_DIR"] = tempfile.mkdtemp(prefix="storyverse-tests-")
os.environ["PUBLIC_BASE_URL"] = ""
os.environ["KV_REST_API_URL"] = ""
os.environ["KV_REST_API_TOKEN"] = ""

import pytest  # noqa: E402

from storyverse.assets import InlineBytes  # noqa: E402
from storyverse.models import new_job  # noqa: E402

VALID_VTT = "WEBVTT\n\n1\n00:00:00.000 --> 00:00:02.500\nHello there\n\n2\n00:00:02.500 --> 00:00:05.000\nGoodbye\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


class FakeClock:
    """Stands in for asyncio.sleep; time only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAI:
    def __init__(self, clock=None, script="NARRATOR: Once upon a time.\nThe fort was ready.", captions=VALID_VTT,
                 description_count=None, video_error=None, video_gate=None):
        self.clock = clock or FakeClock()
        self.script = script
        self.captions = captions
        self.description_count = description_count
        self.video_error = video_error
        self.video_gate = video_gate
        self.video_started = None
        self.json_calls = []
        self.text_calls = []
        self.video_calls = []
        self.image_calls = []

    async def generate_json(self, prompt, system=None):
        self.json_calls.append(prompt)
        match = re.search(r"exactly (\d+) descriptions", prompt)
        if match:
            count = self.description_count if self.description_count is not None else int(match.group(1))
            return {"descriptions": [f"Visual description {i + 1}" for i in range(count)]}
        return {
            "title": "The Pillow Fort",
            "synopsis": "Two siblings build a fort on a rainy day.",
            "location": "Living room",
            "ageGroup": "4-8 years",
            "scenes": ["Rain starts", "Building the fort", "Story time inside"],
        }

    async def generate_text(self, prompt, system=None):
        self.text_calls.append(prompt)
        if "WebVTT" in prompt:
            return self.captions
        return self.script

    async def generate_video(self, prompt, resolution="1080p", aspect_ratio="16:9", image=None):
        self.video_calls.append({"prompt": prompt, "at": self.clock.now, "aspect_ratio": aspect_ratio})
        if self.video_started is not None:
            self.video_started.set()
        if self.video_gate is not None:
            await self.video_gate.wait()
        if self.video_error is not None:
            raise self.video_error
        return InlineBytes(data=f"video:{prompt}".encode(), mime_type="video/mp4")

    async def generate_image(self, prompt, aspect_ratio="1:1", reference_image=None):
        self.image_calls.append({"prompt": prompt, "aspect_ratio": aspect_ratio, "reference_image": reference_image})
        return InlineBytes(data=PNG_BYTES, mime_type="image/png")


class FakeMergeClient:
    def __init__(self, failures=0, error=None):
        self.calls = []
        self.failures = failures
        self.error = error or ValueError("merge worker exploded")

    async def merge(self, refs):
        self.calls.append(list(refs))
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return f"http://worker.test/videos/final_{len(self.calls)}.mp4"


def renderable_job(scene_count=3, **overrides):
    job = new_job(**overrides)
    job.characters[0].name = "Mia"
    job.story.title = "The Pillow Fort"
    job.story.synopsis = "Two siblings build a fort on a rainy day."
    job.story.scenes = [f"Scene text {i + 1}" for i in range(scene_count)]
    job.story.expanded_script = "MIA: Let's build a fort!\nThe cushions tumble down."
    return job


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ai(clock):
    return FakeAI(clock=clock)


@pytest.fixture
def media_root(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return str(path)


@pytest.fixture
def store(tmp_path):
    from storyverse.store import FileJobStore
    return FileJobStore(str(tmp_path / "jobs.json"))
