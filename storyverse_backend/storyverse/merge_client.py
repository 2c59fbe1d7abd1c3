import logging
import os
import shutil
import tempfile
from typing import List

import httpx

from .errors import ConfigurationError, ContractViolation
from .media import is_remote, join_url
from .settings import RENDER_WORKER_URL

logger = logging.getLogger(__name__)

MAX_MERGE_SEGMENTS = 50


class RemoteMergeClient:
    """Uploads scene segments in order to the merge worker and returns the film URL."""

    def __init__(self, base_url: str = None, transport: httpx.AsyncBaseTransport = None, timeout: float = 600):
        self.base_url = (RENDER_WORKER_URL if base_url is None else base_url).rstrip("/")
        self._transport = transport
        self.timeout = timeout

    async def _download(self, client: httpx.AsyncClient, url: str, path: str):
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            with open(path, "wb") as f:
                async for chunk in resp.aiter_bytes():
                    if chunk:
                        f.write(chunk)

    async def merge(self, refs: List[str]) -> str:
        if not self.base_url:
            raise ConfigurationError("RENDER_WORKER_URL is not set; please configure your .env")
        if not refs:
            raise ValueError("No scene segments to merge")
        if len(refs) > MAX_MERGE_SEGMENTS:
            raise ValueError(f"Cannot merge {len(refs)} segments (max {MAX_MERGE_SEGMENTS})")

        tmp = tempfile.mkdtemp(prefix="storyverse-merge-")
        files = []
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                for i, ref in enumerate(refs, 1):
                    path = ref
                    if is_remote(ref):
                        path = os.path.join(tmp, f"remote_{i}.mp4")
                        await self._download(client, ref, path)
                    # Single 'scenes' field; the worker keeps upload order
                    files.append(("scenes", (f"scene_{i}.mp4", open(path, "rb"), "video/mp4")))

                logger.info(f"Uploading {len(files)} scenes to {self.base_url}/merge")
                resp = await client.post(f"{self.base_url}/merge", files=files)
                if resp.status_code >= 400:
                    logger.error(f"Merge service failed {resp.status_code}: {resp.text}")
                resp.raise_for_status()
                try:
                    film_url = resp.json().get("filmUrl")
                except ValueError as e:
                    raise ContractViolation(f"Merge service returned invalid JSON: {e}") from e
        finally:
            for _, (_name, fh, _ctype) in files:
                fh.close()
            shutil.rmtree(tmp, ignore_errors=True)

        if not film_url:
            raise ContractViolation("Merge service did not return a filmUrl")
        return join_url(self.base_url, film_url)
