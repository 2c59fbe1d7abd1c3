import asyncio
import json
import logging
import time
from typing import Optional

import httpx

from .assets import GeneratedAsset, asset_from_output
from .errors import ConfigurationError, ContractViolation
from . import settings

logger = logging.getLogger(__name__)

REPLICATE_API = "https://api.replicate.com/v1"


def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    return "version", {"version": selector}


class AIClient:
    """Text generation through OpenAI, image and video generation through Replicate."""

    def __init__(self, openai_api_key: str = None, replicate_token: str = None,
                 transport: httpx.AsyncBaseTransport = None, sleep=None):
        self.openai_api_key = settings.OPENAI_API_KEY if openai_api_key is None else openai_api_key
        self.replicate_token = settings.REPLICATE_API_TOKEN if replicate_token is None else replicate_token
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._openai = None

    # --- text -----------------------------------------------------------------

    def _get_openai(self):
        if self._openai is None:
            from openai import AsyncOpenAI
            if not self.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is not set; please configure your .env")
            self._openai = AsyncOpenAI(api_key=self.openai_api_key)
        return self._openai

    async def _chat(self, prompt: str, system: Optional[str], json_mode: bool) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        client = self._get_openai()
        resp = await client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=messages,
            temperature=0.4,
            **kwargs,
        )
        content = resp.choices[0].message.content
        if not content:
            raise ContractViolation("Text model returned an empty response")
        logger.info("Successfully received response from OpenAI")
        return content

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        return await self._chat(prompt, system, json_mode=False)

    async def generate_json(self, prompt: str, system: Optional[str] = None) -> dict:
        content = await self._chat(prompt, system, json_mode=True)
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ContractViolation(f"Text model did not return valid JSON: {e}") from e

    # --- media ----------------------------------------------------------------

    def _headers(self):
        if not self.replicate_token:
            raise ConfigurationError("REPLICATE_API_TOKEN is not set; please configure your .env")
        return {"Authorization": f"Token {self.replicate_token}"}

    async def _create_and_wait(self, selector: str, model_input: dict):
        headers = self._headers()
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            json_body = {"input": model_input}
            mode, data = _parse_selector(selector)
            if mode == "version":
                json_body["version"] = data["version"]
                url = f"{REPLICATE_API}/predictions"
            else:
                url = f"{REPLICATE_API}/models/{data['owner']}/{data['name']}/predictions"

            logger.info(f"Sending request to Replicate: {url}")
            r = await client.post(url, headers={**headers, "Content-Type": "application/json"}, json=json_body)
            if r.status_code == 404 and mode == "model":
                # Model endpoint unavailable for this alias; resolve the latest version instead.
                logger.info("Falling back to latest version resolution for model")
                model_resp = await client.get(f"{REPLICATE_API}/models/{data['owner']}/{data['name']}", headers=headers)
                model_resp.raise_for_status()
                version_id = (model_resp.json().get("latest_version") or {}).get("id")
                if not version_id:
                    raise ContractViolation(f"Could not resolve latest version for {selector}")
                r = await client.post(
                    f"{REPLICATE_API}/predictions",
                    headers={**headers, "Content-Type": "application/json"},
                    json={**json_body, "version": version_id},
                )
            if r.status_code >= 400:
                logger.error(f"Replicate create failed {r.status_code}: {r.text}")
            r.raise_for_status()
            pred_id = r.json()["id"]
            logger.info(f"Replicate prediction created with ID: {pred_id}")

            start = time.monotonic()
            while True:
                s = await client.get(f"{REPLICATE_API}/predictions/{pred_id}", headers=headers)
                s.raise_for_status()
                body = s.json()
                status = body.get("status")
                if status in ("succeeded", "failed", "canceled"):
                    if status != "succeeded":
                        raise RuntimeError(f"Replicate {status}: {body.get('error')}")
                    return body.get("output")
                if time.monotonic() - start > settings.REPLICATE_POLL_TIMEOUT_S:
                    raise TimeoutError(f"Replicate polling timeout for prediction {pred_id}")
                await self._sleep(settings.REPLICATE_POLL_INTERVAL_MS / 1000.0)

    async def generate_image(self, prompt: str, aspect_ratio: str = "1:1", reference_image: str = None) -> GeneratedAsset:
        model_input = {"prompt": prompt, "aspect_ratio": aspect_ratio, "num_outputs": 1}
        if reference_image:
            model_input["image"] = reference_image
        output = await self._create_and_wait(settings.REPLICATE_IMAGE_MODEL, model_input)
        return asset_from_output(output, default_mime="image/png")

    async def generate_video(self, prompt: str, resolution: str = "1080p", aspect_ratio: str = "16:9",
                             image: str = None) -> GeneratedAsset:
        model_input = {"prompt": prompt, "resolution": resolution, "aspect_ratio": aspect_ratio}
        if image:
            model_input["first_frame_image"] = image
        output = await self._create_and_wait(settings.REPLICATE_VIDEO_MODEL, model_input)
        return asset_from_output(output, default_mime="video/mp4")
