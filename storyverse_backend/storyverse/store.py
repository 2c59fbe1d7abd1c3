"""
Persistent job store.

The store is the only durable owner of GenerationJob records. Two backends share
one interface: a JSON file on local disk (default) and a Vercel/Upstash KV REST
store for deployments without a persistent disk. Writes are serialised through
an asyncio.Lock so concurrent render flows for different jobs cannot clobber
each other's updates.
"""
import asyncio
import json
import logging
import os
from typing import Callable, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import JobNotFound
from .models import GenerationJob
from .settings import JOBS_FILE, KV_REST_API_TOKEN, KV_REST_API_URL

logger = logging.getLogger(__name__)

Mutation = Callable[[GenerationJob], Optional[GenerationJob]]


class JobStore(Protocol):
    async def get(self, job_id: str) -> Optional[GenerationJob]:
        ...

    async def list(self) -> List[GenerationJob]:
        ...

    async def put(self, job: GenerationJob) -> GenerationJob:
        ...

    async def update(self, job_id: str, mutate: Mutation) -> GenerationJob:
        """Apply ``mutate`` to the stored job and persist the result atomically."""
        ...

    async def delete(self, job_id: str) -> bool:
        ...


def _apply(job: GenerationJob, mutate: Mutation) -> GenerationJob:
    result = mutate(job)
    job = result if result is not None else job
    # re-validate so a mutation cannot persist out-of-range values
    return GenerationJob.model_validate(job.model_dump())


class FileJobStore:
    def __init__(self, path: str = None):
        self.path = path or JOBS_FILE
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, GenerationJob] = self._load()

    def _load(self) -> Dict[str, GenerationJob]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            jobs = {}
            for item in raw:
                job = GenerationJob.model_validate(item)
                jobs[job.id] = job
            logger.info(f"Loaded {len(jobs)} jobs from {self.path}")
            return jobs
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load saved jobs from {self.path}: {e}")
            return {}

    def _flush(self):
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        payload = [job.model_dump(mode="json") for job in self._jobs.values()]
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.path)

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list(self) -> List[GenerationJob]:
        return [j.model_copy(deep=True) for j in sorted(self._jobs.values(), key=lambda j: j.created_at)]

    async def put(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            self._flush()
        return job

    async def update(self, job_id: str, mutate: Mutation) -> GenerationJob:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            job = _apply(current.model_copy(deep=True), mutate)
            self._jobs[job_id] = job
            self._flush()
            return job.model_copy(deep=True)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            self._flush()
            return True


INDEX_KEY = "jobs:index"


class KVStorage:
    """Vercel KV integration so jobs persist across serverless function invocations."""

    def __init__(self, url: str = None, token: str = None, transport: httpx.AsyncBaseTransport = None):
        self.kv_rest_api_url = (KV_REST_API_URL if url is None else url).rstrip("/")
        self.kv_rest_api_token = KV_REST_API_TOKEN if token is None else token
        self._transport = transport
        self._lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    async def _command(self, command: str, *args):
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.post(f"{self.kv_rest_api_url}/{command}", headers=self._headers(), json=list(args))
                response.raise_for_status()
                return response.json().get("result")
        except httpx.HTTPError as e:
            logger.error(f"KV {command} {args[0] if args else ''} failed: {e}")
            raise

    async def _index(self) -> List[str]:
        raw = await self._command("get", INDEX_KEY)
        return json.loads(raw) if raw else []

    async def _write(self, job: GenerationJob):
        await self._command("set", f"job:{job.id}", job.model_dump_json())
        ids = await self._index()
        if job.id not in ids:
            ids.append(job.id)
            await self._command("set", INDEX_KEY, json.dumps(ids))
        logger.info(f"Stored job {job.id} in KV")

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        raw = await self._command("get", f"job:{job_id}")
        if not raw:
            return None
        return GenerationJob.model_validate_json(raw)

    async def list(self) -> List[GenerationJob]:
        jobs = []
        for job_id in await self._index():
            job = await self.get(job_id)
            if job:
                jobs.append(job)
        return sorted(jobs, key=lambda j: j.created_at)

    async def put(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            await self._write(job)
        return job

    async def update(self, job_id: str, mutate: Mutation) -> GenerationJob:
        async with self._lock:
            current = await self.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            job = _apply(current, mutate)
            await self._write(job)
            return job

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            removed = await self._command("del", f"job:{job_id}")
            ids = await self._index()
            if job_id in ids:
                ids.remove(job_id)
                await self._command("set", INDEX_KEY, json.dumps(ids))
            return bool(removed)


def get_store() -> JobStore:
    if KV_REST_API_URL and KV_REST_API_TOKEN:
        logger.info("KV storage enabled")
        return KVStorage()
    logger.info(f"KV storage not configured - using local job file {JOBS_FILE}")
    return FileJobStore()
