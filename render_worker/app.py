import logging
import os
import shlex
import shutil
import subprocess
import uuid
from typing import List

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DATA_DIR = os.getenv("DATA_DIR", "/data")
UPLOADS_DIR = os.path.join(DATA_DIR, "uploads")
OUTPUTS_DIR = os.path.join(DATA_DIR, "outputs")

MAX_SCENES = 50
MAX_SCENE_BYTES = 200 * 1024 * 1024
CHUNK_SIZE = 1024 * 1024

# Every segment is re-encoded to this frame so stream copy concat is valid
FRAME_WIDTH = int(os.getenv("MERGE_FRAME_WIDTH", "1280"))
FRAME_HEIGHT = int(os.getenv("MERGE_FRAME_HEIGHT", "720"))

os.makedirs(UPLOADS_DIR, exist_ok=True)
os.makedirs(OUTPUTS_DIR, exist_ok=True)

app = FastAPI(title="Render Worker")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
app.mount("/videos", StaticFiles(directory=OUTPUTS_DIR, check_dir=False), name="videos")


def _run(cmd: str):
    proc = subprocess.run(cmd, shell=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="ignore")
        raise RuntimeError(f"ffmpeg exited {proc.returncode}: {stderr[-500:]}")


def normalize_cmd(src: str, out: str) -> str:
    vf = (
        f"scale={FRAME_WIDTH}:{FRAME_HEIGHT}:force_original_aspect_ratio=decrease,"
        f"pad={FRAME_WIDTH}:{FRAME_HEIGHT}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )
    return (
        f"ffmpeg -y -i {shlex.quote(src)} -vf {shlex.quote(vf)} "
        f"-c:v libx264 -preset veryfast -pix_fmt yuv420p -r 30 -c:a aac -ar 44100 -ac 2 "
        f"{shlex.quote(out)}"
    )


def concat_cmd(list_path: str, out: str) -> str:
    return f"ffmpeg -y -f concat -safe 0 -i {shlex.quote(list_path)} -c copy {shlex.quote(out)}"


def concat_list(paths: List[str]) -> str:
    lines = []
    for p in paths:
        escaped = p.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


async def _save_upload(upload: UploadFile, dest: str):
    size = 0
    with open(dest, "wb") as f:
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > MAX_SCENE_BYTES:
                raise HTTPException(413, f"{upload.filename} is larger than {MAX_SCENE_BYTES // (1024 * 1024)}MB")
            f.write(chunk)
    if size == 0:
        raise HTTPException(400, f"{upload.filename} is empty")


def _merge(inputs: List[str], job_dir: str, final_path: str):
    normalized = []
    for i, src in enumerate(inputs):
        out = os.path.join(job_dir, f"scene_{i}.mp4")
        logger.info(f"Normalizing segment {i + 1}/{len(inputs)}")
        _run(normalize_cmd(src, out))
        normalized.append(out)

    list_path = os.path.join(job_dir, "concat.txt")
    with open(list_path, "w", encoding="utf-8") as f:
        f.write(concat_list(normalized))
    _run(concat_cmd(list_path, final_path))


@app.get("/health")
def health():
    try:
        # Check if ffmpeg is available
        result = subprocess.run(["ffmpeg", "-version"], capture_output=True, text=True, timeout=5)
        ffmpeg_ok = result.returncode == 0
        ffmpeg_version = result.stdout.split("\n")[0] if ffmpeg_ok else "Not available"
    except (OSError, subprocess.SubprocessError) as e:
        ffmpeg_ok = False
        ffmpeg_version = f"Error: {e}"

    return {
        "ok": True,
        "ffmpeg_available": ffmpeg_ok,
        "ffmpeg_version": ffmpeg_version,
        "uploads": UPLOADS_DIR,
        "outputs": OUTPUTS_DIR,
    }


@app.post("/merge")
async def merge(scenes: List[UploadFile] = File(None)):
    files = scenes or []
    if not files:
        raise HTTPException(400, "No scene files uploaded (field name: scenes)")
    if len(files) > MAX_SCENES:
        raise HTTPException(400, f"Too many scene files ({len(files)}, max {MAX_SCENES})")

    job_id = uuid.uuid4().hex[:8]
    job_dir = os.path.join(UPLOADS_DIR, job_id)
    os.makedirs(job_dir, exist_ok=True)
    final_name = f"final_{job_id}.mp4"
    final_path = os.path.join(OUTPUTS_DIR, final_name)
    logger.info(f"Merge {job_id}: receiving {len(files)} segments")
    try:
        inputs = []
        for i, upload in enumerate(files):
            dest = os.path.join(job_dir, f"input_{i}")
            await _save_upload(upload, dest)
            inputs.append(dest)

        await run_in_threadpool(_merge, inputs, job_dir, final_path)
    except HTTPException:
        raise
    except (OSError, RuntimeError) as e:
        logger.error(f"Merge {job_id} failed: {e}")
        if os.path.exists(final_path):
            os.remove(final_path)
        raise HTTPException(500, str(e))
    finally:
        shutil.rmtree(job_dir, ignore_errors=True)

    logger.info(f"Merge {job_id} complete: {final_name}")
    return {"filmUrl": f"/videos/{final_name}"}
