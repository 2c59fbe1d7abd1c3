import io
import os
from PIL import Image
from .settings import MEDIA_DIR, PUBLIC_BASE_URL

MEDIA_ROUTE = "/media"


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def write_text(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


def job_dir(job_id: str, media_root: str = None) -> str:
    path = os.path.join(media_root or MEDIA_DIR, job_id)
    os.makedirs(path, exist_ok=True)
    return path


def is_remote(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


def public_url(ref: str, media_root: str = None) -> str:
    """Map a file under the media root to the URL it is served from; remote URLs pass through."""
    if is_remote(ref):
        return ref
    root = os.path.abspath(media_root or MEDIA_DIR)
    rel = os.path.relpath(os.path.abspath(ref), root)
    if rel.startswith(".."):
        raise ValueError(f"{ref} is outside the media directory")
    return f"{PUBLIC_BASE_URL}{MEDIA_ROUTE}/{rel.replace(os.sep, '/')}"


def join_url(base: str, url: str) -> str:
    # Return absolute URL if base is absolute
    if is_remote(url) or not is_remote(base):
        return url
    if url.startswith("/"):
        return f"{base.rstrip('/')}{url}"
    return f"{base.rstrip('/')}/{url}"


def local_path(url: str, media_root: str = None) -> str:
    """Inverse of public_url for files we serve ourselves."""
    prefix = f"{PUBLIC_BASE_URL}{MEDIA_ROUTE}/"
    if not url.startswith(prefix):
        raise ValueError(f"{url} is not a local media URL")
    root = os.path.abspath(media_root or MEDIA_DIR)
    path = os.path.abspath(os.path.join(root, *url[len(prefix):].split("/")))
    if os.path.commonpath([root, path]) != root:
        raise ValueError(f"{url} is outside the media directory")
    return path


MAX_PHOTO_SIDE = 1536


def normalize_photo(data: bytes):
    """Convert an uploaded reference photo to RGB PNG or JPEG, downscaled; returns (bytes, extension)."""
    with Image.open(io.BytesIO(data)) as img:
        fmt = img.format
        # Convert RGBA to RGB on a white background to avoid transparency issues downstream
        if img.mode in ("RGBA", "LA", "P"):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            img = background
        elif img.mode != "RGB":
            img = img.convert("RGB")
        img.thumbnail((MAX_PHOTO_SIDE, MAX_PHOTO_SIDE))
        buffer = io.BytesIO()
        if fmt == "JPEG":
            img.save(buffer, format="JPEG", quality=90)
            return buffer.getvalue(), "jpg"
        img.save(buffer, format="PNG")
        return buffer.getvalue(), "png"
