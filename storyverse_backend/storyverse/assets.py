"""Generated media as a tagged variant.

Generation providers hand media back either inline (``data:`` URIs) or as a
fetchable URL. ``asset_from_output`` turns a provider output into one of the
two variants and ``materialize`` is the single place that turns either into a
local file.
"""
import base64
import logging
from typing import Annotated, Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field

from .errors import AssetUnavailable, ContractViolation
from .media import write_bytes

logger = logging.getLogger(__name__)


class InlineBytes(BaseModel):
    kind: Literal["inline"] = "inline"
    data: bytes
    mime_type: str = "video/mp4"


class RemoteHandle(BaseModel):
    kind: Literal["remote"] = "remote"
    uri: str
    mime_type: Optional[str] = None


GeneratedAsset = Annotated[Union[InlineBytes, RemoteHandle], Field(discriminator="kind")]


def asset_from_output(output, default_mime: str = "video/mp4") -> GeneratedAsset:
    if isinstance(output, list):
        output = output[0] if output else None
    if isinstance(output, dict):
        output = output.get("url") or output.get("uri")
    if not output or not isinstance(output, str):
        raise ContractViolation("Generation did not include bytes or a download URI.")

    if output.startswith("data:"):
        header, _, payload = output.partition(",")
        mime_type = header[len("data:"):].split(";")[0] or default_mime
        try:
            data = base64.b64decode(payload, validate=True)
        except ValueError as e:
            raise ContractViolation(f"Inline media is not valid base64: {e}") from e
        return InlineBytes(data=data, mime_type=mime_type)
    return RemoteHandle(uri=output, mime_type=default_mime)


async def materialize(asset: GeneratedAsset, dest_path: str, transport: httpx.AsyncBaseTransport = None) -> str:
    """Write ``asset`` to ``dest_path`` and return the path."""
    if isinstance(asset, InlineBytes):
        data = asset.data
    else:
        async with httpx.AsyncClient(timeout=120, transport=transport, follow_redirects=True) as client:
            r = await client.get(asset.uri)
            r.raise_for_status()
            data = r.content
    if not data:
        raise AssetUnavailable(f"Generated asset for {dest_path} is empty")
    write_bytes(dest_path, data)
    logger.info(f"Saved {len(data)} bytes to {dest_path}")
    return dest_path
