from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx
from PIL import Image, UnidentifiedImageError

from ..utils.io import ensure_dir

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/png"
_SAFE_NAME_RE = re.compile(r"[^a-z0-9._-]")
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,(?P<data>.+)$", re.DOTALL)
_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


@dataclass(frozen=True)
class ImageResource:
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.to_base64()}"


class MediaStore(Protocol):
    def save(self, key: str, data: bytes, mime_type: Optional[str] = None) -> str:
        ...

    def get(self, locator: str) -> Optional[bytes]:
        ...

    def owns(self, locator: str) -> bool:
        ...


def sniff_mime_type(data: bytes, default: str = DEFAULT_MIME_TYPE) -> str:
    try:
        with Image.open(io.BytesIO(data)) as image:
            mime = Image.MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        return default
    return mime or default


class LocalMediaStore:
    """Filesystem media store; locators are ``<url_prefix>/<file name>``."""

    def __init__(self, root_dir: Path, url_prefix: str = "/media") -> None:
        self.root_dir = ensure_dir(Path(root_dir))
        self.url_prefix = "/" + url_prefix.strip("/")

    def _path_for(self, locator: str) -> Path:
        name = locator[len(self.url_prefix):].lstrip("/").split("?", 1)[0]
        return self.root_dir / Path(name).name

    def owns(self, locator: str) -> bool:
        return locator.startswith(self.url_prefix + "/")

    def save(self, key: str, data: bytes, mime_type: Optional[str] = None) -> str:
        mime = mime_type or sniff_mime_type(data)
        file_name = f"{_SAFE_NAME_RE.sub('_', key.lower())}.{_EXTENSIONS.get(mime, 'png')}"
        path = self.root_dir / file_name
        path.write_bytes(data)
        logger.info("Saved media %s (%s, %d bytes) to %s", key, mime, len(data), path)
        return f"{self.url_prefix}/{file_name}"

    def get(self, locator: str) -> Optional[bytes]:
        if not self.owns(locator):
            return None
        path = self._path_for(locator)
        if not path.is_file():
            logger.warning("Media not found on disk: %s", path)
            return None
        return path.read_bytes()


def decode_data_url(value: str) -> Optional[ImageResource]:
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        return None
    try:
        data = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError):
        return None
    return ImageResource(data=data, mime_type=match.group("mime") or DEFAULT_MIME_TYPE)


async def load_image_resource(
    locator: Optional[str],
    store: Optional[MediaStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Optional[ImageResource]:
    """Turn an image locator into bytes.

    Accepts data URLs, media-store locators, http(s) URLs and raw base64.
    Returns ``None`` for anything that cannot be resolved; callers decide
    whether a missing image matters.
    """
    if not locator:
        return None

    if locator.startswith("data:"):
        resource = decode_data_url(locator)
        if resource is None:
            logger.warning("Malformed data URL (%s...)", locator[:40])
        return resource

    if store is not None and store.owns(locator):
        data = store.get(locator)
        return ImageResource(data=data, mime_type=sniff_mime_type(data)) if data else None

    if locator.startswith(("http://", "https://")):
        try:
            if http_client is not None:
                response = await http_client.get(locator)
            else:
                async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                    response = await client.get(locator)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch image %s: %s", locator, exc)
            return None
        mime = response.headers.get("content-type", "").split(";")[0] or sniff_mime_type(response.content)
        return ImageResource(data=response.content, mime_type=mime)

    if locator.startswith("/"):
        logger.warning("Unresolvable image link: %s", locator)
        return None

    try:
        data = base64.b64decode(locator, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Image locator is neither a link nor base64 (%s...)", locator[:40])
        return None
    return ImageResource(data=data, mime_type=sniff_mime_type(data))
