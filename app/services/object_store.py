"""Object storage for article assets.

The provider contract is ``put(bytes, folder, kind) -> StoredObject`` and
``delete(provider_id, kind)``. Returned URLs follow the familiar CDN layout
``.../upload/<transformations>/v<version>/<folder>/<name>`` so that clients can
derive a canonical form by dropping the transformation segment.
"""

from __future__ import annotations

import io
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Protocol, Tuple
from urllib.parse import urlsplit, urlunsplit

from PIL import Image, UnidentifiedImageError

from .naming import build_object_name, normalize_extension, slugify


LOGGER = logging.getLogger(__name__)


AssetKind = Literal["audio", "image"]

# Requested delivery settings. Audio is compressed hard (mono, 22.05kHz, 32kbps AAC)
# to bound storage and egress; images use automatic quality and format selection.
AUDIO_TRANSFORMATIONS = "q_auto:low,ac_aac,br_32k,ar_22050,ach_1,f_m4a"
IMAGE_TRANSFORMATIONS = "q_auto:good,f_auto"

_VERSION_SEGMENT = re.compile(r"^v\d+$")
_IMAGE_EXTENSIONS = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "GIF": ".gif",
    "WEBP": ".webp",
    "BMP": ".bmp",
}


class ObjectStoreError(RuntimeError):
    """Raised when an asset cannot be stored or released."""


@dataclass(frozen=True)
class StoredObject:
    url: str
    provider_id: str
    kind: AssetKind
    size_bytes: int


class ObjectStore(Protocol):
    """Protocol describing an object storage provider."""

    def put(self, data: bytes, *, folder: str, kind: AssetKind, filename: str = "") -> StoredObject:
        """Store *data* and return its public locator."""

    def delete(self, provider_id: str, *, kind: AssetKind) -> bool:
        """Release the object; return ``False`` when it did not exist."""


def transformations_for(kind: AssetKind) -> str:
    return AUDIO_TRANSFORMATIONS if kind == "audio" else IMAGE_TRANSFORMATIONS


def detect_image_extension(data: bytes) -> str:
    """Return a file extension for image *data*, raising :class:`ObjectStoreError` if unreadable."""

    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as error:
        raise ObjectStoreError(f"Thumbnail is not a readable image: {error}") from error
    return _IMAGE_EXTENSIONS.get(str(image_format or "").upper(), ".img")


def canonical_asset_url(url: Optional[str]) -> Optional[str]:
    """Return *url* without transformation segments, query string or fragment.

    ``https://host/x/upload/q_auto,f_m4a/v17/audio/abc.mp3?dl=1`` becomes
    ``https://host/x/upload/v17/audio/abc.mp3``. URLs without an ``/upload/``
    marker or a version segment only lose their query string and fragment.
    """

    if not url or not isinstance(url, str):
        return url
    parts = urlsplit(url.strip())
    path = parts.path
    marker = "/upload/"
    if marker in path:
        head, tail = path.split(marker, 1)
        segments = tail.split("/")
        for index, segment in enumerate(segments):
            if _VERSION_SEGMENT.match(segment):
                path = f"{head}{marker}{'/'.join(segments[index:])}"
                break
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


class LocalObjectStore:
    """Object store keeping assets below ``root`` and serving them via ``/storage``."""

    def __init__(self, root: Path, *, public_base_url: str) -> None:
        self._root = root
        self._base_url = public_base_url.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    def put(self, data: bytes, *, folder: str, kind: AssetKind, filename: str = "") -> StoredObject:
        if not data:
            raise ObjectStoreError("Refusing to store an empty asset")
        if kind == "image":
            extension = detect_image_extension(data)
        else:
            extension = normalize_extension(filename, default=".mp3")

        folder_slug = slugify(folder)
        name = build_object_name(extension=extension)
        provider_id = f"{folder_slug}/{name}"
        target = self._root / kind / folder_slug / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as error:
            raise ObjectStoreError(f"Could not write {kind} asset: {error}") from error

        version = int(time.time())
        url = (
            f"{self._base_url}/storage/{kind}/upload/"
            f"{transformations_for(kind)}/v{version}/{provider_id}"
        )
        LOGGER.info("Stored %s asset %s (%s bytes)", kind, provider_id, len(data))
        return StoredObject(url=url, provider_id=provider_id, kind=kind, size_bytes=len(data))

    def delete(self, provider_id: str, *, kind: AssetKind) -> bool:
        target = self._resolve(kind, provider_id)
        if target is None:
            raise ObjectStoreError(f"Invalid provider id: {provider_id!r}")
        if not target.exists():
            LOGGER.debug("Asset %s (%s) already absent", provider_id, kind)
            return False
        try:
            target.unlink()
        except OSError as error:
            raise ObjectStoreError(f"Could not delete {kind} asset {provider_id}: {error}") from error
        LOGGER.info("Deleted %s asset %s", kind, provider_id)
        return True

    def resolve_public_path(self, path: str) -> Optional[Path]:
        """Map the part of a public URL after ``/storage/`` to a file, ignoring transformations."""

        kind, provider_id = self._split_public_path(path)
        if kind is None or provider_id is None:
            return None
        return self._resolve(kind, provider_id)

    def _split_public_path(self, path: str) -> Tuple[Optional[AssetKind], Optional[str]]:
        segments = [segment for segment in path.strip("/").split("/") if segment]
        if len(segments) < 4 or segments[0] not in ("audio", "image") or segments[1] != "upload":
            return None, None
        kind: AssetKind = "audio" if segments[0] == "audio" else "image"
        remainder = segments[2:]
        for index, segment in enumerate(remainder):
            if _VERSION_SEGMENT.match(segment):
                provider_segments = remainder[index + 1 :]
                if not provider_segments:
                    return None, None
                return kind, "/".join(provider_segments)
        return None, None

    def _resolve(self, kind: str, provider_id: str) -> Optional[Path]:
        base = (self._root / kind).resolve()
        candidate = (base / provider_id).resolve()
        try:
            candidate.relative_to(base)
        except ValueError:
            return None
        if candidate == base:
            return None
        return candidate


__all__ = [
    "AUDIO_TRANSFORMATIONS",
    "AssetKind",
    "IMAGE_TRANSFORMATIONS",
    "LocalObjectStore",
    "ObjectStore",
    "ObjectStoreError",
    "StoredObject",
    "canonical_asset_url",
    "detect_image_extension",
    "transformations_for",
]
