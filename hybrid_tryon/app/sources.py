from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import unquote_to_bytes

import httpx
from PIL import Image, UnidentifiedImageError

from . import config
from .errors import DecodeError, FetchError, ImageTooLargeError

logger = logging.getLogger(__name__)

KIND_URL = "url"
KIND_DATA_URI = "data_uri"
KIND_PATH = "path"
KIND_BYTES = "bytes"
KIND_UNSUPPORTED = "unsupported"

_DATA_URI_RE = re.compile(r"^data:(?P<media>[^;,]*)(?P<params>(;[^;,]*)*?),(?P<payload>.*)$", re.DOTALL)


class SourceImage:
    """Caller-owned image reference; the pipeline only reads it.

    ``width``/``height`` are filled in once, the first time the image is
    decoded, and never change afterwards.
    """

    __slots__ = ("ref", "kind", "_data", "_size")

    def __init__(self, ref: str, kind: str, data: Optional[bytes] = None) -> None:
        self.ref = ref
        self.kind = kind
        self._data = data
        self._size: Optional[Tuple[int, int]] = None

    @classmethod
    def from_ref(cls, ref: str, *, allow_local: bool = False) -> "SourceImage":
        """Classify ``ref``. Filesystem paths are only honoured with ``allow_local``."""
        ref = ref.strip()
        lowered = ref.lower()
        if lowered.startswith("data:"):
            return cls(ref, KIND_DATA_URI)
        if lowered.startswith(("http://", "https://")):
            return cls(ref, KIND_URL)
        if not allow_local:
            return cls(ref, KIND_UNSUPPORTED)
        if lowered.startswith("file://"):
            return cls(ref[len("file://"):], KIND_PATH)
        return cls(ref, KIND_PATH)

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "upload") -> "SourceImage":
        return cls(name, KIND_BYTES, data=data)

    @property
    def inline_data(self) -> Optional[bytes]:
        return self._data

    @property
    def is_remote(self) -> bool:
        return self.kind == KIND_URL

    @property
    def size(self) -> Optional[Tuple[int, int]]:
        return self._size

    def resolve_size(self, data: bytes) -> Tuple[int, int]:
        if self._size is None:
            try:
                with Image.open(io.BytesIO(data)) as image:
                    self._size = image.size
            except (UnidentifiedImageError, OSError, ValueError) as exc:
                raise DecodeError(f"cannot read dimensions of {self.describe()}: {exc}") from exc
        return self._size

    def describe(self) -> str:
        if self.kind == KIND_DATA_URI:
            return f"inline image ({len(self.ref)} chars)"
        return f"{self.kind} {self.ref[:80]}"

    def __repr__(self) -> str:
        return f"SourceImage({self.describe()!r})"


@dataclass(frozen=True)
class FetchedImage:
    data: bytes
    content_type: Optional[str]


def decode_data_uri(uri: str) -> FetchedImage:
    match = _DATA_URI_RE.match(uri)
    if not match:
        raise FetchError("malformed data URI")
    media_type = match.group("media") or "text/plain"
    payload = match.group("payload")
    try:
        if ";base64" in (match.group("params") or ""):
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except (binascii.Error, ValueError) as exc:
        raise FetchError(f"data URI payload is not valid base64: {exc}") from exc
    return FetchedImage(data=data, content_type=media_type.lower())


class ImageFetcher:
    """Resolves a ``SourceImage`` to its encoded bytes.

    An ``httpx.AsyncClient`` may be injected (tests pass one backed by
    ``httpx.MockTransport``); otherwise a short-lived client is opened per
    download.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = config.FETCH_TIMEOUT_SECONDS,
        max_bytes: int = config.MAX_IMAGE_BYTES,
    ) -> None:
        self._client = client
        self.timeout = timeout
        self.max_bytes = max_bytes

    async def fetch(self, source: SourceImage) -> FetchedImage:
        if source.kind == KIND_BYTES:
            return FetchedImage(data=source.inline_data or b"", content_type=None)
        if source.kind == KIND_DATA_URI:
            return decode_data_uri(source.ref)
        if source.kind == KIND_PATH:
            return self._read_path(source.ref)
        if source.kind == KIND_URL:
            return await self._download(source.ref)
        raise FetchError(f"unsupported image reference: {source.describe()}")

    def _read_path(self, ref: str) -> FetchedImage:
        path = Path(ref).expanduser()
        try:
            size = path.stat().st_size
            if size > self.max_bytes:
                raise ImageTooLargeError(f"{path} is {size} bytes; limit is {self.max_bytes}")
            return FetchedImage(data=path.read_bytes(), content_type=None)
        except OSError as exc:
            raise FetchError(f"cannot read {path}: {exc}") from exc

    async def _download(self, url: str) -> FetchedImage:
        headers = {"Accept": "image/*", "Cache-Control": "no-cache"}
        if self._client is not None:
            return await self._get(self._client, url, headers)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await self._get(client, url, headers)

    async def _get(self, client: httpx.AsyncClient, url: str, headers: dict) -> FetchedImage:
        try:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                content_type = response.headers.get("content-type")
                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise ImageTooLargeError(
                        f"{url} declares {declared} bytes; limit is {self.max_bytes}"
                    )
                data = await self._read_capped(response, url)
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"image server returned {exc.response.status_code} for {url}"
            ) from exc
        except httpx.RequestError as exc:
            raise FetchError(f"failed to download {url}: {exc}") from exc
        logger.info("Fetched %s (%s bytes, %s)", url, len(data), content_type)
        return FetchedImage(data=data, content_type=content_type)

    async def _read_capped(self, response: httpx.Response, url: str) -> bytes:
        chunks = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > self.max_bytes:
                raise ImageTooLargeError(f"{url} exceeded {self.max_bytes} bytes; download stopped")
            chunks.append(chunk)
        return b"".join(chunks)
