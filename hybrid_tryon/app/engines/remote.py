from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from .. import config
from ..errors import ClientError, CompositorTimeoutError, ServiceError

logger = logging.getLogger(__name__)

TRYON_PROMPT = (
    "Virtual try-on: Replace the clothing in the image with the outfit from the "
    "reference image. Maintain the person's pose, face, body shape, and background. "
    "Ensure realistic lighting, shadows, and fabric draping. The new clothing should "
    "fit naturally on the person's body."
)


@dataclass(frozen=True)
class RemoteCompositeResult:
    result_image_url: str
    processing_time_ms: int


class RemoteCompositor(Protocol):
    """External garment-swap capability.

    Implementations raise ``ClientError`` for requests that retrying cannot
    fix, and ``ServiceError`` / ``CompositorTimeoutError`` for transient
    failures.
    """

    async def composite(self, person_image: bytes, garment_image: bytes) -> RemoteCompositeResult:
        ...


@dataclass(frozen=True)
class RemoteConfig:
    url: str
    secret: str
    connection_key: str
    action_id: str
    timeout: float
    output_size: str = "1024x1024"
    output_quality: str = "hd"

    @classmethod
    def from_env(cls) -> "RemoteConfig":
        return cls(
            url=config.REMOTE_URL,
            secret=config.REMOTE_SECRET,
            connection_key=config.REMOTE_CONNECTION_KEY,
            action_id=config.REMOTE_ACTION_ID,
            timeout=config.REMOTE_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.url and self.secret and self.connection_key)


class HttpRemoteCompositor:
    """Multipart client for the hosted image-edits endpoint."""

    def __init__(
        self,
        remote_cfg: Optional[RemoteConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.cfg = remote_cfg or RemoteConfig.from_env()
        self._client = client

    async def composite(self, person_image: bytes, garment_image: bytes) -> RemoteCompositeResult:
        if not self.cfg.configured:
            raise ClientError("remote compositor is not configured")
        if not person_image or not garment_image:
            raise ClientError("both person and garment images are required")

        start = time.perf_counter()
        if self._client is not None:
            response = await self._post(self._client, person_image, garment_image)
        else:
            async with httpx.AsyncClient(timeout=self.cfg.timeout) as client:
                response = await self._post(client, person_image, garment_image)

        url = self._parse_result_url(response)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.info("Remote compositor returned a result in %sms", elapsed_ms)
        return RemoteCompositeResult(result_image_url=url, processing_time_ms=elapsed_ms)

    def _headers(self) -> Dict[str, str]:
        # Content-Type is left to httpx so the multipart boundary is set.
        return {
            "x-pica-secret": self.cfg.secret,
            "x-pica-connection-key": self.cfg.connection_key,
            "x-pica-action-id": self.cfg.action_id,
        }

    def _form_fields(self) -> Dict[str, str]:
        return {
            "prompt": TRYON_PROMPT,
            "model": "dall-e-3",
            "n": "1",
            "response_format": "url",
            "size": self.cfg.output_size,
            "quality": self.cfg.output_quality,
            "style": "natural",
        }

    async def _post(
        self, client: httpx.AsyncClient, person_image: bytes, garment_image: bytes
    ) -> httpx.Response:
        files = {
            "image": ("person.png", person_image, "image/png"),
            "reference_image": ("garment.png", garment_image, "image/png"),
        }
        try:
            response = await client.post(
                self.cfg.url,
                headers=self._headers(),
                data=self._form_fields(),
                files=files,
            )
        except httpx.TimeoutException as exc:
            raise CompositorTimeoutError(f"remote compositor timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ServiceError(f"remote compositor unreachable: {exc}") from exc

        status_code = response.status_code
        if status_code == 408:
            raise CompositorTimeoutError("remote compositor timed out (408)", status_code=status_code)
        if status_code == 429:
            raise ServiceError("remote compositor is rate limiting (429)", status_code=status_code)
        if 400 <= status_code < 500:
            logger.warning("Remote compositor rejected request: %s %s", status_code, response.text[:200])
            raise ClientError(
                f"remote compositor error: {status_code} {response.reason_phrase}",
                status_code=status_code,
            )
        if status_code >= 500:
            logger.warning("Remote compositor server error: %s %s", status_code, response.text[:200])
            raise ServiceError(
                f"remote compositor error: {status_code} {response.reason_phrase}",
                status_code=status_code,
            )
        return response

    @staticmethod
    def _parse_result_url(response: httpx.Response) -> str:
        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise ServiceError("remote compositor returned a non-JSON body") from exc
        try:
            url = payload["data"][0]["url"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ServiceError("invalid response from remote compositor: no result image") from exc
        if not isinstance(url, str) or not url:
            raise ServiceError("invalid response from remote compositor: no result image")
        return url
