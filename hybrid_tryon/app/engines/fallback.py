from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .. import config
from ..cv import pixelops
from ..cv.pixelops import ImageBuffer
from ..errors import DecodeError, RenderError
from ..metrics import Timer
from ..utils import seed_from_content, to_data_uri

logger = logging.getLogger(__name__)

BACKGROUND = (248, 249, 250)
TORSO_CORNER_RADIUS = 20
TORSO_BLUR_RADIUS = 3
GARMENT_COVER_SCALE = 1.1

# (opacity, blend) applied in order: texture, base colour, highlights.
GARMENT_PASSES = (
    (0.4, pixelops.color_burn),
    (0.9, pixelops.multiply),
    (0.3, pixelops.overlay),
)

NOISE_TILE = 128
FOLD_COUNT = 5
VIGNETTE_STRENGTH = 0.2
WATERMARK_TEXT = "AI Virtual Try-On Preview"


@dataclass(frozen=True)
class Box:
    x: int
    y: int
    width: int
    height: int


class TorsoEstimator(Protocol):
    """Locates the garment region on the placed person image (canvas coordinates)."""

    def estimate(self, person: ImageBuffer, placement: Box) -> Box:
        ...


@dataclass(frozen=True)
class FixedRatioTorsoEstimator:
    """Torso as a fixed fraction of the person's bounding box; no body detection."""

    left: float = 0.25
    top: float = 0.2
    width: float = 0.5
    height: float = 0.4

    def estimate(self, person: ImageBuffer, placement: Box) -> Box:
        return Box(
            x=int(round(placement.x + placement.width * self.left)),
            y=int(round(placement.y + placement.height * self.top)),
            width=max(1, int(round(placement.width * self.width))),
            height=max(1, int(round(placement.height * self.height))),
        )


@dataclass(frozen=True)
class FallbackResult:
    result_image: str
    encoded_image: bytes
    processing_time_ms: int
    seed: int


class FallbackCompositor:
    """Local preview renderer: layered alpha blending of the garment over the torso.

    All visual randomness comes from ``random.Random(seed)``. Without an
    explicit seed the seed is derived from the input bytes, so identical
    inputs always produce identical previews.
    """

    def __init__(
        self,
        *,
        canvas_size: Tuple[int, int] = config.FALLBACK_CANVAS_SIZE,
        torso_estimator: Optional[TorsoEstimator] = None,
        seed: Optional[int] = None,
        quality: float = config.OUTPUT_QUALITY,
    ) -> None:
        self.canvas_size = canvas_size
        self.torso_estimator = torso_estimator or FixedRatioTorsoEstimator()
        self.seed = seed
        self.quality = quality

    def composite(self, person_data: Optional[bytes], garment_data: Optional[bytes]) -> FallbackResult:
        if not person_data:
            raise DecodeError("person image is unavailable")
        if not garment_data:
            raise DecodeError("garment image is unavailable")

        timer = Timer("fallback_seconds", "render")
        person = pixelops.decode_image(person_data)
        garment = pixelops.decode_image(garment_data)
        seed = self.seed if self.seed is not None else seed_from_content(
            [person_data, garment_data], prefix="fallback:"
        )

        try:
            canvas = self.render(person, garment, random.Random(seed))
            encoded = pixelops.encode_image(canvas, "JPEG", self.quality)
        except (ValueError, OSError) as exc:
            raise RenderError(f"fallback render failed: {exc}") from exc
        finally:
            timer.stop()

        elapsed_ms = timer.elapsed_ms()
        logger.info("Fallback composite rendered in %sms (seed=%s)", elapsed_ms, seed)
        return FallbackResult(
            result_image=to_data_uri(encoded, "image/jpeg"),
            encoded_image=encoded,
            processing_time_ms=elapsed_ms,
            seed=seed,
        )

    def render(self, person: ImageBuffer, garment: ImageBuffer, rng: random.Random) -> ImageBuffer:
        width, height = self.canvas_size
        canvas = ImageBuffer.blank(width, height, BACKGROUND)

        scale = min(width / person.width, height / person.height)
        placed_w = max(1, int(round(person.width * scale)))
        placed_h = max(1, int(round(person.height * scale)))
        placement = Box((width - placed_w) // 2, (height - placed_h) // 2, placed_w, placed_h)
        canvas = pixelops.source_over(
            canvas,
            pixelops.resize(person, placed_w, placed_h),
            offset=(placement.x, placement.y),
        )

        torso = self.torso_estimator.estimate(person, placement)
        clip = pixelops.rounded_rect_mask(torso.width, torso.height, TORSO_CORNER_RADIUS)
        canvas = pixelops.box_blur(
            canvas,
            TORSO_BLUR_RADIUS,
            region=(torso.x, torso.y, torso.width, torso.height),
            mask=clip,
        )

        layer = self._fit_garment(garment, torso)
        for opacity, blend in GARMENT_PASSES:
            canvas = blend(canvas, layer, opacity, mask=clip, offset=(torso.x, torso.y))

        canvas = self._add_fabric_effects(canvas, torso, rng)
        canvas = pixelops.radial_vignette(canvas, strength=VIGNETTE_STRENGTH)
        return self._watermark(canvas)

    @staticmethod
    def _fit_garment(garment: ImageBuffer, torso: Box) -> ImageBuffer:
        """Scale the garment to cover the torso box and crop it to that box."""
        scale = max(torso.width / garment.width, torso.height / garment.height) * GARMENT_COVER_SCALE
        scaled_w = max(torso.width, int(math.ceil(garment.width * scale)))
        scaled_h = max(torso.height, int(math.ceil(garment.height * scale)))
        scaled = pixelops.resize(garment, scaled_w, scaled_h)
        left = (scaled_w - torso.width) // 2
        top = (scaled_h - torso.height) // 2
        crop = scaled.pixels[top:top + torso.height, left:left + torso.width]
        return ImageBuffer(np.ascontiguousarray(crop))

    def _add_fabric_effects(self, canvas: ImageBuffer, torso: Box, rng: random.Random) -> ImageBuffer:
        origin = (torso.x, torso.y)

        shading = pixelops.linear_gradient(
            torso.width,
            torso.height,
            (0.0, 0.0),
            (float(torso.width), float(torso.height)),
            [
                (0.0, (255, 255, 255, 26)),
                (0.5, (255, 255, 255, 0)),
                (1.0, (0, 0, 0, 26)),
            ],
        )
        canvas = pixelops.overlay(canvas, shading, 0.5, offset=origin)

        canvas = pixelops.multiply(canvas, self._fabric_grain(torso, rng), 0.1, offset=origin)

        unit = self.canvas_size[0] / 1024.0
        for _ in range(FOLD_COUNT):
            center_x = torso.x + rng.random() * torso.width
            center_y = torso.y + rng.random() * torso.height
            fold_w = max(2, int(round((20 + rng.random() * 40) * unit)))
            fold_h = max(1, int(round((5 + rng.random() * 10) * unit)))
            angle = rng.random() * 180.0
            strip = pixelops.linear_gradient(
                fold_w,
                fold_h,
                (0.0, 0.0),
                (float(fold_w), 0.0),
                [
                    (0.0, (0, 0, 0, 26)),
                    (0.5, (255, 255, 255, 26)),
                    (1.0, (0, 0, 0, 26)),
                ],
            )
            rotated = ImageBuffer.from_pil(
                strip.to_pil().rotate(angle, resample=Image.BICUBIC, expand=True)
            )
            offset = (
                int(round(center_x - rotated.width / 2.0)),
                int(round(center_y - rotated.height / 2.0)),
            )
            canvas = pixelops.overlay(canvas, rotated, 0.1, offset=offset)
        return canvas

    @staticmethod
    def _fabric_grain(torso: Box, rng: random.Random) -> ImageBuffer:
        noise_rng = np.random.default_rng(rng.getrandbits(64))
        values = 220.0 + noise_rng.random((NOISE_TILE, NOISE_TILE)) * 35.0
        tile = np.empty((NOISE_TILE, NOISE_TILE, 4), dtype=np.uint8)
        tile[..., :3] = np.floor(values)[..., None].astype(np.uint8)
        tile[..., 3] = 30
        reps_y = -(-torso.height // NOISE_TILE)
        reps_x = -(-torso.width // NOISE_TILE)
        tiled = np.tile(tile, (reps_y, reps_x, 1))[: torso.height, : torso.width]
        return ImageBuffer(np.ascontiguousarray(tiled))

    @staticmethod
    def _watermark(canvas: ImageBuffer) -> ImageBuffer:
        base = canvas.to_pil()
        layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        font = ImageFont.load_default(size=max(10, base.width // 50))
        draw.text((21, 13), WATERMARK_TEXT, fill=(0, 0, 0, 128), font=font)
        draw.text((20, 12), WATERMARK_TEXT, fill=(255, 255, 255, 204), font=font)
        return ImageBuffer.from_pil(Image.alpha_composite(base, layer))
