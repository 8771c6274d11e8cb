from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from .. import config
from ..errors import DecodeError, PreprocessingError, RenderError
from ..metrics import Timer
from . import pixelops
from .pixelops import ImageBuffer

logger = logging.getLogger(__name__)

SUBJECT_PERSON = "person"
SUBJECT_GARMENT = "garment"

BACKGROUND_COLORS = {
    SUBJECT_PERSON: (248, 249, 250),
    SUBJECT_GARMENT: (255, 255, 255),
}

# Landscape and square inputs are reframed to 3:4 portrait.
PORTRAIT_ASPECT = 0.75

LIGHT_THRESHOLD = 230
EDGE_BAND = 0.1
SATURATION_THRESHOLD = 0.1
SKIN_FACTORS = (1.1, 1.05, 0.95)
GARMENT_COLOR_FACTOR = 1.15
VIGNETTE_STRENGTH = 0.1


@dataclass(frozen=True)
class PreprocessingOptions:
    target_size: int = config.TARGET_SIZE
    quality: float = config.OUTPUT_QUALITY
    enhance_contrast: bool = True
    remove_background: bool = False
    normalize_exposure: bool = True
    sharpen: bool = True
    optimize_colors: bool = True
    reduce_noise: bool = False

    @classmethod
    def for_subject(cls, subject: str, **overrides) -> "PreprocessingOptions":
        defaults = {"remove_background": subject == SUBJECT_GARMENT}
        defaults.update(overrides)
        return cls(**defaults)


@dataclass(frozen=True)
class PreprocessedImageResult:
    encoded_image: bytes = field(repr=False)
    original_size: Tuple[int, int]
    processed_size: Tuple[int, int]
    improvements: Tuple[str, ...]
    processing_time_ms: int
    media_type: str = "image/png"


def target_canvas_size(width: int, height: int, target_size: int) -> Tuple[int, int]:
    """Long edge becomes ``target_size``; output is always portrait."""
    aspect = width / float(max(height, 1))
    if aspect < 1:
        return max(1, int(round(target_size * aspect))), target_size
    return int(round(target_size * PORTRAIT_ASPECT)), target_size


def fit_centered(source: ImageBuffer, canvas: ImageBuffer) -> ImageBuffer:
    scale = min(canvas.width / source.width, canvas.height / source.height)
    scaled_w = max(1, int(round(source.width * scale)))
    scaled_h = max(1, int(round(source.height * scale)))
    scaled = pixelops.resize(source, scaled_w, scaled_h)
    offset = ((canvas.width - scaled_w) // 2, (canvas.height - scaled_h) // 2)
    return pixelops.source_over(canvas, scaled, offset=offset)


def _is_light(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[..., :3]
    return np.all(rgb > LIGHT_THRESHOLD, axis=-1)


def background_mask(pixels: np.ndarray) -> np.ndarray:
    """Light pixels in the outer edge band, or light pixels with four light neighbours."""
    height, width = pixels.shape[:2]
    light = _is_light(pixels)

    xs = np.arange(width)
    ys = np.arange(height)
    near_x = (xs < width * EDGE_BAND) | (xs > width * (1 - EDGE_BAND))
    near_y = (ys < height * EDGE_BAND) | (ys > height * (1 - EDGE_BAND))
    near_edge = near_x[None, :] | near_y[:, None]

    surrounded = np.zeros_like(light)
    if height >= 3 and width >= 3:
        surrounded[1:-1, 1:-1] = (
            light[:-2, 1:-1] & light[2:, 1:-1] & light[1:-1, :-2] & light[1:-1, 2:]
        )
    return light & (near_edge | surrounded)


def remove_light_background(buffer: ImageBuffer) -> ImageBuffer:
    return pixelops.alpha_zero_where(buffer, background_mask)


def skin_tone_mask(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[..., :3].astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    spread = rgb.max(axis=-1) - rgb.min(axis=-1)
    return (
        (r > 95) & (g > 40) & (b > 20)
        & (spread > 15)
        & (np.abs(r - g) > 15)
        & (r > g) & (r > b)
    )


def enhance_skin_tones(buffer: ImageBuffer) -> ImageBuffer:
    return pixelops.scale_channels(buffer, SKIN_FACTORS, mask=skin_tone_mask(buffer.pixels))


def enhance_garment_colors(buffer: ImageBuffer) -> ImageBuffer:
    rgb = buffer.pixels[..., :3].astype(np.float64)
    high = rgb.max(axis=-1)
    low = rgb.min(axis=-1)
    with np.errstate(divide="ignore", invalid="ignore"):
        saturation = np.where(high == 0, 0.0, (high - low) / high)
    factors = (GARMENT_COLOR_FACTOR,) * 3
    return pixelops.scale_channels(buffer, factors, mask=saturation > SATURATION_THRESHOLD)


class Preprocessor:
    """Runs the fixed enhancement recipe for one subject image."""

    def run(
        self,
        data: bytes,
        subject: str,
        options: Optional[PreprocessingOptions] = None,
    ) -> PreprocessedImageResult:
        if subject not in BACKGROUND_COLORS:
            raise PreprocessingError(f"unknown subject type {subject!r}")
        options = options or PreprocessingOptions.for_subject(subject)
        timer = Timer("preprocess_seconds", f"subject={subject}")
        try:
            result = self._run(data, subject, options, timer)
        except (DecodeError, RenderError) as exc:
            raise PreprocessingError(f"{subject} preprocessing failed: {exc}") from exc
        finally:
            timer.stop()
        logger.info(
            "Preprocessed %s image %sx%s -> %sx%s in %sms: %s",
            subject,
            result.original_size[0],
            result.original_size[1],
            result.processed_size[0],
            result.processed_size[1],
            result.processing_time_ms,
            ", ".join(result.improvements),
        )
        return result

    def _run(
        self,
        data: bytes,
        subject: str,
        options: PreprocessingOptions,
        timer: Timer,
    ) -> PreprocessedImageResult:
        improvements: List[str] = []

        source = pixelops.decode_image(data)
        improvements.append("Image decoded")

        width, height = target_canvas_size(source.width, source.height, options.target_size)
        canvas = ImageBuffer.blank(width, height, BACKGROUND_COLORS[subject])
        buffer = fit_centered(source, canvas)
        improvements.append("Image resized and positioned")

        if options.normalize_exposure:
            buffer = pixelops.histogram_equalize(buffer)
            improvements.append("Exposure normalized")

        if options.enhance_contrast:
            buffer = pixelops.adjust_contrast(buffer)
            improvements.append("Contrast enhanced")

        if options.reduce_noise:
            buffer = pixelops.convolve3x3(buffer, pixelops.SMOOTH_KERNEL)
            improvements.append("Noise reduced")

        if options.sharpen:
            buffer = pixelops.convolve3x3(buffer, pixelops.SHARPEN_KERNEL)
            improvements.append("Image sharpened")

        if options.remove_background and subject == SUBJECT_GARMENT:
            buffer = remove_light_background(buffer)
            improvements.append("Background removed")

        if options.optimize_colors:
            if subject == SUBJECT_PERSON:
                buffer = enhance_skin_tones(buffer)
                improvements.append("Skin tones enhanced")
            else:
                buffer = enhance_garment_colors(buffer)
                improvements.append("Garment colors enhanced")

        buffer = pixelops.radial_vignette(buffer, strength=VIGNETTE_STRENGTH)
        improvements.append("Center focus vignette applied")

        encoded = pixelops.encode_image(buffer, "PNG", options.quality)
        return PreprocessedImageResult(
            encoded_image=encoded,
            original_size=source.size,
            processed_size=buffer.size,
            improvements=tuple(improvements),
            processing_time_ms=timer.elapsed_ms(),
        )
