"""
Raster primitives shared by the preprocessor and the local renderers.

Every operation takes an ``ImageBuffer`` and returns a new one; the input is
never mutated, so one request's buffers can be reused freely across stages.
Pixel math runs on numpy arrays and only decoding, encoding, resampling and
text/shape rasterization go through Pillow.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageOps, UnidentifiedImageError

from .. import config
from ..errors import DecodeError, RenderError

logger = logging.getLogger(__name__)

Color = Tuple[int, ...]
GradientStop = Tuple[float, Color]
BlendFn = Callable[[np.ndarray, np.ndarray], np.ndarray]

SHARPEN_KERNEL: Tuple[float, ...] = (0, -1, 0, -1, 5, -1, 0, -1, 0)
SMOOTH_KERNEL: Tuple[float, ...] = (1 / 9,) * 9

LUMA_WEIGHTS = (0.299, 0.587, 0.114)


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """RGBA raster, ``pixels`` has shape ``(height, width, 4)`` and dtype uint8."""

    pixels: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        arr = self.pixels
        if arr.ndim != 3 or arr.shape[2] != 4 or arr.dtype != np.uint8:
            raise ValueError(f"expected an (H, W, 4) uint8 array, got {arr.shape} {arr.dtype}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    @classmethod
    def blank(cls, width: int, height: int, color: Color = (255, 255, 255, 255)) -> "ImageBuffer":
        rgba = tuple(color) + (255,) * (4 - len(color))
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = np.array(rgba[:4], dtype=np.uint8)
        return cls(pixels)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "ImageBuffer":
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return cls(np.array(image, dtype=np.uint8))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def copy(self) -> "ImageBuffer":
        return ImageBuffer(self.pixels.copy())


def _round(values: np.ndarray) -> np.ndarray:
    # Half-up rounding, as canvas byte conversion does.
    return np.floor(values + 0.5)


def _to_uint8(values: np.ndarray) -> np.ndarray:
    return np.clip(_round(values), 0, 255).astype(np.uint8)


def luminance(buffer: ImageBuffer) -> np.ndarray:
    rgb = buffer.pixels[..., :3].astype(np.float64)
    return rgb[..., 0] * LUMA_WEIGHTS[0] + rgb[..., 1] * LUMA_WEIGHTS[1] + rgb[..., 2] * LUMA_WEIGHTS[2]


# ----------------------
# Codec
# ----------------------


def decode_image(data: bytes, *, max_bytes: Optional[int] = None) -> ImageBuffer:
    """Decode JPEG/PNG (or any raster Pillow reads) into an RGBA buffer."""
    limit = config.MAX_IMAGE_BYTES if max_bytes is None else max_bytes
    if not data:
        raise DecodeError("image data is empty")
    if len(data) > limit:
        raise DecodeError(f"encoded image is {len(data)} bytes; limit is {limit}")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            oriented = ImageOps.exif_transpose(image)
            rgba = oriented.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"not a valid raster image: {exc}") from exc
    return ImageBuffer.from_pil(rgba)


def encode_image(
    buffer: ImageBuffer,
    fmt: str = "PNG",
    quality: float = config.OUTPUT_QUALITY,
    *,
    background: Color = (255, 255, 255),
) -> bytes:
    """Serialize to PNG (alpha kept) or JPEG (flattened onto ``background``)."""
    fmt = fmt.upper()
    if fmt == "JPG":
        fmt = "JPEG"
    out = io.BytesIO()
    try:
        image = buffer.to_pil()
        if fmt == "JPEG":
            flat = Image.new("RGB", image.size, tuple(background[:3]))
            flat.paste(image, mask=image.getchannel("A"))
            flat.save(out, format="JPEG", quality=int(min(100, max(1, round(quality * 100)))))
        elif fmt == "PNG":
            image.save(out, format="PNG")
        else:
            raise RenderError(f"unsupported output format {fmt}")
    except (OSError, ValueError) as exc:
        raise RenderError(f"failed to encode {fmt}: {exc}") from exc
    return out.getvalue()


def resize(buffer: ImageBuffer, width: int, height: int) -> ImageBuffer:
    width, height = max(1, int(width)), max(1, int(height))
    if (width, height) == buffer.size:
        return buffer.copy()
    resized = buffer.to_pil().resize((width, height), Image.LANCZOS)
    return ImageBuffer.from_pil(resized)


# ----------------------
# Tone and neighbourhood operations
# ----------------------


def histogram_equalize(buffer: ImageBuffer) -> ImageBuffer:
    """Rescale RGB so luminance follows the cumulative luminance distribution."""
    rgb = buffer.pixels[..., :3].astype(np.float64)
    lum = np.clip(_round(luminance(buffer)), 0, 255).astype(np.intp)
    histogram = np.bincount(lum.ravel(), minlength=256)
    cdf = np.cumsum(histogram)
    total = lum.size
    normalized = _round(cdf / float(total) * 255.0)
    factor = normalized[lum] / np.maximum(lum, 1)

    out = buffer.pixels.copy()
    out[..., :3] = np.minimum(255, _round(rgb * factor[..., None])).astype(np.uint8)
    return ImageBuffer(out)


def adjust_contrast(buffer: ImageBuffer, factor: float = 1.2) -> ImageBuffer:
    rgb = buffer.pixels[..., :3].astype(np.float64)
    out = buffer.pixels.copy()
    out[..., :3] = _to_uint8((rgb - 128.0) * factor + 128.0)
    return ImageBuffer(out)


def convolve3x3(buffer: ImageBuffer, kernel: Sequence[float]) -> ImageBuffer:
    """Apply a 3x3 kernel to each RGB channel; the 1-pixel border is left as is."""
    weights = np.asarray(kernel, dtype=np.float64).reshape(3, 3)
    out = buffer.pixels.copy()
    height, width = buffer.height, buffer.width
    if height < 3 or width < 3:
        return ImageBuffer(out)

    src = buffer.pixels[..., :3].astype(np.float64)
    acc = np.zeros((height - 2, width - 2, 3), dtype=np.float64)
    for dy in range(3):
        for dx in range(3):
            weight = weights[dy, dx]
            if weight == 0:
                continue
            acc += weight * src[dy:dy + height - 2, dx:dx + width - 2]
    out[1:-1, 1:-1, :3] = _to_uint8(acc)
    return ImageBuffer(out)


def alpha_zero_where(
    buffer: ImageBuffer, predicate: Callable[[np.ndarray], np.ndarray]
) -> ImageBuffer:
    """Make transparent every pixel for which ``predicate(pixels)`` is true."""
    mask = np.asarray(predicate(buffer.pixels), dtype=bool)
    if mask.shape != buffer.pixels.shape[:2]:
        raise ValueError(f"predicate mask has shape {mask.shape}, expected {buffer.pixels.shape[:2]}")
    out = buffer.pixels.copy()
    out[..., 3][mask] = 0
    return ImageBuffer(out)


def scale_channels(
    buffer: ImageBuffer, factors: Tuple[float, float, float], mask: Optional[np.ndarray] = None
) -> ImageBuffer:
    rgb = buffer.pixels[..., :3].astype(np.float64)
    scaled = _to_uint8(rgb * np.asarray(factors, dtype=np.float64))
    out = buffer.pixels.copy()
    if mask is None:
        out[..., :3] = scaled
    else:
        out[..., :3][mask] = scaled[mask]
    return ImageBuffer(out)


def box_blur(
    buffer: ImageBuffer,
    radius: int,
    region: Optional[Tuple[int, int, int, int]] = None,
    mask: Optional[np.ndarray] = None,
) -> ImageBuffer:
    """Box blur ``region`` (x, y, w, h); ``mask`` (region-sized, 0..1) limits where it lands."""
    x, y, w, h = region if region is not None else (0, 0, buffer.width, buffer.height)
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(buffer.width, x + w), min(buffer.height, y + h)
    out = buffer.pixels.copy()
    if x1 <= x0 or y1 <= y0 or radius <= 0:
        return ImageBuffer(out)

    crop = Image.fromarray(buffer.pixels[y0:y1, x0:x1])
    blurred = np.array(crop.filter(ImageFilter.BoxBlur(radius)), dtype=np.float64)
    if mask is None:
        out[y0:y1, x0:x1] = _to_uint8(blurred)
        return ImageBuffer(out)

    weight = mask[y0 - y:y1 - y, x0 - x:x1 - x][..., None]
    original = buffer.pixels[y0:y1, x0:x1].astype(np.float64)
    out[y0:y1, x0:x1] = _to_uint8(original * (1.0 - weight) + blurred * weight)
    return ImageBuffer(out)


def radial_vignette(
    buffer: ImageBuffer,
    strength: float = 0.1,
    inner_ratio: float = 0.4,
    outer_ratio: float = 0.8,
) -> ImageBuffer:
    """Darken towards the corners; radii are fractions of the canvas height."""
    height, width = buffer.height, buffer.width
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    distance = np.hypot(xs + 0.5 - width / 2.0, ys + 0.5 - height / 2.0)
    inner, outer = height * inner_ratio, height * outer_ratio
    t = np.clip((distance - inner) / max(outer - inner, 1e-6), 0.0, 1.0)
    darken = 1.0 - t * strength

    out = buffer.pixels.copy()
    out[..., :3] = _to_uint8(buffer.pixels[..., :3].astype(np.float64) * darken[..., None])
    return ImageBuffer(out)


# ----------------------
# Layers and blend modes
# ----------------------


def linear_gradient(
    width: int,
    height: int,
    start: Tuple[float, float],
    end: Tuple[float, float],
    stops: Sequence[GradientStop],
) -> ImageBuffer:
    """Rasterize a linear gradient layer; stop colors are RGBA with alpha in 0..255."""
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    dx, dy = end[0] - start[0], end[1] - start[1]
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        t = np.zeros((height, width), dtype=np.float64)
    else:
        t = np.clip(((xs + 0.5 - start[0]) * dx + (ys + 0.5 - start[1]) * dy) / length_sq, 0.0, 1.0)

    offsets = [offset for offset, _ in stops]
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    for channel in range(4):
        values = [color[channel] if channel < len(color) else 255 for _, color in stops]
        pixels[..., channel] = _to_uint8(np.interp(t, offsets, values))
    return ImageBuffer(pixels)


def rounded_rect_mask(width: int, height: int, radius: int) -> np.ndarray:
    """0..1 float coverage mask of a rounded rectangle filling ``width x height``."""
    mask = Image.new("L", (max(1, width), max(1, height)), 0)
    ImageDraw.Draw(mask).rounded_rectangle(
        (0, 0, max(0, width - 1), max(0, height - 1)), radius=radius, fill=255
    )
    return np.asarray(mask, dtype=np.float64) / 255.0


def _blend_normal(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return source


def _blend_multiply(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return backdrop * source


def _blend_overlay(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.where(
        backdrop <= 0.5,
        2.0 * backdrop * source,
        1.0 - 2.0 * (1.0 - backdrop) * (1.0 - source),
    )


def _blend_color_burn(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        burned = 1.0 - np.minimum(1.0, (1.0 - backdrop) / source)
    return np.where(backdrop >= 1.0, 1.0, np.where(source <= 0.0, 0.0, burned))


def _composite(
    base: ImageBuffer,
    layer: ImageBuffer,
    blend: BlendFn,
    opacity: float,
    mask: Optional[np.ndarray],
    offset: Tuple[int, int],
) -> ImageBuffer:
    ox, oy = int(offset[0]), int(offset[1])
    bx0, by0 = max(ox, 0), max(oy, 0)
    bx1 = min(ox + layer.width, base.width)
    by1 = min(oy + layer.height, base.height)
    out = base.pixels.copy()
    if bx1 <= bx0 or by1 <= by0 or opacity <= 0:
        return ImageBuffer(out)

    lx0, ly0 = bx0 - ox, by0 - oy
    lx1, ly1 = lx0 + (bx1 - bx0), ly0 + (by1 - by0)
    region = out[by0:by1, bx0:bx1]
    source = layer.pixels[ly0:ly1, lx0:lx1].astype(np.float64) / 255.0

    cb = region[..., :3].astype(np.float64) / 255.0
    ab = region[..., 3].astype(np.float64) / 255.0
    cs = source[..., :3]
    alpha = source[..., 3] * float(opacity)
    if mask is not None:
        alpha = alpha * mask[ly0:ly1, lx0:lx1]

    # Where the backdrop is transparent the source colour shows unblended.
    mixed = (1.0 - ab)[..., None] * cs + ab[..., None] * blend(cb, cs)
    a = alpha[..., None]
    region[..., :3] = _to_uint8((cb * (1.0 - a) + mixed * a) * 255.0)
    region[..., 3] = _to_uint8((ab + alpha * (1.0 - ab)) * 255.0)
    return ImageBuffer(out)


def source_over(
    base: ImageBuffer,
    layer: ImageBuffer,
    opacity: float = 1.0,
    *,
    mask: Optional[np.ndarray] = None,
    offset: Tuple[int, int] = (0, 0),
) -> ImageBuffer:
    return _composite(base, layer, _blend_normal, opacity, mask, offset)


def multiply(
    base: ImageBuffer,
    layer: ImageBuffer,
    opacity: float = 1.0,
    *,
    mask: Optional[np.ndarray] = None,
    offset: Tuple[int, int] = (0, 0),
) -> ImageBuffer:
    return _composite(base, layer, _blend_multiply, opacity, mask, offset)


def overlay(
    base: ImageBuffer,
    layer: ImageBuffer,
    opacity: float = 1.0,
    *,
    mask: Optional[np.ndarray] = None,
    offset: Tuple[int, int] = (0, 0),
) -> ImageBuffer:
    return _composite(base, layer, _blend_overlay, opacity, mask, offset)


def color_burn(
    base: ImageBuffer,
    layer: ImageBuffer,
    opacity: float = 1.0,
    *,
    mask: Optional[np.ndarray] = None,
    offset: Tuple[int, int] = (0, 0),
) -> ImageBuffer:
    return _composite(base, layer, _blend_color_burn, opacity, mask, offset)
