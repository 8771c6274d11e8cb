from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List, Tuple

from PIL import ImageDraw, ImageFont

from .. import config
from ..cv import pixelops
from ..utils import to_data_uri

logger = logging.getLogger(__name__)

# Served when the drawing surface itself is unusable. Static data, no I/O.
STATIC_PLACEHOLDER = (
    "data:image/svg+xml;base64,PHN2ZyB3aWR0aD0iNTEyIiBoZWlnaHQ9IjUxMiIgdmlld0JveD0iMCAwIDUxMiA1MTIiIGZpbGw9"
    "Im5vbmUiIHhtbG5zPSJodHRwOi8vd3d3LnczLm9yZy8yMDAwL3N2ZyI+CjxyZWN0IHdpZHRoPSI1MTIiIGhlaWdodD0iNTEyIiBm"
    "aWxsPSIjRjVGNUY1Ii8+Cjx0ZXh0IHg9IjI1NiIgeT0iMjU2IiB0ZXh0LWFuY2hvcj0ibWlkZGxlIiBmaWxsPSIjOEI1Q0Y2IiBm"
    "b250LWZhbWlseT0iSW50ZXIiIGZvbnQtc2l6ZT0iMjQiPkFJIFZpcnR1YWwgVHJ5LU9uPC90ZXh0Pgo8L3N2Zz4="
)

BACKGROUND_STOPS = [
    (0.0, (248, 249, 250, 255)),
    (0.5, (233, 236, 239, 255)),
    (1.0, (222, 226, 230, 255)),
]
FRAME_COLOR = (139, 92, 246)
ICON_COLOR = (236, 72, 153)

# Reference layout is drawn for a 1024px wide canvas and scaled.
_REFERENCE_WIDTH = 1024.0

# (text, y, size, rgba)
_TEXT_LINES: List[Tuple[str, int, int, Tuple[int, int, int, int]]] = [
    ("AI Virtual Try-On", 400, 48, (139, 92, 246, 255)),
    ("Preview Mode", 460, 32, (107, 114, 128, 255)),
    ("Enhanced processing temporarily unavailable", 520, 24, (156, 163, 175, 255)),
    ("Try with high-quality, well-lit photos for best results", 750, 20, (75, 85, 99, 255)),
]
_ICON_POINTS = [(512, 650), (462, 600), (462, 570), (492, 570), (512, 590), (532, 570), (562, 570), (562, 600)]


@dataclass(frozen=True)
class PlaceholderResult:
    result_image: str
    rendered: bool


class PlaceholderGenerator:
    """Branded "preview unavailable" image; never raises."""

    def __init__(
        self,
        *,
        canvas_size: Tuple[int, int] = config.PLACEHOLDER_CANVAS_SIZE,
        quality: float = config.OUTPUT_QUALITY,
    ) -> None:
        self.canvas_size = canvas_size
        self.quality = quality

    def generate(self) -> PlaceholderResult:
        try:
            encoded = self._render()
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Placeholder rendering failed (%s); serving static image.", exc)
            return PlaceholderResult(result_image=STATIC_PLACEHOLDER, rendered=False)
        return PlaceholderResult(result_image=to_data_uri(encoded, "image/jpeg"), rendered=True)

    def _render(self) -> bytes:
        width, height = self.canvas_size
        unit = width / _REFERENCE_WIDTH

        background = pixelops.linear_gradient(
            width, height, (0.0, 0.0), (float(width), float(height)), BACKGROUND_STOPS
        )
        image = background.to_pil()
        draw = ImageDraw.Draw(image, "RGBA")

        inset = int(round(40 * unit))
        draw.rectangle(
            (inset, inset, width - inset, height - inset),
            outline=FRAME_COLOR,
            width=max(1, int(round(8 * unit))),
        )

        for text, y, size, fill in _TEXT_LINES:
            font = ImageFont.load_default(size=max(8, int(round(size * unit))))
            draw.text((width / 2.0, y * unit), text, fill=fill, font=font, anchor="mm")

        icon = [(x * unit, y * unit) for x, y in _ICON_POINTS]
        draw.polygon(icon, fill=ICON_COLOR + (26,), outline=ICON_COLOR, width=max(1, int(round(3 * unit))))

        font = ImageFont.load_default(size=max(8, int(round(16 * unit))))
        draw.text(
            (width / 2.0, height - 65 * unit),
            "Virtual try-on preview",
            fill=(107, 114, 128, 128),
            font=font,
            anchor="mm",
        )

        out = io.BytesIO()
        image.convert("RGB").save(out, format="JPEG", quality=int(round(self.quality * 100)))
        return out.getvalue()
