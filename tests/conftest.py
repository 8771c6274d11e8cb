from __future__ import annotations

import base64
import io

import numpy as np
import pytest
from PIL import Image

from hybrid_tryon.app import metrics


def noise_png(width: int = 96, height: int = 128, seed: int = 0) -> bytes:
    # Random pixels keep the PNG above the inline minimum size.
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buffer = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buffer, format="PNG")
    return buffer.getvalue()


def data_uri(data: bytes, media_type: str = "image/png") -> str:
    return f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"


@pytest.fixture
def make_image():
    return noise_png


@pytest.fixture
def make_data_uri():
    return data_uri


@pytest.fixture(autouse=True)
def _clear_metrics():
    metrics.reset()
    yield
    metrics.reset()
