from __future__ import annotations

import base64

import pytest

from hybrid_tryon.app.cv import pixelops
from hybrid_tryon.app.engines import FallbackCompositor, FixedRatioTorsoEstimator, PlaceholderGenerator
from hybrid_tryon.app.engines.fallback import Box
from hybrid_tryon.app.engines.placeholder import STATIC_PLACEHOLDER
from hybrid_tryon.app.errors import DecodeError

CANVAS = (96, 128)


def decode_data_uri_image(uri: str):
    header, payload = uri.split(",", 1)
    assert header == "data:image/jpeg;base64"
    return pixelops.decode_image(base64.b64decode(payload))


class RecordingEstimator:
    def __init__(self) -> None:
        self.calls = []
        self.inner = FixedRatioTorsoEstimator()

    def estimate(self, person, placement):
        self.calls.append(placement)
        return self.inner.estimate(person, placement)


def test_fixed_ratio_torso_box():
    box = FixedRatioTorsoEstimator().estimate(None, Box(x=10, y=0, width=100, height=200))
    assert box == Box(x=35, y=40, width=50, height=80)


def test_fallback_renders_canvas_sized_jpeg(make_image):
    result = FallbackCompositor(canvas_size=CANVAS, seed=7).composite(make_image(), make_image(64, 64, seed=3))
    image = decode_data_uri_image(result.result_image)
    assert image.size == CANVAS
    assert result.seed == 7


def test_fallback_is_deterministic_for_a_seed(make_image):
    person, garment = make_image(), make_image(64, 64, seed=3)
    first = FallbackCompositor(canvas_size=CANVAS, seed=42).composite(person, garment)
    second = FallbackCompositor(canvas_size=CANVAS, seed=42).composite(person, garment)
    assert first.encoded_image == second.encoded_image


def test_fallback_derives_seed_from_content(make_image):
    person, garment = make_image(), make_image(64, 64, seed=3)
    first = FallbackCompositor(canvas_size=CANVAS).composite(person, garment)
    second = FallbackCompositor(canvas_size=CANVAS).composite(person, garment)
    other = FallbackCompositor(canvas_size=CANVAS).composite(person, make_image(64, 64, seed=4))
    assert first.seed == second.seed
    assert first.encoded_image == second.encoded_image
    assert other.seed != first.seed


def test_fallback_uses_injected_torso_estimator(make_image):
    estimator = RecordingEstimator()
    FallbackCompositor(canvas_size=CANVAS, torso_estimator=estimator, seed=1).composite(
        make_image(), make_image(64, 64, seed=3)
    )
    assert estimator.calls == [Box(x=0, y=0, width=96, height=128)]


def test_fallback_rejects_missing_or_corrupt_inputs(make_image):
    compositor = FallbackCompositor(canvas_size=CANVAS, seed=1)
    with pytest.raises(DecodeError):
        compositor.composite(None, make_image())
    with pytest.raises(DecodeError):
        compositor.composite(make_image(), b"garbage")


def test_placeholder_renders_jpeg():
    result = PlaceholderGenerator(canvas_size=(256, 341)).generate()
    assert result.rendered is True
    assert decode_data_uri_image(result.result_image).size == (256, 341)


def test_placeholder_falls_back_to_static_image(monkeypatch):
    generator = PlaceholderGenerator(canvas_size=(256, 341))

    def broken():
        raise RuntimeError("no drawing surface")

    monkeypatch.setattr(generator, "_render", broken)
    result = generator.generate()
    assert result.rendered is False
    assert result.result_image == STATIC_PLACEHOLDER
    assert base64.b64decode(STATIC_PLACEHOLDER.split(",", 1)[1]).startswith(b"<svg")
