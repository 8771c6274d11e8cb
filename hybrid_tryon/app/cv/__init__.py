"""
Pixel-level image processing for the try-on pipeline.

``pixelops`` holds the raster primitives (tone curves, 3x3 convolution,
blend modes) and ``preprocess`` chains them into the per-subject
enhancement recipe applied before the remote compositor is called.
"""

from .pixelops import ImageBuffer
from .preprocess import (
    PreprocessedImageResult,
    PreprocessingOptions,
    Preprocessor,
    SUBJECT_GARMENT,
    SUBJECT_PERSON,
)

__all__ = [
    "ImageBuffer",
    "PreprocessedImageResult",
    "PreprocessingOptions",
    "Preprocessor",
    "SUBJECT_GARMENT",
    "SUBJECT_PERSON",
]
