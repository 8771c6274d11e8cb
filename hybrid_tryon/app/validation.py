from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import config
from .cv.pixelops import decode_image
from .errors import DecodeError, FetchError, ImageTooLargeError, ValidationError
from .sources import KIND_DATA_URI, KIND_UNSUPPORTED, ImageFetcher, SourceImage

logger = logging.getLogger(__name__)

MIN_RECOMMENDED_SIDE = 256
ASPECT_RATIO_RANGE = (0.5, 2.0)


@dataclass
class ImageIssue:
    code: str
    message: str
    recommendation: str
    blocking: bool = True


@dataclass
class ValidatedImage:
    label: str
    source: Optional[SourceImage]
    data: Optional[bytes] = None
    issues: List[ImageIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(issue.blocking for issue in self.issues)

    @property
    def blocking_messages(self) -> List[str]:
        return [issue.message for issue in self.issues if issue.blocking]


async def evaluate_source(
    source: Optional[SourceImage],
    label: str,
    fetcher: ImageFetcher,
) -> ValidatedImage:
    """Fetch ``source`` once and check it is a usable raster of sensible size.

    The fetched bytes are kept on the result even when issues are found so
    the local fallback renderer can still try to use them.
    """
    result = ValidatedImage(label=label, source=source)
    if source is None:
        result.issues.append(
            ImageIssue(
                code="missing_image",
                message=f"{label} is required",
                recommendation=f"Provide a {label.lower()}.",
            )
        )
        return result

    if source.kind == KIND_UNSUPPORTED:
        result.issues.append(
            ImageIssue(
                code="unsupported_source",
                message=f"{label}: only http(s) URLs and image data URLs are accepted",
                recommendation="Send the image as an http(s) URL or a data:image/... URL.",
            )
        )
        return result

    if source.kind == KIND_DATA_URI and not source.ref.lower().startswith("data:image/"):
        result.issues.append(
            ImageIssue(
                code="invalid_data_uri",
                message=f"{label}: data URL is not a valid image",
                recommendation="Use a valid image data URL.",
            )
        )
        return result

    try:
        fetched = await fetcher.fetch(source)
    except ImageTooLargeError as exc:
        logger.warning("%s is over the size limit: %s", label, exc)
        result.issues.append(_too_large(label))
        return result
    except FetchError as exc:
        logger.warning("%s could not be fetched: %s", label, exc)
        result.issues.append(
            ImageIssue(
                code="unreachable_image",
                message=f"{label}: image is not accessible",
                recommendation="Check that the image URL is correct and reachable.",
            )
        )
        return result
    result.data = fetched.data

    if fetched.content_type and source.is_remote and not fetched.content_type.startswith("image/"):
        result.issues.append(
            ImageIssue(
                code="not_an_image",
                message=f"{label}: file is not a valid image",
                recommendation="Use a PNG or JPEG image file.",
            )
        )

    min_bytes = config.MIN_REMOTE_IMAGE_BYTES if source.is_remote else config.MIN_INLINE_IMAGE_BYTES
    size = len(fetched.data)
    if size < min_bytes:
        result.issues.append(
            ImageIssue(
                code="too_small",
                message=f"{label}: image file size is very small",
                recommendation="Use a higher resolution image.",
            )
        )
    if size > config.MAX_IMAGE_BYTES:
        result.issues.append(_too_large(label))
        return result

    try:
        decode_image(fetched.data)
        width, height = source.resolve_size(fetched.data)
    except DecodeError as exc:
        logger.warning("%s failed to decode: %s", label, exc)
        result.issues.append(
            ImageIssue(
                code="invalid_image",
                message=f"{label}: image could not be decoded",
                recommendation="Check that the image file is not corrupted.",
            )
        )
        return result

    if width < MIN_RECOMMENDED_SIDE or height < MIN_RECOMMENDED_SIDE:
        result.issues.append(
            ImageIssue(
                code="low_resolution",
                message=f"{label}: resolution is low ({width}x{height})",
                recommendation=f"Upload a larger image (min {MIN_RECOMMENDED_SIDE}x{MIN_RECOMMENDED_SIDE}).",
                blocking=False,
            )
        )
    aspect = width / float(max(height, 1))
    if not ASPECT_RATIO_RANGE[0] <= aspect <= ASPECT_RATIO_RANGE[1]:
        result.issues.append(
            ImageIssue(
                code="unusual_aspect_ratio",
                message=f"{label}: image has an unusual aspect ratio",
                recommendation="Use images with more standard proportions.",
                blocking=False,
            )
        )
    return result


def _too_large(label: str) -> ImageIssue:
    return ImageIssue(
        code="too_large",
        message=f"{label}: image file size is too large",
        recommendation="Use a smaller image file (under 10MB).",
    )


def ensure_valid(*images: ValidatedImage) -> None:
    """Raise ``ValidationError`` listing every blocking issue across ``images``."""
    messages = [message for image in images for message in image.blocking_messages]
    if messages:
        raise ValidationError(", ".join(messages))
