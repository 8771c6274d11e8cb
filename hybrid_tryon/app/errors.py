"""
Error taxonomy for the hybrid compositing pipeline.

None of these escape ``HybridTryOnPipeline.process_composite``; each one is
either recovered where it is raised or converted into a lower-fidelity
result by the pipeline.
"""

from __future__ import annotations


class TryOnError(RuntimeError):
    """Base class for pipeline failures."""


class ValidationError(TryOnError):
    """Input image is missing, malformed, or outside the accepted size range."""


class FetchError(TryOnError):
    """Image source could not be retrieved."""


class ImageTooLargeError(FetchError):
    """Source is bigger than the encoded-size ceiling; reading stopped early."""


class DecodeError(TryOnError):
    """Raster bytes could not be parsed or exceed the size ceiling."""


class PreprocessingError(TryOnError):
    pass


class RenderError(TryOnError):
    """Drawing or encoding failed inside a local renderer."""


class RemoteCompositorError(TryOnError):
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClientError(RemoteCompositorError):
    """Malformed request; retrying cannot help."""

    retryable = False


class ServiceError(RemoteCompositorError):
    retryable = True


class CompositorTimeoutError(RemoteCompositorError):
    retryable = True
