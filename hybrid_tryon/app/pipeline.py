from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from . import config
from .breaker import CircuitBreaker
from .cv import SUBJECT_GARMENT, SUBJECT_PERSON, PreprocessingOptions, Preprocessor
from .engines import (
    FallbackCompositor,
    HttpRemoteCompositor,
    PlaceholderGenerator,
    RemoteCompositeResult,
    RemoteCompositor,
)
from .errors import RemoteCompositorError, ValidationError
from .metrics import Timer, increment
from .schemas import (
    METHOD_FALLBACK,
    METHOD_PLACEHOLDER,
    METHOD_REMOTE,
    QUALITY_SCORES,
    CompositeRequest,
    CompositeResult,
)
from .sources import ImageFetcher, SourceImage
from .validation import ValidatedImage, ensure_valid, evaluate_source

logger = logging.getLogger(__name__)

BREAKER_OPEN_REASON = "service temporarily unavailable due to previous failures"
RETRIES_EXHAUSTED_REASON = "remote compositor failed after all retries"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.REMOTE_MAX_ATTEMPTS
    attempt_timeout: float = config.REMOTE_TIMEOUT_SECONDS
    retry_delay: float = config.REMOTE_RETRY_DELAY_SECONDS


@dataclass
class _RemoteOutcome:
    result: Optional[RemoteCompositeResult]
    error: Optional[str]


class HybridTryOnPipeline:
    """Validate -> circuit check -> preprocess -> remote -> fallback -> placeholder.

    ``process_composite`` never raises: every failure is either recovered
    in place or turned into a lower-fidelity result.
    """

    def __init__(
        self,
        *,
        remote: Optional[RemoteCompositor] = None,
        breaker: Optional[CircuitBreaker] = None,
        fetcher: Optional[ImageFetcher] = None,
        preprocessor: Optional[Preprocessor] = None,
        fallback: Optional[FallbackCompositor] = None,
        placeholder: Optional[PlaceholderGenerator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        target_size: int = config.TARGET_SIZE,
        allow_local_sources: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.remote = remote if remote is not None else HttpRemoteCompositor()
        self.breaker = breaker if breaker is not None else CircuitBreaker()
        self.fetcher = fetcher or ImageFetcher()
        self.preprocessor = preprocessor or Preprocessor()
        self.fallback = fallback or FallbackCompositor()
        self.placeholder = placeholder or PlaceholderGenerator()
        self.retry_policy = retry_policy or RetryPolicy()
        self.target_size = target_size
        # Paths are for in-process callers only; the HTTP surface never sets this.
        self.allow_local_sources = allow_local_sources
        self._sleep = sleep

    async def process_composite(self, request: CompositeRequest) -> CompositeResult:
        timer = Timer("composite_seconds", "total")
        try:
            result = await self._process(request, timer)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error in hybrid try-on pipeline")
            result = self._use_placeholder(
                f"unexpected error in try-on process: {exc}", timer, error=str(exc)
            )
        timer.stop()
        increment("composite_total", f"method={result.method}")
        logger.info(
            "Composite finished via %s (score %.1f) in %sms",
            result.method,
            result.quality_score,
            result.processing_time_ms,
        )
        return result

    async def _process(self, request: CompositeRequest, timer: Timer) -> CompositeResult:
        person_source = self._source(request.person_image)
        garment_source = self._source(request.garment_image)

        person, garment = await asyncio.gather(
            evaluate_source(person_source, "Person image", self.fetcher),
            evaluate_source(garment_source, "Garment image", self.fetcher),
        )
        recommendations = _collect_recommendations(person, garment)

        try:
            ensure_valid(person, garment)
        except ValidationError as exc:
            reason = f"validation failed: {exc}"
            logger.warning("Image validation failed: %s", reason)
            return self._use_fallback(
                person.data, garment.data, reason, timer, recommendations=recommendations
            )

        if self.breaker.should_skip():
            increment("breaker_skips_total", "remote")
            logger.warning("Remote compositor in cooldown; going straight to fallback.")
            return self._use_fallback(
                person.data, garment.data, BREAKER_OPEN_REASON, timer, recommendations=recommendations
            )

        person_bytes, person_log, person_done = self._preprocess(person.data, SUBJECT_PERSON)
        garment_bytes, garment_log, garment_done = self._preprocess(garment.data, SUBJECT_GARMENT)
        improvements = person_log + garment_log

        outcome = await self._call_remote(person_bytes, garment_bytes)
        if outcome.result is not None:
            self.breaker.record_success()
            return CompositeResult(
                result_image=outcome.result.result_image_url,
                processing_time_ms=timer.elapsed_ms(),
                method=METHOD_REMOTE,
                # False when both inputs fell back to their originals.
                preprocessing_applied=person_done or garment_done,
                quality_score=QUALITY_SCORES[METHOD_REMOTE],
                improvements=improvements,
                recommendations=recommendations,
            )

        self.breaker.record_failure()
        return self._use_fallback(
            person.data,
            garment.data,
            outcome.error or RETRIES_EXHAUSTED_REASON,
            timer,
            improvements=improvements,
            recommendations=recommendations,
        )

    def _source(self, ref: Optional[str]) -> Optional[SourceImage]:
        if not ref:
            return None
        return SourceImage.from_ref(ref, allow_local=self.allow_local_sources)

    def _preprocess(self, data: Optional[bytes], subject: str) -> Tuple[bytes, List[str], bool]:
        prefix = subject.capitalize()
        try:
            processed = self.preprocessor.run(
                data or b"", subject, PreprocessingOptions.for_subject(subject, target_size=self.target_size)
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("%s preprocessing failed, using original: %s", prefix, exc)
            return data or b"", [f"{prefix}: preprocessing failed, using original"], False
        return processed.encoded_image, [f"{prefix}: {item}" for item in processed.improvements], True

    async def _call_remote(self, person: bytes, garment: bytes) -> _RemoteOutcome:
        policy = self.retry_policy
        last_error = RETRIES_EXHAUSTED_REASON
        for attempt in range(1, policy.max_attempts + 1):
            logger.info("Remote compositor attempt %s/%s", attempt, policy.max_attempts)
            try:
                result = await asyncio.wait_for(
                    self.remote.composite(person, garment), timeout=policy.attempt_timeout
                )
            except asyncio.TimeoutError:
                last_error = "remote compositor request timed out"
                retryable = True
                increment("remote_attempts_total", "outcome=timeout")
            except RemoteCompositorError as exc:
                last_error = str(exc)
                retryable = exc.retryable
                increment("remote_attempts_total", f"outcome={type(exc).__name__}")
            except Exception as exc:  # pylint: disable=broad-except
                last_error = f"remote compositor failed: {exc}"
                retryable = True
                increment("remote_attempts_total", "outcome=error")
            else:
                increment("remote_attempts_total", "outcome=success")
                return _RemoteOutcome(result=result, error=None)

            logger.warning("Remote compositor attempt %s failed: %s", attempt, last_error)
            if not retryable:
                break
            if attempt < policy.max_attempts:
                await self._sleep(policy.retry_delay)
        return _RemoteOutcome(result=None, error=last_error)

    def _use_fallback(
        self,
        person: Optional[bytes],
        garment: Optional[bytes],
        reason: str,
        timer: Timer,
        *,
        improvements: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None,
    ) -> CompositeResult:
        logger.info("Using fallback compositor: %s", reason)
        try:
            rendered = self.fallback.composite(person, garment)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Fallback compositor failed (%s); using placeholder.", exc)
            return self._use_placeholder(
                f"{reason} (fallback also failed)",
                timer,
                error=str(exc),
                improvements=improvements,
                recommendations=recommendations,
            )
        return CompositeResult(
            result_image=rendered.result_image,
            processing_time_ms=timer.elapsed_ms(),
            method=METHOD_FALLBACK,
            fallback_reason=reason,
            preprocessing_applied=False,
            quality_score=QUALITY_SCORES[METHOD_FALLBACK],
            improvements=improvements or [],
            recommendations=recommendations or [],
        )

    def _use_placeholder(
        self,
        reason: str,
        timer: Timer,
        *,
        error: Optional[str] = None,
        improvements: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None,
    ) -> CompositeResult:
        placeholder = self.placeholder.generate()
        return CompositeResult(
            result_image=placeholder.result_image,
            processing_time_ms=timer.elapsed_ms(),
            error=error,
            method=METHOD_PLACEHOLDER,
            fallback_reason=reason,
            preprocessing_applied=False,
            quality_score=QUALITY_SCORES[METHOD_PLACEHOLDER],
            improvements=improvements or [],
            recommendations=recommendations or [],
        )


def _collect_recommendations(*images: ValidatedImage) -> List[str]:
    seen: List[str] = []
    for image in images:
        for issue in image.issues:
            if issue.recommendation not in seen:
                seen.append(issue.recommendation)
    return seen


def explain(result: CompositeResult) -> str:
    score = f"{result.quality_score:.1f}/10"
    if result.method == METHOD_REMOTE:
        return (
            "Generated using advanced AI virtual try-on technology with image "
            f"preprocessing. Quality score: {score}"
        )
    if result.method == METHOD_FALLBACK:
        return (
            "Generated using our enhanced preview system with advanced image processing. "
            "This shows how the outfit might look - for best results, try with "
            f"high-quality, well-lit photos. Quality score: {score}"
        )
    if result.method == METHOD_PLACEHOLDER:
        return (
            "This is a preview result. For optimal virtual try-on results, please ensure "
            "your photos are high-quality, well-lit, and clearly show the person and "
            f"clothing item. Quality score: {score}"
        )
    return "Virtual try-on result generated"


def improvement_suggestions(result: CompositeResult) -> List[str]:
    suggestions: List[str] = []
    if result.method != METHOD_REMOTE:
        suggestions.extend(
            [
                "Use high-resolution, well-lit photos for better results",
                "Ensure the person is facing the camera directly",
                "Use a plain background for clearer person detection",
                "Make sure clothing items are clearly visible and not wrinkled",
            ]
        )
    if result.quality_score < 8:
        suggestions.extend(
            [
                "Try different poses or camera angles",
                "Ensure good lighting conditions",
                "Use images with higher contrast",
            ]
        )
    return suggestions
