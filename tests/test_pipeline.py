from __future__ import annotations

import asyncio
import logging

import pytest

from hybrid_tryon.app.breaker import CircuitBreaker
from hybrid_tryon.app.engines import FallbackCompositor, PlaceholderGenerator, RemoteCompositeResult
from hybrid_tryon.app.errors import ClientError, ServiceError, ValidationError
from hybrid_tryon.app.metrics import snapshot
from hybrid_tryon.app.pipeline import (
    BREAKER_OPEN_REASON,
    HybridTryOnPipeline,
    RetryPolicy,
    explain,
    improvement_suggestions,
)
from hybrid_tryon.app.schemas import CompositeRequest
from hybrid_tryon.app.validation import ImageIssue, ValidatedImage, ensure_valid

RESULT_URL = "https://cdn.test/result.png"
HANG = "hang"


class FakeRemote:
    """Plays back one outcome per call; the last outcome repeats."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes) or [RESULT_URL]
        self.calls = 0
        self.received = []

    async def composite(self, person_image: bytes, garment_image: bytes) -> RemoteCompositeResult:
        self.calls += 1
        self.received.append((person_image, garment_image))
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if outcome == HANG:
            await asyncio.sleep(10)
        if isinstance(outcome, Exception):
            raise outcome
        return RemoteCompositeResult(result_image_url=outcome, processing_time_ms=5)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_pipeline(remote, breaker=None, sleeps=None, max_attempts=2):
    async def fake_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    return HybridTryOnPipeline(
        remote=remote,
        breaker=breaker or CircuitBreaker(threshold=3, cooldown_seconds=1800),
        fallback=FallbackCompositor(canvas_size=(96, 128)),
        placeholder=PlaceholderGenerator(canvas_size=(96, 128)),
        retry_policy=RetryPolicy(max_attempts=max_attempts, attempt_timeout=0.05, retry_delay=10),
        target_size=128,
        sleep=fake_sleep,
    )


def valid_request(make_image, make_data_uri) -> CompositeRequest:
    return CompositeRequest(
        person_image=make_data_uri(make_image(96, 128, seed=1)),
        garment_image=make_data_uri(make_image(96, 96, seed=2)),
    )


def run(pipeline, request):
    return asyncio.run(pipeline.process_composite(request))


def test_remote_success(make_image, make_data_uri):
    remote = FakeRemote(RESULT_URL)
    breaker = CircuitBreaker(threshold=3, cooldown_seconds=1800)
    result = run(make_pipeline(remote, breaker), valid_request(make_image, make_data_uri))

    assert result.success is True
    assert result.method == "remote"
    assert result.result_image == RESULT_URL
    assert result.quality_score == 9.5
    assert result.preprocessing_applied is True
    assert result.fallback_reason is None
    assert "Person: Image sharpened" in result.improvements
    assert "Garment: Background removed" in result.improvements
    assert remote.calls == 1
    assert breaker.consecutive_failures == 0
    # Preprocessed PNGs are sent, not the raw uploads.
    person_sent, garment_sent = remote.received[0]
    assert person_sent.startswith(b"\x89PNG")
    assert garment_sent.startswith(b"\x89PNG")


def test_remote_timeouts_fall_back_after_retries(make_image, make_data_uri):
    remote = FakeRemote(HANG)
    breaker = CircuitBreaker(threshold=3, cooldown_seconds=1800)
    sleeps = []
    result = run(make_pipeline(remote, breaker, sleeps), valid_request(make_image, make_data_uri))

    assert result.method == "fallback"
    assert result.quality_score == 7.5
    assert result.fallback_reason == "remote compositor request timed out"
    assert result.result_image.startswith("data:image/jpeg;base64,")
    assert remote.calls == 2
    assert sleeps == [10]
    assert breaker.consecutive_failures == 1


def test_retry_recovers_on_second_attempt(make_image, make_data_uri):
    remote = FakeRemote(ServiceError("busy"), RESULT_URL)
    result = run(make_pipeline(remote), valid_request(make_image, make_data_uri))
    assert result.method == "remote"
    assert remote.calls == 2


def test_client_error_is_not_retried(make_image, make_data_uri):
    remote = FakeRemote(ClientError("bad request", status_code=400))
    sleeps = []
    result = run(make_pipeline(remote, sleeps=sleeps), valid_request(make_image, make_data_uri))
    assert result.method == "fallback"
    assert result.fallback_reason == "bad request"
    assert remote.calls == 1
    assert sleeps == []


def test_unexpected_remote_exception_is_retried(make_image, make_data_uri):
    remote = FakeRemote(RuntimeError("boom"))
    result = run(make_pipeline(remote), valid_request(make_image, make_data_uri))
    assert result.method == "fallback"
    assert remote.calls == 2
    assert "boom" in result.fallback_reason


def test_undecodable_garment_ends_at_placeholder(make_image, make_data_uri):
    remote = FakeRemote(RESULT_URL)
    request = CompositeRequest(
        person_image=make_data_uri(make_image()),
        garment_image=make_data_uri(b"\x89PNG" + b"\x00" * 20000),
    )
    result = run(make_pipeline(remote), request)

    assert result.success is True
    assert result.method == "placeholder"
    assert result.quality_score == 6.0
    assert result.fallback_reason.startswith("validation failed: ")
    assert result.fallback_reason.endswith("(fallback also failed)")
    assert result.error
    assert remote.calls == 0


def test_missing_person_never_calls_remote(make_image, make_data_uri):
    remote = FakeRemote(RESULT_URL)
    request = CompositeRequest(person_image="  ", garment_image=make_data_uri(make_image()))
    result = run(make_pipeline(remote), request)

    assert result.method in ("fallback", "placeholder")
    assert "Person image is required" in result.fallback_reason
    assert remote.calls == 0


def test_breaker_opens_after_threshold(make_image, make_data_uri):
    remote = FakeRemote(ServiceError("down"))
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=3, cooldown_seconds=1800, clock=clock)
    pipeline = make_pipeline(remote, breaker)
    request = valid_request(make_image, make_data_uri)

    for _ in range(3):
        assert run(pipeline, request).method == "fallback"
    assert remote.calls == 6

    skipped = run(pipeline, request)
    assert skipped.method == "fallback"
    assert skipped.fallback_reason == BREAKER_OPEN_REASON
    assert skipped.improvements == []
    assert remote.calls == 6
    assert snapshot()["counters"]["breaker_skips_total"]["remote"] == 1

    clock.now += 1800
    run(pipeline, request)
    assert remote.calls == 8


def test_success_after_cooldown_resets_breaker(make_image, make_data_uri):
    clock = FakeClock()
    breaker = CircuitBreaker(threshold=1, cooldown_seconds=60, clock=clock)
    breaker.record_failure()
    clock.now += 60
    run(make_pipeline(FakeRemote(RESULT_URL), breaker), valid_request(make_image, make_data_uri))
    assert breaker.consecutive_failures == 0


def test_fallback_failure_degrades_to_placeholder(monkeypatch, make_image, make_data_uri):
    pipeline = make_pipeline(FakeRemote(ServiceError("down")))

    def broken(person, garment):
        raise RuntimeError("renderer crashed")

    monkeypatch.setattr(pipeline.fallback, "composite", broken)
    result = run(pipeline, valid_request(make_image, make_data_uri))
    assert result.method == "placeholder"
    assert result.error == "renderer crashed"
    assert result.fallback_reason == "down (fallback also failed)"


def test_unexpected_pipeline_error_still_returns_a_result(make_image, make_data_uri):
    class ExplodingFetcher:
        async def fetch(self, source):
            raise RuntimeError("fetch exploded")

    pipeline = make_pipeline(FakeRemote(RESULT_URL))
    pipeline.fetcher = ExplodingFetcher()
    result = run(pipeline, valid_request(make_image, make_data_uri))

    assert result.success is True
    assert result.method == "placeholder"
    assert result.fallback_reason.startswith("unexpected error in try-on process")


def test_quality_scores_follow_method_fidelity(make_image, make_data_uri):
    request = valid_request(make_image, make_data_uri)
    remote = run(make_pipeline(FakeRemote(RESULT_URL)), request)
    fallback = run(make_pipeline(FakeRemote(ClientError("nope"))), request)
    placeholder = run(make_pipeline(FakeRemote(RESULT_URL)), CompositeRequest())
    assert remote.quality_score > fallback.quality_score > placeholder.quality_score


def test_metrics_count_methods(make_image, make_data_uri):
    run(make_pipeline(FakeRemote(RESULT_URL)), valid_request(make_image, make_data_uri))
    counters = snapshot()["counters"]
    assert counters["composite_total"]["method=remote"] == 1
    assert counters["remote_attempts_total"]["outcome=success"] == 1


def test_explanations_and_suggestions(make_image, make_data_uri):
    request = valid_request(make_image, make_data_uri)
    remote = run(make_pipeline(FakeRemote(RESULT_URL)), request)
    fallback = run(make_pipeline(FakeRemote(ClientError("nope"))), request)

    assert explain(remote).endswith("Quality score: 9.5/10")
    assert "enhanced preview system" in explain(fallback)
    assert improvement_suggestions(remote) == []
    assert len(improvement_suggestions(fallback)) == 7
    assert "Ensure good lighting conditions" in improvement_suggestions(fallback)


class FailingPreprocessor:
    def __init__(self) -> None:
        self.calls = 0

    def run(self, data, subject, options=None):
        self.calls += 1
        raise ValueError("unexpected pixel layout")


def test_preprocessing_failure_sends_originals_to_remote(make_image, make_data_uri, caplog):
    person, garment = make_image(96, 128, seed=1), make_image(96, 96, seed=2)
    remote = FakeRemote(RESULT_URL)
    pipeline = make_pipeline(remote)
    pipeline.preprocessor = FailingPreprocessor()

    with caplog.at_level(logging.WARNING, logger="hybrid_tryon.app.pipeline"):
        result = run(
            pipeline,
            CompositeRequest(person_image=make_data_uri(person), garment_image=make_data_uri(garment)),
        )

    assert result.method == "remote"
    assert remote.calls == 1
    assert remote.received[0] == (person, garment)
    assert result.preprocessing_applied is False
    assert result.improvements == [
        "Person: preprocessing failed, using original",
        "Garment: preprocessing failed, using original",
    ]
    assert "Person preprocessing failed, using original" in caplog.text


def test_local_paths_are_rejected_by_default(tmp_path, make_image):
    person, garment = tmp_path / "person.png", tmp_path / "garment.png"
    person.write_bytes(make_image(96, 128, seed=1))
    garment.write_bytes(make_image(96, 96, seed=2))
    remote = FakeRemote(RESULT_URL)

    result = run(make_pipeline(remote), CompositeRequest(person_image=str(person), garment_image=str(garment)))

    assert remote.calls == 0
    assert result.method == "placeholder"
    assert result.fallback_reason.startswith("validation failed: Person image: only http(s) URLs")


def test_local_paths_work_for_in_process_callers(tmp_path, make_image):
    person, garment = tmp_path / "person.png", tmp_path / "garment.png"
    person.write_bytes(make_image(96, 128, seed=1))
    garment.write_bytes(make_image(96, 96, seed=2))
    remote = FakeRemote(RESULT_URL)
    pipeline = make_pipeline(remote)
    pipeline.allow_local_sources = True

    result = run(pipeline, CompositeRequest(person_image=str(person), garment_image=str(garment)))

    assert result.method == "remote"
    assert remote.calls == 1


def test_ensure_valid_joins_blocking_messages():
    person = ValidatedImage(label="Person image", source=None)
    person.issues.append(ImageIssue("missing_image", "Person image is required", "Provide one."))
    garment = ValidatedImage(label="Garment image", source=None)
    garment.issues.append(ImageIssue("low_resolution", "Garment image: low", "Bigger.", blocking=False))

    with pytest.raises(ValidationError) as excinfo:
        ensure_valid(person, garment)
    assert str(excinfo.value) == "Person image is required"
    ensure_valid(garment)
