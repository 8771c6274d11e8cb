from __future__ import annotations

import logging
import time
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .breaker import CircuitBreaker
from .config import CORS_ALLOW_ORIGIN_REGEX, CORS_ALLOW_ORIGINS, HOST, PORT, SERVICE_VERSION
from .metrics import increment, observe_latency, snapshot
from .pipeline import HybridTryOnPipeline, explain, improvement_suggestions
from .schemas import BreakerStatus, CompositeRequest, CompositeResponse


logger = logging.getLogger(__name__)

# One breaker per process, shared by every request.
_BREAKER = CircuitBreaker()
_PIPELINE: Optional[HybridTryOnPipeline] = None


def get_breaker() -> CircuitBreaker:
    return _BREAKER


def get_tryon_pipeline() -> HybridTryOnPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = HybridTryOnPipeline(breaker=_BREAKER)
    return _PIPELINE


app = FastAPI(
    title="Hybrid TryOn API",
    version=SERVICE_VERSION,
    description="Garment compositing with a remote AI compositor and local fallbacks.",
)

if CORS_ALLOW_ORIGIN_REGEX is None and CORS_ALLOW_ORIGINS == ["*"]:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def log_and_measure_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    label = f"{request.method} {request.url.path}"
    increment("requests_total", label)
    observe_latency("http_request_seconds", label, duration)
    response.headers["X-Process-Time"] = f"{duration:.3f}s"
    logger.info("%s %s -> %s (%.3fs)", request.method, request.url.path, response.status_code, duration)
    return response


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/metrics")
async def metrics():
    return JSONResponse(status_code=status.HTTP_200_OK, content=snapshot())


@app.post("/tryon/composite")
async def tryon_composite(
    request: CompositeRequest,
    pipeline: HybridTryOnPipeline = Depends(get_tryon_pipeline),
):
    result = await pipeline.process_composite(request)
    response = CompositeResponse(
        **result.model_dump(),
        explanation=explain(result),
        suggestions=improvement_suggestions(result),
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.model_dump())


@app.get("/tryon/breaker")
async def breaker_status(breaker: CircuitBreaker = Depends(get_breaker)):
    state = breaker.snapshot()
    payload = BreakerStatus(
        consecutive_failures=state.consecutive_failures,
        last_attempt_at=state.last_attempt_at,
        open=state.open,
        threshold=breaker.threshold,
        cooldown_seconds=breaker.cooldown_seconds,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=payload.model_dump())


def run() -> None:
    uvicorn.run("hybrid_tryon.app.main:app", host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    run()
