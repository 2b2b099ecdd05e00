from __future__ import annotations

"""
FastAPI application for the literature relevance pipeline.

- POST /rank            rank a batch of candidate records for a query
- GET  /health          liveness
- GET  /circuits/{key}  circuit breaker state for a dependency key
"""

import os

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .config import (
    CandidateModel,
    CircuitStatusResponse,
    HealthResponse,
    RankedResultModel,
    RankRequest,
    RankResponse,
)
from .pipeline import RelevancePipeline
from .pipeline_types import Candidate


app = FastAPI(title="litrank")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline() -> RelevancePipeline:
    pipe = getattr(app.state, "pipeline", None)
    if pipe is None:
        pipe = RelevancePipeline()
        app.state.pipeline = pipe
    return pipe


def _to_candidate(m: CandidateModel) -> Candidate:
    return Candidate(**m.model_dump())


# -----------------------
# Startup
# -----------------------

@app.on_event("startup")
def startup_event() -> None:
    logger.info("Starting app warmup...")
    pipe = get_pipeline()
    if os.getenv("LITRANK_WARMUP", "1") == "1":
        if not pipe.warmup():
            logger.warning("Neural scorer not available; /rank will serve lexical rankings.")
    logger.info("Warmup complete.")


# -----------------------
# Routes
# -----------------------

@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.post("/rank", response_model=RankResponse)
def rank(req: RankRequest) -> RankResponse:
    query = req.query.strip()
    if not query:
        raise HTTPException(status_code=422, detail="Query must be non-empty")

    pipe = get_pipeline()
    candidates = [_to_candidate(c) for c in req.candidates]
    result = pipe.run(query, candidates, req.config)
    return RankResponse(
        results=[RankedResultModel(**r.to_dict()) for r in result.results],
        report=result.report.to_dict(),
    )


@app.get("/circuits/{key}", response_model=CircuitStatusResponse)
def circuit_status(key: str) -> CircuitStatusResponse:
    status = get_pipeline().get_circuit_status(key)
    return CircuitStatusResponse(**status.to_dict())
