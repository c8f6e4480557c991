"""
FastAPI server: read-mostly query surface over a running pipeline.

Exposes venue/actor scores with explanations, the latest rollup snapshot and
throttled on-demand snapshot requests. Never mutates trust state except by
generating snapshots.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from trust_pipeline.pipeline import Pipeline
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Dependency
# -----------------------------------------------------------------------------


def get_pipeline(request: Request) -> Pipeline:
    """Dependency: the pipeline instance bound at app creation."""
    return request.app.state.pipeline


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    bus: dict[str, int]
    sessions: int
    venues: int
    actors: int
    latest_snapshot: Optional[str] = None
    pending_snapshot_writes: int = 0


class VenueScoreResponse(BaseModel):
    """GET /venues/{venue_id} response."""

    venue_id: str
    known: bool = Field(..., description="False when the venue has never been scored (neutral baseline)")
    composite: float = Field(..., ge=0, le=100, description="Weighted composite trust score")
    categories: dict[str, float]
    weights: dict[str, float]


class ActorScoreResponse(BaseModel):
    """GET /actors/{actor_id} response."""

    actor_id: str
    known: bool
    score: float = Field(..., ge=0, le=100)
    level: str = Field(..., description="very-high | high | neutral | low | high-risk")
    indicator_penalty: float
    flag_penalty: float
    bonus_total: float


class SnapshotRequest(BaseModel):
    requester_id: str = Field(..., min_length=1, max_length=256)


class SnapshotRequestResponse(BaseModel):
    throttled: bool
    snapshot: Optional[dict[str, Any]] = None


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------


def create_app(pipeline: Pipeline) -> FastAPI:
    app = FastAPI(
        title="Trust Pipeline API",
        description="Venue and actor trust scores, explanations and rollup snapshots.",
        version="0.1.0",
    )
    app.state.pipeline = pipeline

    @app.get("/health", response_model=HealthResponse)
    def health(p: Pipeline = Depends(get_pipeline)) -> HealthResponse:
        """Liveness probe plus bus statistics."""
        return HealthResponse(**p.health())

    @app.get("/venues/{venue_id}", response_model=VenueScoreResponse)
    def get_venue(venue_id: str, p: Pipeline = Depends(get_pipeline)) -> VenueScoreResponse:
        venue_id = venue_id.strip()
        if not venue_id:
            raise HTTPException(status_code=400, detail="venue_id must be non-empty")
        b = p.venue_scorer.get_breakdown(venue_id)
        return VenueScoreResponse(
            venue_id=venue_id,
            known=b["known"],
            composite=round(b["composite"], 4),
            categories=b["categories"],
            weights=b["weights"],
        )

    @app.get("/venues/{venue_id}/explain")
    def explain_venue(venue_id: str, p: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return p.venue_scorer.explain(venue_id.strip())

    @app.get("/actors/{actor_id}", response_model=ActorScoreResponse)
    def get_actor(actor_id: str, p: Pipeline = Depends(get_pipeline)) -> ActorScoreResponse:
        actor_id = actor_id.strip()
        if not actor_id:
            raise HTTPException(status_code=400, detail="actor_id must be non-empty")
        b = p.actor_scorer.get_breakdown(actor_id)
        return ActorScoreResponse(
            actor_id=actor_id,
            known=b["known"],
            score=round(b["score"], 4),
            level=b["level"],
            indicator_penalty=b["indicator_penalty"],
            flag_penalty=b["flag_penalty"],
            bonus_total=b["bonus_total"],
        )

    @app.get("/actors/{actor_id}/explain")
    def explain_actor(actor_id: str, p: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return p.actor_scorer.explain(actor_id.strip())

    @app.get("/rollups/latest")
    def latest_rollup(p: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
        snapshot = p.rollup.get_latest_snapshot()
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No rollup snapshot generated yet")
        return snapshot.to_dict()

    @app.post("/rollups/request", response_model=SnapshotRequestResponse)
    def request_rollup(body: SnapshotRequest, p: Pipeline = Depends(get_pipeline)) -> SnapshotRequestResponse:
        """On-demand snapshot; repeated requests inside the cooldown return the latest with throttled=true."""
        response = p.rollup.request_snapshot(body.requester_id.strip())
        logger.info("api_snapshot_requested", requester_id=body.requester_id, throttled=response.throttled)
        return SnapshotRequestResponse(**response.to_dict())

    return app
