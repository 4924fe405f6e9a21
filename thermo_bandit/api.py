"""
REST API server for the recommendation engine.

Exposes recommendations, feedback events and statistics over HTTP so
the surrounding application can drive the engine without importing it.

Run with:
    thermo-bandit serve --config config.yaml
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .engine import TemperatureRecommendationEngine
from .events import EntitySelected, RecommendationApplied, TemperatureManuallyChanged
from .types import EfficiencyContext

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


# ============================================================================
# Pydantic Models for API
# ============================================================================

class EfficiencyModel(BaseModel):
    """Energy-efficiency data for savings estimates."""
    power_watts: Optional[float] = Field(None, ge=0)
    efficiency_score: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class RecommendationRequest(BaseModel):
    """Request body for the recommendation endpoint."""
    outdoor_temp: float = Field(..., description="Current outdoor temperature")
    current_target: float = Field(..., description="Current thermostat setpoint")
    efficiency: Optional[EfficiencyModel] = Field(None, description="Enables savings estimates")


class RecommendationResponse(BaseModel):
    """A thermostat recommendation."""
    entity_id: str
    action: str
    adjustment: int
    recommended_temp: float
    current_temp: float
    confidence: float
    energy_savings: float
    context: Optional[Dict[str, str]] = None
    exploration_reason: str
    timestamp: float
    fallback: bool
    version: str


class RecommendationAppliedRequest(BaseModel):
    entity_id: str
    recommended_temp: Optional[float] = None
    applied_by: str = "user"


class ManualChangeRequest(BaseModel):
    entity_id: str
    new_temp: Optional[float] = None
    previous_temp: Optional[float] = None
    changed_by: str = "user"


class EntitySelectedRequest(BaseModel):
    entity_id: str


# ============================================================================
# API Server
# ============================================================================

class RecommendationAPIServer:
    """
    FastAPI application around one engine instance.

    Provides endpoints for:
    - Recommendations per entity
    - Feedback events (applied, manual change, selection)
    - Statistics, status and metrics
    - Learning resets
    """

    def __init__(self, engine: TemperatureRecommendationEngine):
        self.engine = engine

        self.app = FastAPI(
            title="Thermo Bandit API",
            description="Personalized thermostat recommendations learned from user feedback",
            version=API_VERSION,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._register_routes()

    def _register_routes(self):
        """Register all API routes."""

        @self.app.get("/")
        async def root():
            """API health check."""
            return {
                "status": "ok",
                "engine": "Thermo Bandit",
                "version": API_VERSION,
                "initialized": self.engine.get_system_status()["initialized"],
            }

        @self.app.get("/status")
        async def status():
            return self.engine.get_system_status()

        @self.app.get("/metrics")
        async def metrics():
            return self.engine.metrics.summary()

        @self.app.post("/entities/{entity_id}/recommendation", response_model=RecommendationResponse)
        async def recommend(entity_id: str, request: RecommendationRequest):
            """Get a recommendation for one unit."""
            efficiency = None
            if request.efficiency is not None:
                efficiency = EfficiencyContext(
                    power_watts=request.efficiency.power_watts,
                    efficiency_score=request.efficiency.efficiency_score,
                    details=dict(request.efficiency.details),
                )
            recommendation = self.engine.get_recommendation(
                entity_id,
                request.outdoor_temp,
                request.current_target,
                efficiency,
            )
            return RecommendationResponse(**recommendation.to_dict())

        @self.app.post("/events/recommendation-applied")
        async def recommendation_applied(request: RecommendationAppliedRequest):
            result = self.engine.on_recommendation_applied(RecommendationApplied(
                entity_id=request.entity_id,
                recommended_temp=request.recommended_temp,
                applied_by=request.applied_by,
            ))
            if result is None:
                return {"armed": False}
            return {
                "armed": True,
                "window_id": result.window.window_id,
                "deadline": result.window.deadline,
                "superseded": result.superseded.window_id if result.superseded else None,
            }

        @self.app.post("/events/temperature-manually-changed")
        async def temperature_manually_changed(request: ManualChangeRequest):
            overridden = self.engine.on_temperature_manually_changed(TemperatureManuallyChanged(
                entity_id=request.entity_id,
                new_temp=request.new_temp,
                previous_temp=request.previous_temp,
                changed_by=request.changed_by,
            ))
            return {"overridden": overridden}

        @self.app.post("/events/entity-selected")
        async def entity_selected(request: EntitySelectedRequest):
            self.engine.on_entity_selected(EntitySelected(entity_id=request.entity_id))
            return {"status": "ok"}

        @self.app.get("/statistics")
        async def statistics():
            return self.engine.get_statistics()

        @self.app.get("/statistics/{entity_id}")
        async def entity_statistics(entity_id: str):
            stats = self.engine.get_statistics(entity_id)
            if stats is None:
                raise HTTPException(status_code=404, detail=f"No learning data for {entity_id}")
            return stats

        @self.app.post("/reset")
        async def reset_all():
            cancelled = self.engine.reset_learning_data()
            return {"status": "reset", "entity_id": None, "cancelled_windows": cancelled}

        @self.app.post("/entities/{entity_id}/reset")
        async def reset_entity(entity_id: str):
            cancelled = self.engine.reset_learning_data(entity_id)
            return {"status": "reset", "entity_id": entity_id, "cancelled_windows": cancelled}


def create_app(engine: TemperatureRecommendationEngine) -> FastAPI:
    """Create and configure the FastAPI application."""
    return RecommendationAPIServer(engine).app
