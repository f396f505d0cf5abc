"""Operational read-only routes: telemetry summary and cache status."""

from fastapi import APIRouter, Depends

from deps import get_engine
from game_engine import GameEngine
from telemetry import read_engine_telemetry_summary

router = APIRouter(prefix="/api", tags=["admin"])


@router.get("/telemetry/summary")
async def get_engine_telemetry_summary(hours: int = 24, limit: int = 6):
    """Return move-source counters, fallback rate and recent events."""
    return read_engine_telemetry_summary(hours=hours, limit=limit)


@router.get("/cache/status")
async def get_cache_status(engine: GameEngine = Depends(get_engine)):
    return engine.cache_status()
