"""Shared FastAPI dependencies used across route modules."""

from fastapi import HTTPException, Request

from game_engine import GameEngine


def get_engine(request: Request) -> GameEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not started")
    return engine
