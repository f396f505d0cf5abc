"""Turn, confirm and finalize routes (each also mounted without the /api prefix)."""

from fastapi import APIRouter, Depends

from deps import get_engine
from game_engine import GameEngine
from schemas import (
    GameRequest, GameResponse,
    ConfirmRequest, ConfirmResponse,
    ConfirmFinalRequest, ConfirmFinalResponse,
)

router = APIRouter(tags=["game"])


@router.post("/api/game", response_model=GameResponse, response_model_exclude_none=True)
@router.post("/game", response_model=GameResponse, response_model_exclude_none=True, include_in_schema=False)
async def play_turn(request: GameRequest, engine: GameEngine = Depends(get_engine)):
    result = await engine.play_turn(
        request.history,
        rejected_guesses=request.rejected_guesses,
        session_id=request.session_id,
    )
    return result.to_json()


@router.post("/api/confirm", response_model=ConfirmResponse, response_model_exclude_none=True)
@router.post("/confirm", response_model=ConfirmResponse, response_model_exclude_none=True, include_in_schema=False)
async def confirm_guess(request: ConfirmRequest, engine: GameEngine = Depends(get_engine)):
    return await engine.confirm(
        request.history,
        guess=request.guess,
        correct=request.correct,
        session_id=request.session_id,
        give_up=request.give_up,
    )


@router.post("/api/confirm-final", response_model=ConfirmFinalResponse)
@router.post("/confirm-final", response_model=ConfirmFinalResponse, include_in_schema=False)
async def confirm_final(request: ConfirmFinalRequest, engine: GameEngine = Depends(get_engine)):
    """Store an edited history as ground truth after a review."""
    return await engine.confirm_final(request.history, guess=request.guess, session_id=request.session_id)
