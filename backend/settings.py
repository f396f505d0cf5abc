"""Environment-driven configuration for the game engine."""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load backend/.env early so every module sees the same values.
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path, override=False)


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def env_int(name: str, default: int, min_value: int, max_value: int) -> int:
    raw = os.getenv(name)
    try:
        value = int(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(min_value, min(max_value, value))


def env_float(name: str, default: float, min_value: float, max_value: float) -> float:
    raw = os.getenv(name)
    try:
        value = float(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(min_value, min(max_value, value))


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


class GameSettings(BaseModel):
    """Tunables for selection, fallback, learning and caching."""

    guess_confidence: float = 0.9
    near_duplicate_threshold: float = 0.86
    question_match_threshold: float = 0.92
    entity_match_threshold: float = 0.9

    verification_confidence: float = 0.80
    high_confidence_reject: float = 0.85
    learning_weight_step: float = 0.05
    learning_weight_cap: float = 5.0

    path_min_answered: int = 5
    path_min_ratio: float = 0.55
    path_min_confidence: float = 0.78
    path_mining_window: int = 500

    matrix_refresh_sec: float = 600.0
    catalog_refresh_sec: float = 300.0
    matrix_top_n: int = 500

    external_timeout_sec: float = 12.0
    gap_fill_batch: int = 10
    gap_fill_enabled: bool = True
    gap_fill_interval_sec: float = 900.0
    gap_fill_cycle_limit: int = 50
    stale_session_hours: int = 24

    @classmethod
    def from_env(cls) -> "GameSettings":
        return cls(
            guess_confidence=env_float("GAME_GUESS_CONFIDENCE", 0.9, 0.5, 1.0),
            near_duplicate_threshold=env_float("GAME_NEAR_DUPLICATE_THRESHOLD", 0.86, 0.5, 1.0),
            question_match_threshold=env_float("GAME_QUESTION_MATCH_THRESHOLD", 0.92, 0.5, 1.0),
            entity_match_threshold=env_float("GAME_ENTITY_MATCH_THRESHOLD", 0.9, 0.5, 1.0),
            verification_confidence=env_float("GAME_VERIFICATION_CONFIDENCE", 0.80, 0.5, 1.0),
            high_confidence_reject=env_float("GAME_HIGH_CONFIDENCE_REJECT", 0.85, 0.5, 1.0),
            learning_weight_step=env_float("GAME_LEARNING_WEIGHT_STEP", 0.05, 0.0, 1.0),
            learning_weight_cap=env_float("GAME_LEARNING_WEIGHT_CAP", 5.0, 1.0, 100.0),
            path_min_answered=env_int("GAME_PATH_MIN_ANSWERED", 5, 1, 50),
            path_min_ratio=env_float("GAME_PATH_MIN_RATIO", 0.55, 0.0, 1.0),
            path_min_confidence=env_float("GAME_PATH_MIN_CONFIDENCE", 0.78, 0.0, 0.99),
            path_mining_window=env_int("GAME_PATH_MINING_WINDOW", 500, 10, 20000),
            matrix_refresh_sec=env_float("GAME_MATRIX_REFRESH_SEC", 600.0, 5.0, 86400.0),
            catalog_refresh_sec=env_float("GAME_CATALOG_REFRESH_SEC", 300.0, 5.0, 86400.0),
            matrix_top_n=env_int("GAME_MATRIX_TOP_N", 500, 10, 50000),
            external_timeout_sec=env_float("GAME_EXTERNAL_TIMEOUT_SEC", 12.0, 1.0, 120.0),
            gap_fill_batch=env_int("GAME_GAP_FILL_BATCH", 10, 1, 50),
            gap_fill_enabled=env_bool("GAME_GAP_FILL_ENABLED", True),
            gap_fill_interval_sec=env_float("GAME_GAP_FILL_INTERVAL_SEC", 900.0, 10.0, 86400.0),
            gap_fill_cycle_limit=env_int("GAME_GAP_FILL_CYCLE_LIMIT", 50, 1, 1000),
            stale_session_hours=env_int("GAME_STALE_SESSION_HOURS", 24, 1, 24 * 90),
        )
