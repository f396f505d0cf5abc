"""Engine telemetry: one JSON object per line, plus a windowed summary reader.

Events written by the engine:
  turn                     every move (payload: type, source, candidate_count, ...)
  matrix_cache_used        the turn's candidate set came from the in-memory matrix
  confirm_rejected         a wrong guess was recorded
  confirm_review_required  verification found contradictions, nothing stored
  confirm_committed        a confirmed outcome was stored
  confirm_final            an edited history was stored after review
"""

import json
import os
from collections import Counter, deque
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Iterator, Optional

from text_utils import normalize_whitespace

_BACKEND_DIR = Path(__file__).resolve().parent

FALLBACK_STAGES = ("transition", "path_mining", "early_guess", "generative", "static_bank")

CONFIRM_EVENTS = {
    "confirm_committed": "committed",
    "confirm_rejected": "rejected",
    "confirm_review_required": "review_required",
    "confirm_final": "finalized",
}


def telemetry_path() -> Path:
    return _BACKEND_DIR / (os.getenv("ENGINE_TELEMETRY_LOG", "engine_telemetry.log") or "engine_telemetry.log")


def telemetry_enabled() -> bool:
    return (os.getenv("ENGINE_TELEMETRY_ENABLED", "1") or "1").strip().lower() in (
        "1", "true", "yes", "on",
    )


def append_engine_telemetry(event: str, payload: Optional[dict] = None) -> None:
    if not telemetry_enabled():
        return
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": normalize_whitespace(event or "event"),
        "payload": payload or {},
    }
    try:
        path = telemetry_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError as exc:
        # Telemetry must never fail a turn.
        print(f"[telemetry] write failed: {exc}")


def _parse_iso_utc(ts_raw: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(str(ts_raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def _iter_events(path: Path, cutoff: datetime, errors: Counter) -> Iterator[tuple[datetime, str, dict]]:
    """(ts, event, payload) for every well-formed line newer than *cutoff*."""
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            raw = (line or "").strip()
            if not raw:
                continue
            try:
                item = json.loads(raw)
            except json.JSONDecodeError:
                errors["parse"] += 1
                continue
            if not isinstance(item, dict):
                errors["parse"] += 1
                continue
            ts = _parse_iso_utc(str(item.get("ts") or ""))
            if ts is None or ts < cutoff:
                continue
            event = normalize_whitespace(str(item.get("event") or "")) or "event"
            payload = item.get("payload") if isinstance(item.get("payload"), dict) else {}
            yield ts, event, payload


def read_engine_telemetry_summary(hours: int = 24, limit: int = 6) -> dict:
    h = max(1, min(168, int(hours or 24)))
    n = max(1, min(25, int(limit or 6)))
    now_utc = datetime.now(timezone.utc)
    path = telemetry_path()
    file_exists = path.exists()

    counts: Counter = Counter()
    sources: Counter = Counter()
    moves: Counter = Counter()
    outcomes: Counter = Counter()
    errors: Counter = Counter()
    candidate_counts: list[int] = []
    recent: deque = deque(maxlen=n)

    if file_exists:
        try:
            for ts, event, payload in _iter_events(path, now_utc - timedelta(hours=h), errors):
                counts[event] += 1
                if event == "turn":
                    sources[normalize_whitespace(str(payload.get("source") or "")) or "UNKNOWN"] += 1
                    moves[str(payload.get("type") or "UNKNOWN")] += 1
                    if isinstance(payload.get("candidate_count"), int):
                        candidate_counts.append(payload["candidate_count"])
                elif event in CONFIRM_EVENTS:
                    outcomes[CONFIRM_EVENTS[event]] += 1
                recent.append({"ts": ts.isoformat(), "event": event, "payload": payload})
        except OSError as exc:
            print(f"[telemetry] read failed: {exc}")

    turns = counts["turn"]
    fallback_turns = sum(sources[s] for s in FALLBACK_STAGES)
    return {
        "status": "ok",
        "now_utc": now_utc.isoformat(),
        "window_hours": h,
        "telemetry_enabled": telemetry_enabled(),
        "file_exists": file_exists,
        "file_path": str(path.name),
        "counts": dict(counts),
        "source_counts": dict(sources),
        "fallback_stage_counts": {s: sources[s] for s in FALLBACK_STAGES if sources[s]},
        "fallback_rate_percent": round(fallback_turns / turns * 100.0, 2) if turns else 0.0,
        "move_counts": dict(moves),
        "avg_candidate_count": round(sum(candidate_counts) / len(candidate_counts), 2) if candidate_counts else None,
        "confirm_outcomes": dict(outcomes),
        "matrix_cache_turns": counts["matrix_cache_used"],
        "review_required_count": counts["confirm_review_required"],
        "recent": list(recent),
        "parse_errors": errors["parse"],
    }
