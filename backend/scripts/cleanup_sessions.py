"""
Mark long-idle in-progress sessions as abandoned and drop their snapshots.

Usage examples:
  python backend/scripts/cleanup_sessions.py
  python backend/scripts/cleanup_sessions.py --hours 6
"""

from __future__ import annotations

import argparse
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import SessionLocal, engine, init_db  # noqa: E402
from session_manager import SessionManager  # noqa: E402
from settings import GameSettings  # noqa: E402


def main() -> int:
    settings = GameSettings.from_env()
    parser = argparse.ArgumentParser()
    parser.add_argument("--hours", type=int, default=settings.stale_session_hours)
    args = parser.parse_args()

    hours = max(1, int(args.hours))
    init_db(engine)
    abandoned = SessionManager(SessionLocal).abandon_stale_sessions(timedelta(hours=hours))
    print(f"Sessions idle for more than {hours}h marked abandoned: {abandoned}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
