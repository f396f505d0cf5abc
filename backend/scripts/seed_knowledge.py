"""
Load the starter players, attributes and questions into the knowledge base.

Usage examples:
  python backend/scripts/seed_knowledge.py
  python backend/scripts/seed_knowledge.py --database-url sqlite:///./playerqi.db
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from database import SessionLocal, build_engine, build_session_factory, engine, init_db  # noqa: E402
from knowledge_store import KnowledgeStore  # noqa: E402
from seed_data import PLAYERS, seed_knowledge  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--database-url", type=str, default="")
    parser.add_argument("--limit", type=int, default=0, help="seed only the first N players")
    args = parser.parse_args()

    url = (args.database_url or "").strip()
    if url:
        bind = build_engine(url)
        factory = build_session_factory(bind)
    else:
        bind, factory = engine, SessionLocal

    init_db(bind)
    players = PLAYERS[: args.limit] if args.limit > 0 else PLAYERS
    counts = seed_knowledge(KnowledgeStore(factory), players)
    print(f"Players seeded: {len(players)}")
    for name, value in counts.items():
        print(f"  {name}: {value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
