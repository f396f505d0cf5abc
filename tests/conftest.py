"""
Root test configuration.

Every test gets a throwaway SQLite database seeded with a handful of
players, plus scripted text-generation and search collaborators. Nothing
here touches the network.
"""

import os
import random
import sys
from pathlib import Path

# Backend modules import each other as top-level names.
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

os.environ["ENGINE_TELEMETRY_ENABLED"] = "0"
os.environ["LLM_CALL_LOG"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_playerqi.db")

import pytest

from caches import AttributeCatalog, MatrixCache
from database import build_engine as build_db_engine, build_session_factory, init_db
from game_engine import build_engine
from knowledge_store import KnowledgeStore
from llm_service import decode_json
from seed_data import SeedPlayer, seed_knowledge
from session_manager import SessionManager
from settings import GameSettings


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "api: exercises the HTTP surface through the FastAPI TestClient")


UCL = "champions league"

TEST_PLAYERS = [
    SeedPlayer("Lionel Messi", "south america", "argentina", "forward", "mls", "inter miami", ("ballon dor", "world cup", UCL)),
    SeedPlayer("Mohamed Salah", "africa", "egypt", "forward", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Virgil van Dijk", "europe", "netherlands", "defender", "premier league", "liverpool", (UCL,)),
    SeedPlayer("Thibaut Courtois", "europe", "belgium", "goalkeeper", "la liga", "real madrid", (UCL,)),
]

# Seeded question texts used across tests.
Q_EUROPE = "هل هو من أوروبا؟"
Q_GOALKEEPER = "هل هو حارس مرمى؟"
Q_PREMIER = "هل يلعب في الدوري الإنجليزي؟"
Q_FORWARD = "هل يلعب كمهاجم؟"
Q_AFRICA = "هل هو من أفريقيا؟"


class FakeLLM:
    """Scripted generator: each stage pops its next raw reply."""

    available = True

    def __init__(self, replies=None):
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.calls = []

    def script(self, stage, *raw):
        self.replies.setdefault(stage, []).extend(raw)

    async def generate(self, prompt, system_prompt=None, **kwargs):
        stage = kwargs.get("stage", "request")
        self.calls.append((stage, prompt))
        queue = self.replies.get(stage) or []
        return queue.pop(0) if queue else "__LLM_ERR__not_scripted|"

    async def generate_json(self, prompt, system_prompt=None, schema=None, temperature=None, stage="json"):
        raw = await self.generate(prompt, system_prompt=system_prompt, stage=stage)
        return decode_json(raw, schema)


class FakeSearch:
    available = True
    provider = "fake"

    def __init__(self, evidence="evidence snippet", image="https://img.example/player.png"):
        self.evidence = evidence
        self.image = image
        self.image_lookups = []

    async def search(self, query):
        return self.evidence

    async def lookup_entity_evidence(self, name):
        return self.evidence

    async def lookup_entity_image(self, name):
        self.image_lookups.append(name)
        return self.image


@pytest.fixture
def db_factory(tmp_path):
    bind = build_db_engine(f"sqlite:///{tmp_path / 'kb.db'}")
    init_db(bind)
    yield build_session_factory(bind)
    bind.dispose()


@pytest.fixture
def store(db_factory):
    return KnowledgeStore(db_factory)


@pytest.fixture
def seeded_store(store):
    seed_knowledge(store, TEST_PLAYERS)
    return store


@pytest.fixture
def sessions(db_factory):
    return SessionManager(db_factory)


@pytest.fixture
def catalog(seeded_store):
    cache = AttributeCatalog(seeded_store, interval_sec=300)
    cache.refresh_now()
    return cache


@pytest.fixture
def matrix_cache(seeded_store):
    cache = MatrixCache(seeded_store, top_n=100, interval_sec=600)
    cache.refresh_now()
    return cache


@pytest.fixture
def settings():
    return GameSettings(gap_fill_enabled=False)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def engine(seeded_store, db_factory, settings, fake_llm, fake_search):
    return build_engine(
        settings=settings,
        session_factory=db_factory,
        llm=fake_llm,
        search=fake_search,
        rng=random.Random(7),
    )


@pytest.fixture
def attr_id(seeded_store):
    """Look up a seeded attribute id by its question text."""
    def lookup(question_text):
        return seeded_store.match_question_by_text(question_text).attribute_id
    return lookup
