from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from domain import UpstreamUnavailable
from settings import env_str  # loads backend/.env before DATABASE_URL is read

# SQLite by default; any SQLAlchemy URL works (PostgreSQL in production).
SQLALCHEMY_DATABASE_URL = env_str("DATABASE_URL", "sqlite:///./playerqi.db")

Base = declarative_base()


def build_engine(url: str = SQLALCHEMY_DATABASE_URL):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {},
    )


def build_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def init_db(bind) -> None:
    import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=bind)


engine = build_engine()

SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(factory):
    """Yield a session from *factory*; store failures surface as UpstreamUnavailable."""
    db = factory()
    try:
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        raise UpstreamUnavailable(f"{type(exc).__name__}: {str(exc)[:200]}") from exc
    finally:
        db.close()
