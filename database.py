"""
=============================================================================
DATABASE.PY — Ledger Store connection
=============================================================================
Configures the connection to the database that holds every user's balance,
streak counters and task collection.

In DEVELOPMENT: SQLite (a local .db file)
In PRODUCTION: PostgreSQL (DATABASE_URL is injected by the host)

The engine and session factory are built once at process start. Request
handlers get a session through get_db(); scheduled jobs receive the
session factory explicitly so tests can hand them their own.
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# ─────────────────────────────────────────────────────────────────────────────
# CONNECTION
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./doordue.db")


def normalize_url(url: str) -> str:
    """
    Hosting providers hand out "postgres://" URLs, SQLAlchemy wants
    "postgresql://", and we drive it with psycopg v3.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def make_engine(url: str, **kwargs):
    """Builds an engine; SQLite needs check_same_thread off for the scheduler thread."""
    url = normalize_url(url)
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


# ─────────────────────────────────────────────────────────────────────────────
# ENGINE + SESSION
# ─────────────────────────────────────────────────────────────────────────────

engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)

# ─────────────────────────────────────────────────────────────────────────────
# BASE
# ─────────────────────────────────────────────────────────────────────────────
# Every model (User, Task, Squad...) inherits from this class.

Base = declarative_base()


def get_db():
    """
    Yields a session and closes it afterwards.

    Used as a FastAPI dependency:
      @app.get("/something")
      def endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Creates all tables that don't exist yet. Called once at startup."""
    Base.metadata.create_all(bind=bind or engine)
