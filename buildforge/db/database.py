"""
SQLite database engine and session management.
Database path: <BUILDFORGE_DATA_DIR>/builds.db (defaults to data/ under the project root).
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from buildforge.core.config import get_settings

_settings = get_settings()

DATA_DIR = _settings.data_dir
DATABASE_PATH = _settings.database_path

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

DATABASE_URL = f"sqlite:///{DATABASE_PATH}"

# check_same_thread=False: sessions are opened from worker threads
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
    echo=False,
)


@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def init_db():
    """Initialize database tables."""
    from buildforge.db.models import (  # noqa: F401
        Build, BuildStage, BuildArtifact, Deployment, QueueJob,
    )
    Base.metadata.create_all(bind=engine)
