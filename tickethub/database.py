from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from tickethub.config import settings

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

connect_args = {"check_same_thread": False} if settings.is_sqlite else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Yield a database session for the duration of a request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all tables straight from the models (tests and throwaway databases)"""
    # Models must be imported so they register on Base.metadata
    from tickethub import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def alembic_config(url: Optional[str] = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    # ConfigParser treats % as interpolation
    config.set_main_option("sqlalchemy.url", (url or settings.DATABASE_URL).replace("%", "%%"))
    return config


def run_migrations(url: Optional[str] = None, revision: str = "head") -> None:
    """Upgrade the database schema to the given alembic revision"""
    command.upgrade(alembic_config(url), revision)


def schema_revision(bind=None) -> Optional[str]:
    """Current alembic revision of the database, or None when unversioned"""
    with (bind or engine).connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
