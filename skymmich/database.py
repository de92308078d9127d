from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .logging import get_logger

Base = declarative_base()

logger = get_logger("database")

# Columns added after the first release; applied to existing SQLite files
_SQLITE_MIGRATIONS = {
    "astrophotography_images": {
        "location_id": "INTEGER",
    },
    "plate_solving_jobs": {
        "attempts": "INTEGER NOT NULL DEFAULT 0",
    },
}


def make_engine(db_url: str):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if db_url.startswith("sqlite"):
        connect_opts = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(db_url, connect_args=connect_opts, poolclass=StaticPool)
        return create_engine(db_url, connect_args=connect_opts)
    return create_engine(db_url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine) -> None:
    """Create missing tables and apply lightweight column migrations."""
    from . import tables  # noqa: F401  registers the mappers on Base

    Base.metadata.create_all(bind=engine)

    if engine.dialect.name != "sqlite":
        return

    with engine.begin() as conn:
        for table, columns in _SQLITE_MIGRATIONS.items():
            rows = conn.exec_driver_sql(f"PRAGMA table_info({table})").fetchall()
            existing = {row[1] for row in rows}
            for column, ddl in columns.items():
                if column not in existing:
                    logger.info(f"🛠️  Adding column {table}.{column}")
                    conn.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
