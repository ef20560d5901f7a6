"""Batch ledger. SQLite by default; set DATABASE_URL for another SQLAlchemy backend.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from converter import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

metadata = MetaData()

batches = Table(
    "batches",
    metadata,
    Column("batch_id", String(64), primary_key=True),
    Column("status", String(32), nullable=False),
    Column("file_count", Integer, nullable=False, default=0),
    Column("failed_count", Integer, nullable=False, default=0),
    Column("error", Text),
    Column("created_at", String(50), nullable=False),
    Column("updated_at", String(50), nullable=False),
)

batch_jobs = Table(
    "batch_jobs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("batch_id", String(64), nullable=False, index=True),
    Column("position", Integer, nullable=False),
    Column("filename", String(512)),
    Column("display_name", String(512)),
    Column("status", String(32), nullable=False),
    Column("error", Text),
    Column("input_bytes", Integer),
    Column("output_bytes", Integer),
)

REQUIRED_TABLES = tuple(metadata.tables)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _make_engine(url: str) -> Engine:
    kwargs = {}
    if _is_sqlite(url):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def init_db() -> None:
    """Prepare database at startup: ensure required tables exist. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    logger.info("Database init: preparing tables %s", ", ".join(REQUIRED_TABLES))
    try:
        metadata.create_all(get_engine())
        logger.info("Database ready: %s", get_engine().dialect.name)
        return
    except Exception as e:
        logger.exception("Database init failed: %s. Trying in-memory SQLite.", e)

    # Last resort: batch history will not persist across restarts
    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = _make_engine(app_config.DATABASE_URL)
    metadata.create_all(_engine)
    logger.warning("Database unavailable. Using in-memory SQLite. Batch history will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def save_batch(batch_id: str, status: str, file_count: int = 0) -> None:
    now = _now_iso()
    with session() as conn:
        conn.execute(
            insert(batches).values(
                batch_id=batch_id,
                status=status,
                file_count=file_count,
                failed_count=0,
                error=None,
                created_at=now,
                updated_at=now,
            )
        )


def update_batch_status(
    batch_id: str,
    status: str,
    *,
    file_count: Optional[int] = None,
    failed_count: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    values = {"status": status, "updated_at": _now_iso()}
    if file_count is not None:
        values["file_count"] = file_count
    if failed_count is not None:
        values["failed_count"] = failed_count
    if error is not None:
        values["error"] = error
    with session() as conn:
        conn.execute(update(batches).where(batches.c.batch_id == batch_id).values(**values))


def record_jobs(batch_id: str, jobs: list[dict]) -> None:
    """Store per-file outcomes; each dict has filename, display_name, status, error, input_bytes, output_bytes."""
    if not jobs:
        return
    rows = [dict(job, batch_id=batch_id, position=i) for i, job in enumerate(jobs)]
    with session() as conn:
        conn.execute(insert(batch_jobs), rows)


def _job_rows(conn, batch_id: str) -> list[dict]:
    rows = conn.execute(
        select(
            batch_jobs.c.filename,
            batch_jobs.c.display_name,
            batch_jobs.c.status,
            batch_jobs.c.error,
            batch_jobs.c.input_bytes,
            batch_jobs.c.output_bytes,
        )
        .where(batch_jobs.c.batch_id == batch_id)
        .order_by(batch_jobs.c.position)
    ).mappings().all()
    return [dict(r) for r in rows]


def get_batch_from_db(batch_id: str) -> Optional[dict]:
    """Return batch row with its jobs as dict, or None."""
    with get_engine().connect() as conn:
        row = conn.execute(select(batches).where(batches.c.batch_id == batch_id)).mappings().first()
        if row is None:
            return None
        out = dict(row)
        out["jobs"] = _job_rows(conn, batch_id)
    return out


def list_recent_batches(limit: int = 50) -> list[dict]:
    """Most recent batches, newest first (without jobs)."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            select(batches).order_by(batches.c.created_at.desc()).limit(limit)
        ).mappings().all()
    return [dict(r) for r in rows]
