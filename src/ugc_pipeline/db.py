import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path

from ugc_pipeline.config import settings


def now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime | None = None) -> str:
    return (ts or now()).isoformat()


def connect(database_path: str | None = None) -> sqlite3.Connection:
    path = database_path or settings.database_path
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    # autocommit mode; write paths open their own BEGIN IMMEDIATE
    conn = sqlite3.connect(path, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def reading(database_path: str | None = None) -> Iterator[sqlite3.Connection]:
    with closing(connect(database_path)) as conn:
        yield conn


@contextmanager
def transaction(database_path: str | None = None) -> Iterator[sqlite3.Connection]:
    """Open a write transaction holding the database RESERVED lock until commit.

    BEGIN IMMEDIATE makes concurrent read-modify-write sequences (balance
    checks, status compare-and-swap) serialize instead of failing late with
    SQLITE_BUSY on upgrade.
    """
    with closing(connect(database_path)) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")


@contextmanager
def unit_of_work(
    conn: sqlite3.Connection | None = None,
    database_path: str | None = None,
) -> Iterator[sqlite3.Connection]:
    if conn is not None:
        yield conn
        return
    with transaction(database_path) as own:
        yield own


def _has_col(conn: sqlite3.Connection, table: str, col: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(r["name"] == col for r in rows)


def init_db(database_path: str | None = None) -> None:
    with reading(database_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
              user_id TEXT PRIMARY KEY,
              credit_balance INTEGER NOT NULL DEFAULT 0 CHECK (credit_balance >= 0),
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_transactions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              type TEXT NOT NULL,
              amount INTEGER NOT NULL,
              balance_after INTEGER NOT NULL,
              related_job_id TEXT,
              description TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_credit_tx_job_type
            ON credit_transactions (related_job_id, type)
            WHERE related_job_id IS NOT NULL AND type IN ('DEBIT', 'REFUND')
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS ix_credit_tx_user ON credit_transactions (user_id, id)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS video_jobs (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              status TEXT NOT NULL,
              style TEXT NOT NULL,
              script TEXT NOT NULL,
              visual_summary TEXT,
              reference_image_url TEXT,
              prompt TEXT NOT NULL,
              external_job_id TEXT,
              credits_used INTEGER NOT NULL DEFAULT 0,
              asset_public_id TEXT,
              asset_secure_url TEXT,
              asset_thumbnail_url TEXT,
              download_url TEXT,
              download_expires_at TEXT,
              error_code TEXT,
              error_message TEXT,
              poll_attempts INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              generation_started_at TEXT,
              completed_at TEXT
            )
            """
        )
        if not _has_col(conn, "video_jobs", "retry_of"):
            conn.execute("ALTER TABLE video_jobs ADD COLUMN retry_of TEXT")
        if not _has_col(conn, "video_jobs", "heartbeat_at"):
            conn.execute("ALTER TABLE video_jobs ADD COLUMN heartbeat_at TEXT")
        if not _has_col(conn, "video_jobs", "worker_id"):
            conn.execute("ALTER TABLE video_jobs ADD COLUMN worker_id TEXT")
        if not _has_col(conn, "video_jobs", "lease_expires_at"):
            conn.execute("ALTER TABLE video_jobs ADD COLUMN lease_expires_at TEXT")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_video_jobs_status ON video_jobs (status)")
        conn.execute("CREATE INDEX IF NOT EXISTS ix_video_jobs_user ON video_jobs (user_id, created_at)")
