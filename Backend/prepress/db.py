import sqlite3
import logging
import re
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Tuple

from prepress.core.config import settings

logger = logging.getLogger(__name__)

# Global Connection Pool
async_pg_pool = None

TERMINAL_STATUSES = ("succeeded", "failed", "cancelled")


def dialect() -> str:
    return "postgres" if settings.DATABASE_URL else "sqlite"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_sqlite_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so that string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(sep=" ", timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Rows come back as datetime (asyncpg) or text (sqlite)."""
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ─── ASYNC PostgreSQL Wrapper ────────────────────────────────────────────────
class AsyncPostgresCursor:
    """Wraps asyncpg connection to support '?' placeholders"""
    def __init__(self, conn):
        self.conn = conn
        self._last_result = None

    async def execute(self, sql: str, params: Tuple = ()) -> Any:
        # asyncpg uses $1, $2, $3. We must convert ? -> $n
        # Regex to ignore strings matches
        params = list(params)

        counter = 0
        def replace_placeholder(match):
            nonlocal counter
            if match.group(1): return match.group(1)
            counter += 1
            return f"${counter}"

        pattern = r"(\'[^\']*\'|\"[^\"]*\")|\?"
        pg_sql = re.sub(pattern, replace_placeholder, sql)

        self._last_result = await self.conn.fetch(pg_sql, *params)
        return self

    async def fetchone(self) -> Optional[Any]:
        if self._last_result and len(self._last_result) > 0:
            return self._last_result[0]
        return None

    async def fetchall(self) -> List[Any]:
        return self._last_result or []


class AsyncPostgresConnection:
    """Wraps asyncpg pool connection"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()) -> AsyncPostgresCursor:
        cursor = AsyncPostgresCursor(self.conn)
        await cursor.execute(sql, params)
        return cursor

    async def begin_write(self):
        pass # Single statements are atomic; claims rely on FOR UPDATE SKIP LOCKED

    async def commit(self):
        pass # Auto-commit is default in asyncpg unless in transaction


# ─── ASYNC SQLite Wrapper ────────────────────────────────────────────────────
class AsyncSqliteConnection:
    """Wraps aiosqlite connection (autocommit mode, explicit write transactions)"""
    def __init__(self, conn):
        self.conn = conn

    async def execute(self, sql: str, params: Tuple = ()):
        params = tuple(to_sqlite_timestamp(p) if isinstance(p, datetime) else p for p in params)
        return await self.conn.execute(sql, params)

    async def begin_write(self):
        # Take the write lock up front so concurrent writers queue on the busy
        # timeout instead of failing on a lock upgrade.
        await self.conn.execute("BEGIN IMMEDIATE")

    async def commit(self):
        await self.conn.commit()


# ─── Initialization ──────────────────────────────────────────────────────────
def init_db():
    """Sync Initialization (Schema Creation) - Runs on Startup"""
    if settings.DATABASE_URL:
        _init_postgres_sync()
    else:
        _init_sqlite_sync()


async def init_async_db():
    """Async Initialization (Pool Creation)"""
    if settings.DATABASE_URL:
        global async_pg_pool
        import asyncpg
        if not async_pg_pool:
            async_pg_pool = await asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=1,
                max_size=20
            )
            logger.info("Async PostgreSQL Pool initialized.")


async def close_async_db():
    """Async Cleanup"""
    global async_pg_pool
    if async_pg_pool:
        await async_pg_pool.close()
        async_pg_pool = None
        logger.info("Async PostgreSQL Pool closed.")


# ─── Sync Implementation Details ─────────────────────────────────────────────
def _init_sqlite_sync():
    conn = sqlite3.connect(settings.DB_PATH)
    try:
        cursor = conn.cursor()
        _create_sqlite_schema(cursor)
        conn.commit()
    finally:
        conn.close()


def _init_postgres_sync():
    import psycopg2

    conn = psycopg2.connect(settings.DATABASE_URL)
    try:
        cursor = conn.cursor()
        _create_postgres_schema(cursor)
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Postgres Init Failed: {e}")
        raise
    finally:
        conn.close()


_STATUS_CHECK = "status IN ('queued', 'running', 'succeeded', 'failed', 'cancelled')"
_MODE_CHECK = "mode IN ('check', 'check_and_fix')"
_FINDING_TYPES = (
    "'missing_dpi', 'spot_color_detected', 'font_not_embedded', 'low_resolution_image', "
    "'rgb_colorspace', 'transparency_detected', 'other'"
)
_FIX_TYPES = (
    "'rgb_to_cmyk', 'normalize_dpi', 'flatten_transparency', 'embed_fonts', "
    "'remove_spot_color', 'pdf_normalize', 'other'"
)


def _create_sqlite_schema(cursor):
    """SQLite Schema"""
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_jobs (
        id TEXT PRIMARY KEY,
        organization_id TEXT,
        status TEXT NOT NULL DEFAULT 'queued' CHECK ({_STATUS_CHECK}),
        mode TEXT NOT NULL DEFAULT 'check' CHECK ({_MODE_CHECK}),
        original_filename TEXT NOT NULL,
        content_type TEXT NOT NULL,
        size_bytes INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        expires_at TEXT NOT NULL,
        report_summary TEXT,
        output_manifest TEXT,
        error TEXT,
        progress_message TEXT
    )
    """)
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_findings (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        job_id TEXT NOT NULL REFERENCES prepress_jobs(id) ON DELETE CASCADE,
        finding_type TEXT NOT NULL CHECK (finding_type IN ({_FINDING_TYPES})),
        severity TEXT NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        page_number INTEGER,
        artboard_name TEXT,
        object_reference TEXT,
        spot_color_name TEXT,
        color_model TEXT,
        detected_dpi INTEGER,
        required_dpi INTEGER,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """)
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_fix_logs (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        job_id TEXT NOT NULL REFERENCES prepress_jobs(id) ON DELETE CASCADE,
        fix_type TEXT NOT NULL CHECK (fix_type IN ({_FIX_TYPES})),
        description TEXT NOT NULL,
        fixed_by_user_id TEXT,
        before_snapshot TEXT,
        after_snapshot TEXT,
        created_at TEXT NOT NULL
    )
    """)
    _create_indexes(cursor)

    # Append-only: no updates, no inserts once the parent job is terminal
    for table in ("prepress_findings", "prepress_fix_logs"):
        cursor.execute(f"""
        CREATE TRIGGER IF NOT EXISTS {table}_no_update
        BEFORE UPDATE ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} is append-only');
        END
        """)
        cursor.execute(f"""
        CREATE TRIGGER IF NOT EXISTS {table}_job_open
        BEFORE INSERT ON {table}
        WHEN (SELECT status FROM prepress_jobs WHERE id = NEW.job_id) IN ('succeeded', 'failed', 'cancelled')
        BEGIN
            SELECT RAISE(ABORT, 'prepress job is finalized');
        END
        """)


def _create_postgres_schema(cursor):
    """Postgres Schema"""
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_jobs (
        id TEXT PRIMARY KEY,
        organization_id TEXT,
        status TEXT NOT NULL DEFAULT 'queued' CHECK ({_STATUS_CHECK}),
        mode TEXT NOT NULL DEFAULT 'check' CHECK ({_MODE_CHECK}),
        original_filename VARCHAR(512) NOT NULL,
        content_type VARCHAR(255) NOT NULL,
        size_bytes BIGINT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        finished_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        report_summary JSONB,
        output_manifest JSONB,
        error JSONB,
        progress_message TEXT
    )
    """)
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_findings (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        job_id TEXT NOT NULL REFERENCES prepress_jobs(id) ON DELETE CASCADE,
        finding_type TEXT NOT NULL CHECK (finding_type IN ({_FINDING_TYPES})),
        severity VARCHAR(20) NOT NULL DEFAULT 'info',
        message TEXT NOT NULL,
        page_number INTEGER,
        artboard_name VARCHAR(255),
        object_reference VARCHAR(255),
        spot_color_name VARCHAR(255),
        color_model VARCHAR(50),
        detected_dpi INTEGER,
        required_dpi INTEGER,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """)
    cursor.execute(f"""
    CREATE TABLE IF NOT EXISTS prepress_fix_logs (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        job_id TEXT NOT NULL REFERENCES prepress_jobs(id) ON DELETE CASCADE,
        fix_type TEXT NOT NULL CHECK (fix_type IN ({_FIX_TYPES})),
        description TEXT NOT NULL,
        fixed_by_user_id TEXT,
        before_snapshot JSONB,
        after_snapshot JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """)
    _create_indexes(cursor)

    cursor.execute("""
    CREATE OR REPLACE FUNCTION prepress_guard_append_only() RETURNS trigger AS $$
    BEGIN
        IF TG_OP = 'UPDATE' THEN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END IF;
        IF EXISTS (
            SELECT 1 FROM prepress_jobs
            WHERE id = NEW.job_id AND status IN ('succeeded', 'failed', 'cancelled')
        ) THEN
            RAISE EXCEPTION 'prepress job % is finalized', NEW.job_id;
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """)
    for table in ("prepress_findings", "prepress_fix_logs"):
        cursor.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
        cursor.execute(f"""
        CREATE TRIGGER {table}_append_only
        BEFORE INSERT OR UPDATE ON {table}
        FOR EACH ROW EXECUTE FUNCTION prepress_guard_append_only()
        """)


def _create_indexes(cursor):
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_jobs_org_idx ON prepress_jobs(organization_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_jobs_status_idx ON prepress_jobs(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_jobs_created_at_idx ON prepress_jobs(created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_jobs_expires_at_idx ON prepress_jobs(expires_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_findings_job_idx ON prepress_findings(job_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_findings_org_idx ON prepress_findings(organization_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_fix_logs_job_idx ON prepress_fix_logs(job_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS prepress_fix_logs_org_idx ON prepress_fix_logs(organization_id)")


# ─── Context Factory ─────────────────────────────────────────────────────────
@asynccontextmanager
async def get_async_db_connection():
    """Async Connection"""
    if settings.DATABASE_URL:
        # Postgres Async
        global async_pg_pool
        if not async_pg_pool: await init_async_db()
        async with async_pg_pool.acquire() as conn:
            yield AsyncPostgresConnection(conn)
    else:
        # SQLite Async
        import aiosqlite
        async with aiosqlite.connect(settings.DB_PATH, timeout=30, isolation_level=None) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            yield AsyncSqliteConnection(conn)
