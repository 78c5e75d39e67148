"""Run history. SQLite by default; set DATABASE_URL for MySQL.
Startup ensures the table exists; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import json
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from emage import config as app_config

logger = logging.getLogger("emage.db")

_engine: Optional[Engine] = None

REQUIRED_TABLES = ("runs",)

_COLUMNS = (
    "run_id", "filename", "source_path", "working_path", "media_type", "keep_source", "status",
    "algorithms_json", "completed_json", "errors_json", "fatal_error",
    "original_bytes", "final_bytes", "started_at", "finished_at",
)


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return app_config.DATABASE_URL.split(":", 1)[0]


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in app_config.DATABASE_URL:
                # a :memory: database lives and dies with its connection
                kwargs["poolclass"] = StaticPool
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS runs (
            run_id TEXT PRIMARY KEY,
            filename TEXT,
            source_path TEXT NOT NULL,
            working_path TEXT,
            media_type TEXT,
            keep_source INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            algorithms_json TEXT,
            completed_json TEXT,
            errors_json TEXT,
            fatal_error TEXT,
            original_bytes INTEGER,
            final_bytes INTEGER,
            started_at TEXT NOT NULL,
            finished_at TEXT
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS runs (
            run_id VARCHAR(64) PRIMARY KEY,
            filename VARCHAR(512),
            source_path TEXT NOT NULL,
            working_path TEXT,
            media_type VARCHAR(100),
            keep_source TINYINT NOT NULL DEFAULT 0,
            status VARCHAR(50) NOT NULL,
            algorithms_json TEXT,
            completed_json TEXT,
            errors_json TEXT,
            fatal_error TEXT,
            original_bytes BIGINT,
            final_bytes BIGINT,
            started_at VARCHAR(50) NOT NULL,
            finished_at VARCHAR(50)
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))
    try:
        engine = get_engine()
        _ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Using in-memory SQLite.", kind, e.orig, exc_info=True)
    except Exception as e:
        logger.exception("Database init failed: %s. Using in-memory SQLite.", e)

    # Last resort: in-memory SQLite (history will not persist across restarts)
    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = None
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Run history will not persist across restarts.")


def reset_engine() -> None:
    """Forget the cached engine, e.g. after DATABASE_URL changed."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def record_run(run) -> None:
    """Persist a finished run (anything with ``to_dict()`` shaped like CompressionRun's)."""
    data = run.to_dict()
    params = {
        "run_id": data["run_id"],
        "filename": data["filename"],
        "source_path": data["source_path"],
        "working_path": data["working_path"],
        "media_type": data["media_type"],
        "keep_source": 1 if data["keep_source"] else 0,
        "status": data["status"],
        "algorithms_json": json.dumps(data["algorithms"]),
        "completed_json": json.dumps(data["completed_algorithms"]),
        "errors_json": json.dumps(data["errors"]),
        "fatal_error": data["fatal_error"],
        "original_bytes": data["original_size"],
        "final_bytes": data["size"],
        "started_at": data["started_at"],
        "finished_at": data["finished_at"],
    }
    columns = ", ".join(_COLUMNS)
    values = ", ".join(f":{c}" for c in _COLUMNS)
    verb = "INSERT OR REPLACE" if _is_sqlite() else "REPLACE"
    with session() as conn:
        conn.execute(text(f"{verb} INTO runs ({columns}) VALUES ({values})"), params)
    logger.debug("Recorded run %s (%s)", params["run_id"], params["status"])


def _row_to_dict(row) -> dict:
    r = dict(zip(_COLUMNS, row))
    original, final = r["original_bytes"], r["final_bytes"]
    savings = 0.0
    if original and final is not None:
        savings = round((1.0 - final / original) * 100.0, 2)
    return {
        "run_id": r["run_id"],
        "filename": r["filename"],
        "source_path": r["source_path"],
        "working_path": r["working_path"],
        "media_type": r["media_type"],
        "keep_source": bool(r["keep_source"]),
        "status": r["status"],
        "algorithms": json.loads(r["algorithms_json"]) if r["algorithms_json"] else [],
        "completed_algorithms": json.loads(r["completed_json"]) if r["completed_json"] else [],
        "errors": json.loads(r["errors_json"]) if r["errors_json"] else [],
        "fatal_error": r["fatal_error"],
        "original_size": original,
        "size": final,
        "savings": savings,
        "started_at": r["started_at"],
        "finished_at": r["finished_at"],
    }


def get_run_from_db(run_id: str) -> Optional[dict]:
    """Return a recorded run as dict or None. Used when the run is no longer in memory (e.g. after restart)."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text(f"SELECT {', '.join(_COLUMNS)} FROM runs WHERE run_id = :id"),
            {"id": run_id},
        ).fetchone()
    return _row_to_dict(row) if row else None


def get_recent_runs(limit: int = 50) -> list[dict]:
    """Recorded runs, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text(f"SELECT {', '.join(_COLUMNS)} FROM runs ORDER BY started_at DESC LIMIT :lim"),
            {"lim": limit},
        ).fetchall()
    return [_row_to_dict(r) for r in rows]


def get_history_stats() -> dict:
    """Aggregate over all recorded runs: runs, failed_runs, total_input_bytes, total_output_bytes, savings_percent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COUNT(*) AS runs,
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0) AS failed_runs,
                    COALESCE(SUM(original_bytes), 0) AS total_input_bytes,
                    COALESCE(SUM(final_bytes), 0) AS total_output_bytes
                FROM runs
            """),
        ).fetchone()
    runs, failed_runs, total_input, total_output = int(row[0]), int(row[1]), int(row[2]), int(row[3])
    savings_percent = 0.0
    if total_input > 0:
        savings_percent = round((1.0 - total_output / total_input) * 100.0, 1)
    return {
        "runs": runs,
        "failed_runs": failed_runs,
        "total_input_bytes": total_input,
        "total_output_bytes": total_output,
        "savings_percent": savings_percent,
    }
