"""Per-object migration statistics persisted through SQLAlchemy."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

_COLUMNS = (
    "storage_key, primary_hits, origin_fetches, origin_bytes, "
    "writeback_successes, writeback_failures, last_access"
)


class MigrationStats:
    def __init__(self, database_url: str):
        self._engine = self._create_engine(database_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS migration_stats (
                        storage_key TEXT PRIMARY KEY,
                        primary_hits INTEGER NOT NULL DEFAULT 0,
                        origin_fetches INTEGER NOT NULL DEFAULT 0,
                        origin_bytes INTEGER NOT NULL DEFAULT 0,
                        writeback_successes INTEGER NOT NULL DEFAULT 0,
                        writeback_failures INTEGER NOT NULL DEFAULT 0,
                        last_access TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )

    def record_primary_hit(self, storage_key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO migration_stats (storage_key, primary_hits, last_access)
                    VALUES (:storage_key, 1, CURRENT_TIMESTAMP)
                    ON CONFLICT(storage_key) DO UPDATE SET
                        primary_hits = primary_hits + 1,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"storage_key": storage_key},
            )

    def record_origin_fetch(self, storage_key: str, content_length: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO migration_stats (storage_key, origin_fetches, origin_bytes, last_access)
                    VALUES (:storage_key, 1, :bytes, CURRENT_TIMESTAMP)
                    ON CONFLICT(storage_key) DO UPDATE SET
                        origin_fetches = origin_fetches + 1,
                        origin_bytes = origin_bytes + :bytes,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"storage_key": storage_key, "bytes": max(0, content_length)},
            )

    def record_writeback(self, storage_key: str, success: bool, written: int = 0) -> None:
        column = "writeback_successes" if success else "writeback_failures"
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO migration_stats (storage_key, {column}, last_access)
                    VALUES (:storage_key, 1, CURRENT_TIMESTAMP)
                    ON CONFLICT(storage_key) DO UPDATE SET
                        {column} = {column} + 1,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"storage_key": storage_key},
            )

    def get(self, storage_key: str) -> dict[str, object] | None:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(f"SELECT {_COLUMNS} FROM migration_stats WHERE storage_key = :storage_key"),
                {"storage_key": storage_key},
            )
            row = result.mappings().first()
        return dict(row) if row else None

    def top_entries(self, limit: int = 10) -> list[dict[str, object]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(
                    f"""
                    SELECT {_COLUMNS}
                    FROM migration_stats
                    ORDER BY primary_hits + origin_fetches DESC
                    LIMIT :limit
                    """
                ),
                {"limit": limit},
            )
            rows = result.mappings().all()
        return [dict(row) for row in rows]

    def totals(self) -> dict[str, int]:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(
                    """
                    SELECT
                        COUNT(*) AS objects,
                        COALESCE(SUM(primary_hits), 0) AS primary_hits,
                        COALESCE(SUM(origin_fetches), 0) AS origin_fetches,
                        COALESCE(SUM(origin_bytes), 0) AS origin_bytes,
                        COALESCE(SUM(writeback_successes), 0) AS writeback_successes,
                        COALESCE(SUM(writeback_failures), 0) AS writeback_failures
                    FROM migration_stats
                    """
                )
            )
            row = result.mappings().one()
        return {name: int(value) for name, value in row.items()}

    def dispose(self) -> None:
        self._engine.dispose()
