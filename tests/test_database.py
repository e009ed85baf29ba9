from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, select, text

from mediasync.database import Database
from mediasync.db_models import MediaItemRecord


def _initialise_legacy_schema(database_path: str) -> None:
    """Create a legacy job_runs table lacking the item counter columns."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE job_runs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        job_name VARCHAR(200),
                        job_type VARCHAR(32),
                        status VARCHAR(16),
                        start_time DATETIME,
                        end_time DATETIME,
                        progress INTEGER NOT NULL DEFAULT 0,
                        progress_message TEXT,
                        error_message TEXT,
                        user_id INTEGER,
                        metadata JSON
                    )
                    """
                )
            )
            connection.execute(
                text(
                    "INSERT INTO job_runs (job_name, job_type, status, progress) "
                    "VALUES ('system.media.sync.movies', 'sync', 'completed', 100)"
                )
            )
    finally:
        engine.dispose()


def test_create_all_adds_job_counter_columns(tmp_path) -> None:
    """Schema migrations should backfill the job item counters."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{database_path}")
        await database.create_all()
        await database.dispose()

    asyncio.run(runner())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("job_runs")}
        assert {"total_items", "processed_items"} <= columns
        assert "media_item_sources" in inspector.get_table_names()
        with inspector_engine.connect() as connection:
            row = connection.execute(
                text("SELECT total_items, processed_items FROM job_runs")
            ).one()
        assert tuple(row) == (0, 0)
    finally:
        inspector_engine.dispose()


def test_sqlite_savepoint_rolls_back_only_the_nested_write(tmp_path) -> None:
    """A failed nested transaction must not discard the outer transaction."""

    async def runner() -> list[str]:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'nested.db'}")
        await database.create_all()
        try:
            async with database.session() as session:
                async with session.begin():
                    session.add(MediaItemRecord(type="movie", title="Kept", payload={}))
                    try:
                        async with session.begin_nested():
                            session.add(
                                MediaItemRecord(type="movie", title="Dropped", payload={})
                            )
                            await session.flush()
                            raise RuntimeError("boom")
                    except RuntimeError:
                        pass
            async with database.session() as session:
                result = await session.execute(select(MediaItemRecord.title))
                return [title for (title,) in result.all()]
        finally:
            await database.dispose()

    assert asyncio.run(runner()) == ["Kept"]
