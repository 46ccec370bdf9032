"""
SQLite implementation of the pipeline run archive.

Uses aiosqlite for async operations.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import json

import aiosqlite

from ci_common.models import JobRun, PipelineRun
from ci_common.repository import PipelineRunRepository


class SQLitePipelineRunRepository(PipelineRunRepository):
    """
    SQLite-based archive of finished pipeline runs.

    Uses a single database file with two tables:
    - pipeline_runs: One row per run with its event and aggregate status
    - job_runs: One row per job outcome, with the job's report as JSON
    """

    def __init__(self, db_path: str = "ci_runs.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - pipeline_runs table: Run metadata (id, pipeline, status, event, times)
        - job_runs table: Ordered job outcomes with foreign key to pipeline_runs
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS pipeline_runs (
                id TEXT PRIMARY KEY,
                pipeline TEXT NOT NULL,
                status TEXT NOT NULL,
                event TEXT NOT NULL,
                branch TEXT NOT NULL,
                event_data TEXT NOT NULL,
                start_time TEXT,
                end_time TEXT
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS job_runs (
                run_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                report TEXT NOT NULL,
                PRIMARY KEY (run_id, position),
                FOREIGN KEY (run_id) REFERENCES pipeline_runs(id) ON DELETE CASCADE
            )
        """)

        # Listings are ordered by start time
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pipeline_runs_start_time
            ON pipeline_runs(start_time)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def save_run(self, run: PipelineRun) -> None:
        """
        Persist a pipeline run and its job outcomes.

        Args:
            run: PipelineRun to archive (replaces any stored copy)
        """
        conn = await self._get_connection()
        report = run.to_dict()

        await conn.execute("DELETE FROM pipeline_runs WHERE id = ?", (run.id,))
        await conn.execute(
            """
            INSERT INTO pipeline_runs (id, pipeline, status, event, branch, event_data, start_time, end_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                run.pipeline,
                run.status,
                run.event.kind,
                run.event.branch,
                json.dumps(report["event"]),
                report["start_time"],
                report["end_time"],
            ),
        )
        await conn.executemany(
            """
            INSERT INTO job_runs (run_id, position, name, status, report)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (run.id, position, job["name"], job["status"], json.dumps(job))
                for position, job in enumerate(report["jobs"])
            ],
        )
        await conn.commit()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """
        Retrieve a run with all its job outcomes.

        Args:
            run_id: UUID of the run to retrieve

        Returns:
            PipelineRun if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, pipeline, status, event_data, start_time, end_time FROM pipeline_runs WHERE id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        run = self._row_to_run(row)

        cursor = await conn.execute(
            "SELECT report FROM job_runs WHERE run_id = ? ORDER BY position",
            (run_id,),
        )
        rows = await cursor.fetchall()
        run.jobs = [JobRun.from_dict(json.loads(r[0])) for r in rows]
        return run

    async def list_runs(self, limit: int | None = None) -> list[PipelineRun]:
        """
        List archived runs (without job outcomes), most recent first.

        Args:
            limit: Maximum number of runs to return (None for all)
        """
        conn = await self._get_connection()

        query = (
            "SELECT id, pipeline, status, event_data, start_time, end_time "
            "FROM pipeline_runs ORDER BY start_time DESC"
        )
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    @staticmethod
    def _row_to_run(row) -> PipelineRun:
        run_id, pipeline, status, event_data, start_time, end_time = row
        return PipelineRun.from_dict(
            {
                "id": run_id,
                "pipeline": pipeline,
                "status": status,
                "event": json.loads(event_data),
                "start_time": start_time,
                "end_time": end_time,
            }
        )
