"""Append-only build ledger backed by SQLite.

Design:
- Stage events and run reports are append-only; there is no update path.
- Taints (artifacts of unknown validity) are the one mutable table: a
  taint is set when a stage fails and cleared when it next succeeds.
- WAL journal mode so ``geoforge history`` can read during a run.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from geoforge.models.ledger import StageEvent, TaintRecord
from geoforge.models.reports import RunReport
from geoforge.models.stages import StageOutcome

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_STAGE_EVENTS = """
CREATE TABLE IF NOT EXISTS stage_events (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id         TEXT NOT NULL UNIQUE,
    run_id           TEXT NOT NULL,
    stage_id         TEXT NOT NULL,
    outcome          TEXT NOT NULL,
    exit_code        INTEGER,
    elapsed_seconds  REAL NOT NULL DEFAULT 0,
    reason           TEXT NOT NULL DEFAULT '',
    timestamp_utc    TEXT NOT NULL
);
"""

_CREATE_RUNS = """
CREATE TABLE IF NOT EXISTS runs (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id       TEXT NOT NULL UNIQUE,
    pipeline     TEXT NOT NULL,
    status       TEXT NOT NULL,
    finished_at  TEXT NOT NULL,
    report_json  TEXT NOT NULL
);
"""

_CREATE_TAINTS = """
CREATE TABLE IF NOT EXISTS taints (
    path           TEXT PRIMARY KEY,
    stage_id       TEXT NOT NULL,
    reason         TEXT NOT NULL DEFAULT '',
    timestamp_utc  TEXT NOT NULL
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_events_run ON stage_events(run_id, id);
"""


class BuildLedger:
    """Persistent history for one data directory.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_STAGE_EVENTS)
            conn.execute(_CREATE_RUNS)
            conn.execute(_CREATE_TAINTS)
            conn.execute(_CREATE_IDX_RUN)
            conn.commit()

    # ------------------------------------------------------------------
    # Stage events
    # ------------------------------------------------------------------

    def record_stage(self, event: StageEvent) -> StageEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO stage_events
                    (entry_id, run_id, stage_id, outcome, exit_code,
                     elapsed_seconds, reason, timestamp_utc)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.entry_id,
                    event.run_id,
                    event.stage_id,
                    event.outcome.value,
                    event.exit_code,
                    event.elapsed_seconds,
                    event.reason,
                    event.timestamp_utc.isoformat(),
                ),
            )
            conn.commit()
        return event

    def get_run_entries(self, run_id: str) -> list[StageEvent]:
        """Return all stage events for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, run_id, stage_id, outcome, exit_code, "
                "elapsed_seconds, reason, timestamp_utc "
                "FROM stage_events WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [
            StageEvent(
                entry_id=row[0],
                run_id=row[1],
                stage_id=row[2],
                outcome=StageOutcome(row[3]),
                exit_code=row[4],
                elapsed_seconds=row[5],
                reason=row[6],
                timestamp_utc=datetime.fromisoformat(row[7]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Run reports
    # ------------------------------------------------------------------

    def record_report(self, report: RunReport) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO runs (run_id, pipeline, status, finished_at, report_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    report.run_id,
                    report.pipeline,
                    report.status.value,
                    report.finished_at.isoformat(),
                    report.model_dump_json(),
                ),
            )
            conn.commit()

    def get_report(self, run_id: str) -> RunReport | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT report_json FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
        return RunReport.model_validate_json(row[0]) if row else None

    def latest_report(self) -> RunReport | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT report_json FROM runs ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return RunReport.model_validate_json(row[0]) if row else None

    def get_all_run_ids(self) -> list[str]:
        """Return all run_ids, newest first."""
        with self._connect() as conn:
            rows = conn.execute("SELECT run_id FROM runs ORDER BY id DESC").fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Taints
    # ------------------------------------------------------------------

    def set_taint(self, record: TaintRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO taints (path, stage_id, reason, timestamp_utc) "
                "VALUES (?, ?, ?, ?)",
                (record.path, record.stage_id, record.reason, record.timestamp_utc.isoformat()),
            )
            conn.commit()

    def clear_taint(self, path: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM taints WHERE path = ?", (path,))
            conn.commit()

    def get_taint(self, path: str) -> TaintRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT path, stage_id, reason, timestamp_utc FROM taints WHERE path = ?",
                (path,),
            ).fetchone()
        if row is None:
            return None
        return TaintRecord(
            path=row[0],
            stage_id=row[1],
            reason=row[2],
            timestamp_utc=datetime.fromisoformat(row[3]),
        )
