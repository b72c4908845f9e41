import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from db_pool import SQLiteConnectionPool
from engines.validation import ConflictError, ValidationError
from schemas import LearnerProgressionRecord, TaskAttempt, load_progression_record, parse_attempt

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")
ATTEMPT_RETENTION = 50

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS progression_records (
              learner_id      TEXT PRIMARY KEY,
              payload         TEXT NOT NULL,
              version         INTEGER NOT NULL DEFAULT 0,
              schema_version  INTEGER NOT NULL,
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS task_attempts (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id  TEXT NOT NULL,
              payload     TEXT NOT NULL,
              correct     INTEGER NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_task_attempts_learner ON task_attempts(learner_id, id);
            """
        )
        con.commit()


# -------------- progression records --------------
def get_progression(learner_id: str) -> Optional[LearnerProgressionRecord]:
    """Load and validate the stored record, migrating older payloads."""
    if not learner_id:
        raise ValueError("learner_id is required")
    rows = _query("SELECT payload, version FROM progression_records WHERE learner_id = ?", (learner_id,))
    if not rows:
        return None
    record = load_progression_record(rows[0]["payload"])
    if record.version != rows[0]["version"]:
        # The column is authoritative; payloads written before versioning carry 0.
        record = record.model_copy(update={"version": int(rows[0]["version"])})
    return record


def ensure_progression(learner_id: str, number_range: int = 20) -> LearnerProgressionRecord:
    """Return the learner's record, creating a neutral one on first use."""
    from engines.progression import new_progression_record

    existing = get_progression(learner_id)
    if existing is not None:
        return existing
    record = new_progression_record(learner_id, number_range)
    with _pool.transaction() as con:
        cur = con.execute(
            """
            INSERT OR IGNORE INTO progression_records(learner_id, payload, version, schema_version)
            VALUES (?,?,?,?)
            """,
            (learner_id, _dump_record(record), record.version, record.schema_version),
        )
        created = cur.rowcount == 1
    if created:
        logger.info("Enrolled learner %s in number range %d", learner_id, number_range)
        return record
    # Another writer enrolled the learner in the meantime.
    return get_progression(learner_id)


def update_progression(
    learner_id: str,
    record: LearnerProgressionRecord,
    expected_version: int,
    attempt: Optional[Union[TaskAttempt, Mapping[str, Any]]] = None,
) -> None:
    """Write ``record`` if the stored version still equals ``expected_version``.

    The record, the optional attempt and the attempt retention happen in one
    transaction. Raises ConflictError and writes nothing on a version mismatch.
    """
    if record.learner_id != learner_id:
        raise ValidationError(f"Record belongs to {record.learner_id!r}, not {learner_id!r}")
    if record.version != expected_version + 1:
        raise ValidationError(
            f"Record version must be {expected_version + 1} when replacing version {expected_version}"
        )
    parsed = parse_attempt(attempt) if attempt is not None else None

    with _pool.transaction() as con:
        rows = con.execute(
            "SELECT version FROM progression_records WHERE learner_id = ?", (learner_id,)
        ).fetchall()
        actual = int(rows[0]["version"]) if rows else None
        if actual is None and expected_version == 0:
            con.execute(
                """
                INSERT INTO progression_records(learner_id, payload, version, schema_version)
                VALUES (?,?,?,?)
                """,
                (learner_id, _dump_record(record), record.version, record.schema_version),
            )
        elif actual != expected_version:
            raise ConflictError(learner_id, expected_version, actual)
        else:
            con.execute(
                """
                UPDATE progression_records
                SET payload = ?, version = ?, schema_version = ?, updated_at = CURRENT_TIMESTAMP
                WHERE learner_id = ? AND version = ?
                """,
                (_dump_record(record), record.version, record.schema_version, learner_id, expected_version),
            )

        if parsed is not None:
            con.execute(
                "INSERT INTO task_attempts(learner_id, payload, correct, created_at) VALUES (?,?,?,?)",
                (
                    learner_id,
                    json_dumps(parsed.model_dump(mode="json")),
                    1 if parsed.correct else 0,
                    parsed.created_at.isoformat(),
                ),
            )
            con.execute(
                """
                DELETE FROM task_attempts
                WHERE learner_id = ? AND id NOT IN (
                  SELECT id FROM task_attempts WHERE learner_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (learner_id, learner_id, ATTEMPT_RETENTION),
            )
    logger.debug("Stored progression for %s at version %d", learner_id, record.version)


def get_recent_attempts(learner_id: str, limit: int = 20) -> list[TaskAttempt]:
    """Return up to ``limit`` most recent attempts, oldest first."""
    rows = _query(
        "SELECT payload FROM task_attempts WHERE learner_id = ? ORDER BY id DESC LIMIT ?",
        (learner_id, max(0, int(limit))),
    )
    return [parse_attempt(json.loads(row["payload"])) for row in reversed(rows)]


def count_attempts(learner_id: str) -> int:
    rows = _query("SELECT COUNT(*) AS n FROM task_attempts WHERE learner_id = ?", (learner_id,))
    return int(rows[0]["n"]) if rows else 0


def delete_learner_data(learner_id: str) -> dict[str, int]:
    """Remove every stored row for ``learner_id``; returns deleted counts per table."""
    with _pool.transaction() as con:
        attempts = con.execute("DELETE FROM task_attempts WHERE learner_id = ?", (learner_id,)).rowcount
        records = con.execute("DELETE FROM progression_records WHERE learner_id = ?", (learner_id,)).rowcount
    return {"task_attempts": attempts, "progression_records": records}


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _dump_record(record: LearnerProgressionRecord) -> str:
    return json_dumps(record.model_dump(mode="json"))
