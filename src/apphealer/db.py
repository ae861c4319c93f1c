"""SQLite database for AppHealer state and history."""

from __future__ import annotations

import json
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Generator

from loguru import logger

from apphealer.config import DEFAULT_DB_FILE
from apphealer.models import (
    ACTIVE_HEALING_STATUSES,
    CheckProfile,
    CheckResult,
    Diagnosis,
    DiagnosisType,
    DiagnosticExecution,
    ExecutionLogEntry,
    HealingExecution,
    HealingMode,
    HealingPattern,
    HealingStatus,
    HealthStatus,
    Target,
)

# Schema version for migrations
SCHEMA_VERSION = 3

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Managed applications
CREATE TABLE IF NOT EXISTS targets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    path TEXT NOT NULL,
    url TEXT,
    healing_mode TEXT NOT NULL DEFAULT 'manual',
    is_healer_enabled INTEGER NOT NULL DEFAULT 1,
    max_healing_attempts INTEGER NOT NULL DEFAULT 3,
    healing_cooldown INTEGER NOT NULL DEFAULT 3600,
    current_healing_attempts INTEGER NOT NULL DEFAULT 0,
    last_healing_attempt_at TEXT,
    health_status TEXT NOT NULL DEFAULT 'unknown',
    health_score INTEGER,
    last_health_check TEXT,
    log_paths TEXT,
    db_check_command TEXT,
    check_profile TEXT,
    blacklisted_plugins TEXT,
    blacklisted_themes TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Check runner passes (write-once)
CREATE TABLE IF NOT EXISTS diagnostic_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_id TEXT NOT NULL,
    profile TEXT NOT NULL,
    results TEXT NOT NULL,
    health_score INTEGER NOT NULL,
    category_scores TEXT,
    triggered_by TEXT DEFAULT 'manual',
    duration_ms INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Remediation attempts
CREATE TABLE IF NOT EXISTS healing_executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    healing_mode TEXT NOT NULL,
    diagnosis TEXT,
    diagnostic_execution_id INTEGER,
    verification_execution_id INTEGER,
    pre_health_score INTEGER,
    post_health_score INTEGER,
    commands TEXT,
    backup_id TEXT,
    non_mutating INTEGER DEFAULT 0,
    auto_healed INTEGER DEFAULT 0,
    needs_approval INTEGER DEFAULT 0,
    cannot_heal INTEGER DEFAULT 0,
    reason TEXT,
    triggered_by TEXT DEFAULT 'manual',
    approved_by TEXT,
    owner_pid INTEGER,
    execution_logs TEXT NOT NULL DEFAULT '[]',
    started_at TEXT NOT NULL,
    finished_at TEXT
);

-- Learned remediation patterns
CREATE TABLE IF NOT EXISTS healing_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    signature TEXT NOT NULL UNIQUE,
    diagnosis_type TEXT NOT NULL,
    error_type TEXT,
    culprit TEXT,
    error_pattern TEXT,
    commands TEXT NOT NULL DEFAULT '[]',
    success_count INTEGER NOT NULL DEFAULT 0,
    failure_count INTEGER NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0,
    auto_approved INTEGER NOT NULL DEFAULT 0,
    approval_locked INTEGER NOT NULL DEFAULT 0,
    last_used_at TEXT,
    last_success_at TEXT,
    last_failure_at TEXT,
    created_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_diag_target ON diagnostic_executions(target_id, created_at);
CREATE INDEX IF NOT EXISTS idx_healing_target ON healing_executions(target_id, started_at);
CREATE INDEX IF NOT EXISTS idx_healing_status ON healing_executions(status);
"""

# At most one active healing execution per target, across processes
ACTIVE_EXECUTION_INDEX_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_healing_one_active
ON healing_executions(target_id)
WHERE status IN ('pending', 'diagnosing', 'awaiting_approval', 'healing')
"""


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database for AppHealer."""

    def __init__(self, db_path: Path | None = None):
        """Initialize the database."""
        self.db_path = db_path or DEFAULT_DB_FILE
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Ensure the database exists and is up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

                cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
                row = cursor.fetchone()

                if row is None:
                    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                    logger.debug(f"Initialized database at {self.db_path}")
                elif row[0] < SCHEMA_VERSION:
                    self._migrate(conn, row[0], SCHEMA_VERSION)

                conn.execute(ACTIVE_EXECUTION_INDEX_SQL)
        except sqlite3.DatabaseError as e:
            if "malformed" in str(e).lower() or "not a database" in str(e).lower():
                logger.error(f"Database corruption detected at {self.db_path}: {e}")
                backup_path = self.db_path.with_suffix(".db.corrupt")
                shutil.move(str(self.db_path), str(backup_path))
                logger.warning(f"Moved corrupted database to {backup_path}")
                self._ensure_db()
            else:
                raise

    def _migrate(self, conn: sqlite3.Connection, from_version: int, to_version: int) -> None:
        """Run database migrations."""
        logger.info(f"Migrating database from version {from_version} to {to_version}")

        if from_version < 2 <= to_version:
            # Version 2: operator-pinned pattern approval
            try:
                conn.execute(
                    "ALTER TABLE healing_patterns ADD COLUMN approval_locked INTEGER NOT NULL DEFAULT 0"
                )
            except sqlite3.OperationalError:
                pass  # Column already exists

        if from_version < 3 <= to_version:
            # Version 3: execution owner, component blacklists, one active execution per target
            for table, column in (
                ("healing_executions", "owner_pid INTEGER"),
                ("targets", "blacklisted_plugins TEXT"),
                ("targets", "blacklisted_themes TEXT"),
            ):
                try:
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column}")
                except sqlite3.OperationalError:
                    pass  # Column already exists

            active = "('pending', 'diagnosing', 'awaiting_approval', 'healing')"
            cursor = conn.execute(
                f"""
                UPDATE healing_executions SET status = 'failed', reason = 'Interrupted'
                WHERE status IN {active} AND id NOT IN (
                    SELECT MIN(id) FROM healing_executions
                    WHERE status IN {active} GROUP BY target_id
                )
                """
            )
            if cursor.rowcount:
                logger.warning(f"Failed {cursor.rowcount} duplicate active healing executions")

        conn.execute("UPDATE schema_version SET version = ?", (to_version,))

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Target Methods

    def upsert_target(self, target: Target) -> None:
        """Insert a target or update its configuration, keeping runtime state."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO targets (
                    id, name, path, url, healing_mode, is_healer_enabled,
                    max_healing_attempts, healing_cooldown, current_healing_attempts,
                    last_healing_attempt_at, health_status, health_score, last_health_check,
                    log_paths, db_check_command, check_profile, blacklisted_plugins, blacklisted_themes,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    path = excluded.path,
                    url = excluded.url,
                    healing_mode = excluded.healing_mode,
                    is_healer_enabled = excluded.is_healer_enabled,
                    max_healing_attempts = excluded.max_healing_attempts,
                    healing_cooldown = excluded.healing_cooldown,
                    log_paths = excluded.log_paths,
                    db_check_command = excluded.db_check_command,
                    check_profile = excluded.check_profile,
                    blacklisted_plugins = excluded.blacklisted_plugins,
                    blacklisted_themes = excluded.blacklisted_themes,
                    updated_at = excluded.updated_at
                """,
                (
                    target.id,
                    target.name,
                    target.path,
                    target.url,
                    target.healing_mode.value,
                    1 if target.is_healer_enabled else 0,
                    target.max_healing_attempts,
                    target.healing_cooldown,
                    target.current_healing_attempts,
                    _dt(target.last_healing_attempt_at),
                    target.health_status.value,
                    target.health_score,
                    _dt(target.last_health_check),
                    json.dumps(target.log_paths),
                    target.db_check_command,
                    target.check_profile.value if target.check_profile else None,
                    json.dumps(target.blacklisted_plugins),
                    json.dumps(target.blacklisted_themes),
                    now,
                    now,
                ),
            )

    def get_target(self, target_id: str) -> Target | None:
        """Get a target by id."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM targets WHERE id = ?", (target_id,)).fetchone()
            return self._row_to_target(row) if row else None

    def list_targets(self) -> list[Target]:
        """Get all targets."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM targets ORDER BY id").fetchall()
            return [self._row_to_target(row) for row in rows]

    def update_target_health(
        self,
        target_id: str,
        status: HealthStatus,
        score: int | None = None,
    ) -> None:
        """Update a target's health status, and its score when given."""
        with self._connect() as conn:
            if score is None:
                conn.execute(
                    "UPDATE targets SET health_status = ?, updated_at = ? WHERE id = ?",
                    (status.value, datetime.now().isoformat(), target_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE targets SET health_status = ?, health_score = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status.value, score, datetime.now().isoformat(), target_id),
                )

    def mark_health_checked(self, target_id: str, checked_at: datetime | None = None) -> None:
        """Record when a target was last checked."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE targets SET last_health_check = ?, updated_at = ? WHERE id = ?",
                (
                    _dt(checked_at or datetime.now()),
                    datetime.now().isoformat(),
                    target_id,
                ),
            )

    def increment_healing_attempts(self, target_id: str, at: datetime | None = None) -> int:
        """Count one more healing attempt and return the new total."""
        at = at or datetime.now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE targets
                SET current_healing_attempts = current_healing_attempts + 1,
                    last_healing_attempt_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (at.isoformat(), datetime.now().isoformat(), target_id),
            )
            row = conn.execute(
                "SELECT current_healing_attempts FROM targets WHERE id = ?", (target_id,)
            ).fetchone()
            return row[0] if row else 0

    def reset_healing_attempts(self, target_id: str) -> None:
        """Reset a target's healing attempt counter."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE targets SET current_healing_attempts = 0, updated_at = ? WHERE id = ?",
                (datetime.now().isoformat(), target_id),
            )

    def _row_to_target(self, row: sqlite3.Row) -> Target:
        return Target(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            url=row["url"],
            healing_mode=HealingMode(row["healing_mode"]),
            is_healer_enabled=bool(row["is_healer_enabled"]),
            max_healing_attempts=row["max_healing_attempts"],
            healing_cooldown=row["healing_cooldown"],
            current_healing_attempts=row["current_healing_attempts"],
            last_healing_attempt_at=_parse_dt(row["last_healing_attempt_at"]),
            health_status=HealthStatus(row["health_status"]),
            health_score=row["health_score"],
            last_health_check=_parse_dt(row["last_health_check"]),
            log_paths=json.loads(row["log_paths"]) if row["log_paths"] else [],
            db_check_command=row["db_check_command"],
            check_profile=CheckProfile(row["check_profile"]) if row["check_profile"] else None,
            blacklisted_plugins=json.loads(row["blacklisted_plugins"]) if row["blacklisted_plugins"] else [],
            blacklisted_themes=json.loads(row["blacklisted_themes"]) if row["blacklisted_themes"] else [],
        )

    # Diagnostic Execution Methods

    def save_diagnostic_execution(self, execution: DiagnosticExecution) -> int:
        """Persist a check runner pass and return its id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO diagnostic_executions (
                    target_id, profile, results, health_score, category_scores,
                    triggered_by, duration_ms, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution.target_id,
                    execution.profile.value,
                    json.dumps([r.model_dump(mode="json") for r in execution.results]),
                    execution.health_score,
                    json.dumps(execution.category_scores),
                    execution.triggered_by,
                    execution.duration_ms,
                    execution.created_at.isoformat(),
                ),
            )
            return cursor.lastrowid or 0

    def get_diagnostic_execution(self, execution_id: int) -> DiagnosticExecution | None:
        """Get a diagnostic execution by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM diagnostic_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            return self._row_to_diagnostic(row) if row else None

    def list_diagnostic_executions(
        self, target_id: str | None = None, limit: int = 50
    ) -> list[DiagnosticExecution]:
        """Get recent diagnostic executions, newest first."""
        with self._connect() as conn:
            if target_id:
                rows = conn.execute(
                    "SELECT * FROM diagnostic_executions WHERE target_id = ? ORDER BY id DESC LIMIT ?",
                    (target_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM diagnostic_executions ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_diagnostic(row) for row in rows]

    def _row_to_diagnostic(self, row: sqlite3.Row) -> DiagnosticExecution:
        return DiagnosticExecution(
            id=row["id"],
            target_id=row["target_id"],
            profile=CheckProfile(row["profile"]),
            results=[CheckResult.model_validate(r) for r in json.loads(row["results"])],
            health_score=row["health_score"],
            category_scores=json.loads(row["category_scores"]) if row["category_scores"] else {},
            triggered_by=row["triggered_by"],
            duration_ms=row["duration_ms"] or 0,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Healing Execution Methods

    def create_healing_execution(self, execution: HealingExecution) -> int | None:
        """Insert a healing execution and return its id.

        Returns None if the target already has an active execution.
        """
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO healing_executions (
                        target_id, status, healing_mode, triggered_by, owner_pid,
                        execution_logs, started_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        execution.target_id,
                        execution.status.value,
                        execution.healing_mode.value,
                        execution.triggered_by,
                        execution.owner_pid,
                        json.dumps([e.model_dump(mode="json") for e in execution.execution_logs]),
                        execution.started_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                # Another execution is active for this target
                return None
            return cursor.lastrowid or 0

    def update_healing_execution(
        self,
        execution: HealingExecution,
        expected: HealingStatus | None = None,
    ) -> bool:
        """Write back every mutable field of a healing execution.

        With `expected`, the write only happens if the stored status still is
        `expected` (compare-and-swap).

        Returns:
            True if the row was written
        """
        sql = """
            UPDATE healing_executions SET
                status = ?, diagnosis = ?, diagnostic_execution_id = ?,
                verification_execution_id = ?, pre_health_score = ?, post_health_score = ?,
                commands = ?, backup_id = ?, non_mutating = ?, auto_healed = ?,
                needs_approval = ?, cannot_heal = ?, reason = ?, approved_by = ?,
                owner_pid = ?, execution_logs = ?, finished_at = ?
            WHERE id = ?
        """
        if expected is not None:
            sql += " AND status = ?"
        with self._connect() as conn:
            params = [
                execution.status.value,
                execution.diagnosis.model_dump_json() if execution.diagnosis else None,
                execution.diagnostic_execution_id,
                execution.verification_execution_id,
                execution.pre_health_score,
                execution.post_health_score,
                json.dumps(execution.commands),
                execution.backup_id,
                1 if execution.non_mutating else 0,
                execution.auto_healed,
                execution.needs_approval,
                execution.cannot_heal,
                execution.reason,
                execution.approved_by,
                execution.owner_pid,
                json.dumps([e.model_dump(mode="json") for e in execution.execution_logs]),
                _dt(execution.finished_at),
                execution.id,
            ]
            if expected is not None:
                params.append(expected.value)
            cursor = conn.execute(sql, params)
            return cursor.rowcount == 1

    def get_healing_execution(self, execution_id: int) -> HealingExecution | None:
        """Get a healing execution by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM healing_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            return self._row_to_healing(row) if row else None

    def list_healing_executions(
        self, target_id: str | None = None, limit: int = 50
    ) -> list[HealingExecution]:
        """Get recent healing executions, newest first."""
        with self._connect() as conn:
            if target_id:
                rows = conn.execute(
                    "SELECT * FROM healing_executions WHERE target_id = ? ORDER BY id DESC LIMIT ?",
                    (target_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM healing_executions ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [self._row_to_healing(row) for row in rows]

    def get_active_healing_executions(self, target_id: str | None = None) -> list[HealingExecution]:
        """Get executions that have not reached a terminal state."""
        statuses = [s.value for s in ACTIVE_HEALING_STATUSES]
        sql = f"SELECT * FROM healing_executions WHERE status IN ({', '.join('?' for _ in statuses)})"
        params: list = list(statuses)
        if target_id:
            sql += " AND target_id = ?"
            params.append(target_id)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
            return [self._row_to_healing(row) for row in rows]

    def _row_to_healing(self, row: sqlite3.Row) -> HealingExecution:
        return HealingExecution(
            id=row["id"],
            target_id=row["target_id"],
            status=HealingStatus(row["status"]),
            healing_mode=HealingMode(row["healing_mode"]),
            diagnosis=Diagnosis.model_validate_json(row["diagnosis"]) if row["diagnosis"] else None,
            diagnostic_execution_id=row["diagnostic_execution_id"],
            verification_execution_id=row["verification_execution_id"],
            pre_health_score=row["pre_health_score"],
            post_health_score=row["post_health_score"],
            commands=json.loads(row["commands"]) if row["commands"] else [],
            backup_id=row["backup_id"],
            non_mutating=bool(row["non_mutating"]),
            auto_healed=row["auto_healed"] or 0,
            needs_approval=row["needs_approval"] or 0,
            cannot_heal=row["cannot_heal"] or 0,
            reason=row["reason"],
            triggered_by=row["triggered_by"],
            approved_by=row["approved_by"],
            owner_pid=row["owner_pid"],
            execution_logs=[
                ExecutionLogEntry.model_validate(e) for e in json.loads(row["execution_logs"])
            ],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=_parse_dt(row["finished_at"]),
        )

    # Healing Pattern Methods

    def get_pattern(self, pattern_id: int) -> HealingPattern | None:
        """Get a pattern by id."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM healing_patterns WHERE id = ?", (pattern_id,)
            ).fetchone()
            return self._row_to_pattern(row) if row else None

    def get_pattern_by_signature(self, signature: str) -> HealingPattern | None:
        """Get a pattern by its signature string."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM healing_patterns WHERE signature = ?", (signature,)
            ).fetchone()
            return self._row_to_pattern(row) if row else None

    def list_patterns(self) -> list[HealingPattern]:
        """Get all patterns, most reliable first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM healing_patterns ORDER BY confidence DESC, success_count DESC, id"
            ).fetchall()
            return [self._row_to_pattern(row) for row in rows]

    def modify_pattern(
        self,
        signature: str,
        mutate: Callable[[HealingPattern | None], HealingPattern],
    ) -> HealingPattern:
        """Read-modify-write one pattern inside a single write transaction.

        `mutate` receives the current row (None if the signature is new) and
        returns the pattern to store. BEGIN IMMEDIATE takes the write lock
        before the read, so concurrent writers of the same signature serialize.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM healing_patterns WHERE signature = ?", (signature,)
            ).fetchone()
            current = self._row_to_pattern(row) if row else None
            pattern = mutate(current)

            values = (
                pattern.diagnosis_type.value,
                pattern.error_type,
                pattern.culprit,
                pattern.error_pattern,
                json.dumps(pattern.commands),
                pattern.success_count,
                pattern.failure_count,
                pattern.confidence,
                1 if pattern.auto_approved else 0,
                1 if pattern.approval_locked else 0,
                _dt(pattern.last_used_at),
                _dt(pattern.last_success_at),
                _dt(pattern.last_failure_at),
            )
            if current is None:
                cursor = conn.execute(
                    """
                    INSERT INTO healing_patterns (
                        diagnosis_type, error_type, culprit, error_pattern, commands,
                        success_count, failure_count, confidence, auto_approved,
                        approval_locked, last_used_at, last_success_at, last_failure_at,
                        signature, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values + (signature, pattern.created_at.isoformat()),
                )
                pattern.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE healing_patterns SET
                        diagnosis_type = ?, error_type = ?, culprit = ?, error_pattern = ?,
                        commands = ?, success_count = ?, failure_count = ?, confidence = ?,
                        auto_approved = ?, approval_locked = ?, last_used_at = ?,
                        last_success_at = ?, last_failure_at = ?
                    WHERE signature = ?
                    """,
                    values + (signature,),
                )
                pattern.id = current.id
            return pattern

    def set_pattern_approval(self, pattern_id: int, approved: bool, locked: bool) -> bool:
        """Set a pattern's approval flags. Returns False if not found."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE healing_patterns SET auto_approved = ?, approval_locked = ? WHERE id = ?",
                (1 if approved else 0, 1 if locked else 0, pattern_id),
            )
            return cursor.rowcount == 1

    def delete_pattern(self, pattern_id: int) -> bool:
        """Delete a pattern. Returns False if not found."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM healing_patterns WHERE id = ?", (pattern_id,))
            return cursor.rowcount == 1

    def _row_to_pattern(self, row: sqlite3.Row) -> HealingPattern:
        return HealingPattern(
            id=row["id"],
            signature=row["signature"],
            diagnosis_type=DiagnosisType(row["diagnosis_type"]),
            error_type=row["error_type"],
            culprit=row["culprit"],
            error_pattern=row["error_pattern"],
            commands=json.loads(row["commands"]) if row["commands"] else [],
            success_count=row["success_count"],
            failure_count=row["failure_count"],
            auto_approved=bool(row["auto_approved"]),
            approval_locked=bool(row["approval_locked"]),
            last_used_at=_parse_dt(row["last_used_at"]),
            last_success_at=_parse_dt(row["last_success_at"]),
            last_failure_at=_parse_dt(row["last_failure_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
