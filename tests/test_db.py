"""Tests for the SQLite database layer."""

import sqlite3
from datetime import datetime

from apphealer.db import SCHEMA_VERSION, Database
from apphealer.models import (
    Diagnosis,
    DiagnosisType,
    HealingExecution,
    HealingMode,
    HealingStatus,
    HealthStatus,
    Target,
)


class TestTargets:
    """Tests for target rows."""

    def test_upsert_keeps_runtime_state(self, temp_db):
        temp_db.upsert_target(Target(id="site", path="/var/www/site"))
        temp_db.increment_healing_attempts("site")
        temp_db.update_target_health("site", HealthStatus.DOWN, 20)

        temp_db.upsert_target(
            Target(id="site", path="/srv/site", healing_mode=HealingMode.FULL_AUTO)
        )
        target = temp_db.get_target("site")

        assert target.path == "/srv/site"
        assert target.healing_mode == HealingMode.FULL_AUTO
        assert target.current_healing_attempts == 1
        assert target.health_status == HealthStatus.DOWN
        assert target.health_score == 20

    def test_attempt_counter(self, temp_db):
        temp_db.upsert_target(Target(id="site", path="/x"))

        assert temp_db.increment_healing_attempts("site") == 1
        assert temp_db.increment_healing_attempts("site") == 2
        temp_db.reset_healing_attempts("site")

        target = temp_db.get_target("site")
        assert target.current_healing_attempts == 0
        assert target.last_healing_attempt_at is not None

    def test_health_without_score(self, temp_db):
        temp_db.upsert_target(Target(id="site", path="/x"))
        temp_db.update_target_health("site", HealthStatus.DEGRADED, 55)
        temp_db.update_target_health("site", HealthStatus.HEALING)

        target = temp_db.get_target("site")
        assert target.health_status == HealthStatus.HEALING
        assert target.health_score == 55

    def test_mark_health_checked(self, temp_db):
        temp_db.upsert_target(Target(id="site", path="/x"))
        at = datetime(2026, 3, 1, 12, 0, 0)
        temp_db.mark_health_checked("site", at)

        assert temp_db.get_target("site").last_health_check == at

    def test_blacklists_round_trip(self, temp_db):
        temp_db.upsert_target(
            Target(
                id="site",
                path="/x",
                blacklisted_plugins=["woocommerce-*"],
                blacklisted_themes=["storefront"],
            )
        )
        target = temp_db.get_target("site")

        assert target.blacklisted_plugins == ["woocommerce-*"]
        assert target.blacklisted_themes == ["storefront"]
        assert target.is_blacklisted("plugin", "woocommerce-payments")
        assert not target.is_blacklisted("theme", "woocommerce-payments")

    def test_missing_target(self, temp_db):
        assert temp_db.get_target("nope") is None
        assert temp_db.list_targets() == []


class TestHealingExecutions:
    """Tests for healing execution rows."""

    def test_round_trip(self, temp_db):
        execution = HealingExecution(target_id="site", triggered_by="cli")
        execution.log("started")
        execution.id = temp_db.create_healing_execution(execution)

        execution.status = HealingStatus.AWAITING_APPROVAL
        execution.diagnosis = Diagnosis(diagnosis_type=DiagnosisType.WSOD, culprit="akismet")
        execution.commands = ["wp plugin deactivate akismet"]
        execution.needs_approval = 1
        execution.reason = "ManualMode"
        temp_db.update_healing_execution(execution)

        stored = temp_db.get_healing_execution(execution.id)
        assert stored.status == HealingStatus.AWAITING_APPROVAL
        assert stored.diagnosis.culprit == "akismet"
        assert stored.commands == ["wp plugin deactivate akismet"]
        assert stored.needs_approval == 1
        assert stored.execution_logs[0].message == "started"

    def test_compare_and_swap(self, temp_db):
        execution = HealingExecution(target_id="site", status=HealingStatus.AWAITING_APPROVAL)
        execution.id = temp_db.create_healing_execution(execution)

        execution.status = HealingStatus.HEALING
        assert temp_db.update_healing_execution(execution, expected=HealingStatus.AWAITING_APPROVAL)

        execution.status = HealingStatus.REJECTED
        assert not temp_db.update_healing_execution(execution, expected=HealingStatus.AWAITING_APPROVAL)
        assert temp_db.get_healing_execution(execution.id).status == HealingStatus.HEALING

    def test_one_active_execution_per_target(self, temp_db):
        first = temp_db.create_healing_execution(
            HealingExecution(target_id="site", status=HealingStatus.HEALING, owner_pid=4242)
        )

        assert temp_db.create_healing_execution(HealingExecution(target_id="site")) is None
        assert temp_db.create_healing_execution(HealingExecution(target_id="other")) is not None
        assert temp_db.get_healing_execution(first).owner_pid == 4242

        # A finished execution frees the target
        execution = temp_db.get_healing_execution(first)
        execution.status = HealingStatus.SUCCESS
        temp_db.update_healing_execution(execution)
        assert temp_db.create_healing_execution(HealingExecution(target_id="site")) is not None

    def test_active_executions(self, temp_db):
        for target_id, status in (
            ("a", HealingStatus.HEALING),
            ("b", HealingStatus.SUCCESS),
            ("c", HealingStatus.AWAITING_APPROVAL),
        ):
            temp_db.create_healing_execution(HealingExecution(target_id=target_id, status=status))

        active = temp_db.get_active_healing_executions()
        assert [e.status for e in active] == [HealingStatus.HEALING, HealingStatus.AWAITING_APPROVAL]
        assert [e.target_id for e in temp_db.get_active_healing_executions("c")] == ["c"]

    def test_list_newest_first(self, temp_db):
        first = temp_db.create_healing_execution(HealingExecution(target_id="a"))
        second = temp_db.create_healing_execution(HealingExecution(target_id="b"))

        assert [e.id for e in temp_db.list_healing_executions()] == [second, first]
        assert [e.id for e in temp_db.list_healing_executions("a")] == [first]


def _fetch(path, sql):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


class TestSchema:
    """Tests for migration and corruption handling."""

    def test_schema_version(self, temp_db):
        assert _fetch(temp_db.db_path, "SELECT version FROM schema_version") == [(SCHEMA_VERSION,)]

    def test_migrates_version_one(self, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.executescript(
            """
            CREATE TABLE schema_version (version INTEGER PRIMARY KEY);
            INSERT INTO schema_version (version) VALUES (1);
            CREATE TABLE healing_patterns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                signature TEXT NOT NULL UNIQUE,
                diagnosis_type TEXT NOT NULL,
                error_type TEXT,
                culprit TEXT,
                error_pattern TEXT,
                commands TEXT,
                success_count INTEGER NOT NULL DEFAULT 0,
                failure_count INTEGER NOT NULL DEFAULT 0,
                confidence REAL NOT NULL DEFAULT 0,
                auto_approved INTEGER NOT NULL DEFAULT 0,
                last_used_at TEXT,
                last_success_at TEXT,
                last_failure_at TEXT,
                created_at TEXT NOT NULL
            );
            """
        )
        conn.commit()
        conn.close()

        Database(path)

        columns = [row[1] for row in _fetch(path, "PRAGMA table_info(healing_patterns)")]
        assert "approval_locked" in columns
        assert _fetch(path, "SELECT version FROM schema_version") == [(SCHEMA_VERSION,)]

    def test_migration_fails_duplicate_active_rows(self, tmp_path):
        path = tmp_path / "v2.db"
        Database(path)
        conn = sqlite3.connect(path)
        conn.executescript(
            """
            DROP INDEX idx_healing_one_active;
            UPDATE schema_version SET version = 2;
            INSERT INTO healing_executions (target_id, status, healing_mode, started_at)
            VALUES ('site', 'healing', 'manual', '2026-03-01T10:00:00'),
                   ('site', 'awaiting_approval', 'manual', '2026-03-01T10:01:00');
            """
        )
        conn.commit()
        conn.close()

        db = Database(path)

        statuses = [e.status for e in reversed(db.list_healing_executions("site"))]
        assert statuses == [HealingStatus.HEALING, HealingStatus.FAILED]
        assert db.create_healing_execution(HealingExecution(target_id="site")) is None

    def test_corrupt_database_is_replaced(self, tmp_path):
        path = tmp_path / "broken.db"
        path.write_bytes(b"this is not a sqlite database" * 100)

        db = Database(path)

        assert db.list_targets() == []
        assert (tmp_path / "broken.db.corrupt").exists()
