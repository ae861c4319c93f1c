"""Healer - wires the engine together and exposes its operations."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from apphealer.core.checks import CheckRunner
from apphealer.core.classifier import DiagnosisClassifier
from apphealer.core.errors import TargetNotFound
from apphealer.core.executor import LocalExecutor, RemoteExecutor
from apphealer.core.healing import HealingExecutor
from apphealer.core.log_analysis import ErrorSignal
from apphealer.core.patterns import PatternStore
from apphealer.db import Database
from apphealer.models import (
    CheckProfile,
    Diagnosis,
    DiagnosticExecution,
    HealerConfig,
    HealingExecution,
    HealingPattern,
    Target,
)


class Healer:
    """Entry point used by the CLI and any other front end."""

    def __init__(
        self,
        config: HealerConfig | None = None,
        db: Database | None = None,
        executor: RemoteExecutor | None = None,
        runner: CheckRunner | None = None,
        recover: bool = True,
    ):
        """Build the engine.

        With `recover`, executions left active by a process that is gone are
        reconciled on startup; read-only front ends pass False.
        """
        self.config = config or HealerConfig()
        self.db = db or Database(Path(self.config.database) if self.config.database else None)
        self.executor = executor or LocalExecutor(
            backup_dir=Path(self.config.executor.backup_dir).expanduser(),
            max_backups=self.config.executor.max_backups,
            max_output=self.config.executor.max_output,
        )
        self.runner = runner or CheckRunner(
            executor=self.executor, db=self.db, config=self.config.checks
        )
        self.patterns = PatternStore(self.db, self.config.patterns)
        self.classifier = DiagnosisClassifier(
            pattern_store=self.patterns,
            confidence_boost=self.config.patterns.confidence_boost,
        )
        self.healing = HealingExecutor(
            db=self.db,
            executor=self.executor,
            runner=self.runner,
            classifier=self.classifier,
            patterns=self.patterns,
            config=self.config.healing,
        )
        if recover:
            self.healing.recover()

    # Targets

    def sync_targets(self, targets: dict[str, Target]) -> int:
        """Register or update targets from configuration."""
        for target in targets.values():
            self.db.upsert_target(target)
        logger.info(f"Synced {len(targets)} targets")
        return len(targets)

    def list_targets(self) -> list[Target]:
        return self.db.list_targets()

    def get_target(self, target_id: str) -> Target:
        target = self.db.get_target(target_id)
        if target is None:
            raise TargetNotFound(target_id)
        return target

    # Diagnosis

    async def run_diagnosis(
        self,
        target_id: str,
        profile: CheckProfile | None = None,
        custom_checks: list[str] | None = None,
        triggered_by: str = "manual",
    ) -> DiagnosticExecution:
        """Run the checks for a target without healing it."""
        execution, _ = await self.diagnose(target_id, profile, custom_checks, triggered_by)
        return execution

    async def diagnose(
        self,
        target_id: str,
        profile: CheckProfile | None = None,
        custom_checks: list[str] | None = None,
        triggered_by: str = "manual",
        raw_signals: list[ErrorSignal] | None = None,
    ) -> tuple[DiagnosticExecution, Diagnosis]:
        """Run the checks and classify the result."""
        target = self.get_target(target_id)
        execution = await self.runner.run_checks(
            target, profile=profile, custom=custom_checks, triggered_by=triggered_by
        )
        diagnosis = self.classifier.classify(execution, raw_signals, target=target)
        self.healing.refresh_health(target, execution, diagnosis)
        return execution, diagnosis

    def get_diagnostic(self, diagnostic_id: int) -> DiagnosticExecution | None:
        return self.db.get_diagnostic_execution(diagnostic_id)

    def list_diagnostics(self, target_id: str | None = None, limit: int = 20) -> list[DiagnosticExecution]:
        """Recent check runner passes, newest first."""
        return self.db.list_diagnostic_executions(target_id, limit)

    # Healing

    async def request_heal(
        self,
        target_id: str,
        triggered_by: str = "manual",
        raw_signals: list[ErrorSignal] | None = None,
    ) -> HealingExecution:
        return await self.healing.request_heal(target_id, triggered_by, raw_signals)

    async def approve(
        self,
        execution_id: int,
        commands: list[str] | None = None,
        approved_by: str = "operator",
    ) -> HealingExecution:
        return await self.healing.approve(execution_id, commands, approved_by)

    def reject(self, execution_id: int, reason: str = "Rejected by operator") -> HealingExecution:
        return self.healing.reject(execution_id, reason)

    async def rollback(self, execution_id: int) -> HealingExecution:
        return await self.healing.rollback(execution_id)

    def get_execution(self, execution_id: int) -> HealingExecution | None:
        return self.db.get_healing_execution(execution_id)

    def list_executions(self, target_id: str | None = None, limit: int = 50) -> list[HealingExecution]:
        return self.db.list_healing_executions(target_id, limit)

    # Patterns

    def list_patterns(self) -> list[HealingPattern]:
        return self.patterns.list_patterns()

    def set_pattern_approval(self, pattern_id: int, approved: bool) -> HealingPattern | None:
        return self.patterns.set_pattern_approval(pattern_id, approved)

    def delete_pattern(self, pattern_id: int) -> bool:
        return self.patterns.delete_pattern(pattern_id)
