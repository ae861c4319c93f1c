"""Healing executor - the diagnose / approve / heal / verify / rollback state machine.

States:
    PENDING -> DIAGNOSING -> HEALTHY
                          -> AWAITING_APPROVAL -> HEALING | REJECTED | FAILED
                          -> HEALING -> SUCCESS
                                     -> FAILED -> ROLLED_BACK

No execution enters HEALING without a backup id or a non-mutating
remediation. Remediation steps run one at a time in the proposed order.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime
from typing import TYPE_CHECKING

import psutil
from loguru import logger

from apphealer.core.checks import CheckRunner
from apphealer.core.classifier import DiagnosisClassifier, health_status_for
from apphealer.core.errors import (
    BackupFailed,
    CommandRejected,
    CooldownActive,
    ExecutionNotFound,
    HealerDisabled,
    HealingInProgress,
    InvalidTransition,
    RemediationStepFailed,
    StaleExecution,
    TargetNotFound,
)
from apphealer.core.executor import CommandOutcome, RemoteExecutor, run_validated
from apphealer.core.locks import TargetArena
from apphealer.core.log_analysis import ErrorSignal
from apphealer.core.patterns import PatternStore
from apphealer.core.validator import validate_command
from apphealer.models import (
    Diagnosis,
    DiagnosisType,
    DiagnosticExecution,
    ExecutionLogLevel,
    HealingConfig,
    HealingExecution,
    HealingMode,
    HealingStatus,
    HealthStatus,
    Target,
    can_auto_heal,
)

if TYPE_CHECKING:
    from apphealer.db import Database


ALLOWED_TRANSITIONS: dict[HealingStatus, set[HealingStatus]] = {
    HealingStatus.PENDING: {HealingStatus.DIAGNOSING, HealingStatus.FAILED},
    HealingStatus.DIAGNOSING: {
        HealingStatus.HEALTHY,
        HealingStatus.AWAITING_APPROVAL,
        HealingStatus.HEALING,
        HealingStatus.FAILED,
    },
    HealingStatus.AWAITING_APPROVAL: {
        HealingStatus.HEALING,
        HealingStatus.FAILED,
        HealingStatus.REJECTED,
    },
    HealingStatus.HEALING: {HealingStatus.SUCCESS, HealingStatus.FAILED},
    HealingStatus.FAILED: {HealingStatus.ROLLED_BACK},
}

FINISHED_STATUSES = {
    HealingStatus.HEALTHY,
    HealingStatus.SUCCESS,
    HealingStatus.FAILED,
    HealingStatus.ROLLED_BACK,
    HealingStatus.REJECTED,
}


def owner_alive(pid: int | None) -> bool:
    """True if the process that owns an execution is still running."""
    if pid is None:
        return False
    if pid == os.getpid():
        return True
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class HealingExecutor:
    """Drives healing executions for all targets."""

    def __init__(
        self,
        db: Database,
        executor: RemoteExecutor,
        runner: CheckRunner,
        classifier: DiagnosisClassifier,
        patterns: PatternStore,
        config: HealingConfig | None = None,
        arena: TargetArena | None = None,
    ):
        self.db = db
        self.executor = executor
        self.runner = runner
        self.classifier = classifier
        self.patterns = patterns
        self.config = config or HealingConfig()
        self.arena = arena or TargetArena()
        self._in_flight: set[int] = set()
        self._in_flight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def request_heal(
        self,
        target_id: str,
        triggered_by: str = "manual",
        raw_signals: list[ErrorSignal] | None = None,
    ) -> HealingExecution:
        """Diagnose a target and heal it if policy allows.

        Raises:
            TargetNotFound: Unknown target
            HealerDisabled: Healing is switched off for the target
            HealingInProgress: The target already has an active execution
        """
        target = self._get_target(target_id)
        if not target.is_healer_enabled:
            raise HealerDisabled(target_id)

        if not self._claim(target_id):
            raise HealingInProgress(target_id, self.arena.holder(target_id))

        execution: HealingExecution | None = None
        try:
            execution = HealingExecution(
                target_id=target_id,
                healing_mode=target.healing_mode,
                triggered_by=triggered_by,
                owner_pid=os.getpid(),
            )
            execution.log(f"Healing requested by {triggered_by} (mode: {target.healing_mode.value})")
            execution_id = self.db.create_healing_execution(execution)
            if execution_id is None:
                # Active in another process
                active = self.db.get_active_healing_executions(target_id)
                raise HealingInProgress(target_id, active[0].id if active else None)
            execution.id = execution_id
            self.arena.assign(target_id, execution.id)
            logger.info(f"[{target_id}] Healing execution {execution.id} started")

            await self._diagnose_and_decide(target, execution, raw_signals)
            return execution
        except StaleExecution:
            self.arena.release(target_id, execution.id if execution else None)
            raise
        except Exception as e:
            if execution is not None and execution.id is not None and execution.is_active:
                logger.exception(f"[{target_id}] Healing execution {execution.id} crashed")
                execution.log(f"Unexpected error: {e}", ExecutionLogLevel.ERROR, error=str(e))
                self._finish(execution, HealingStatus.FAILED, reason="InternalError")
            raise
        finally:
            if execution is None or execution.id is None or not execution.is_active:
                self.arena.release(target_id, execution.id if execution else None)

    async def approve(
        self,
        execution_id: int,
        commands: list[str] | None = None,
        approved_by: str = "operator",
    ) -> HealingExecution:
        """Run the remediation of an execution waiting for approval.

        An operator may replace the suggested commands. Approval skips the
        cooldown gate but never the validator or the backup.
        """
        execution = self._get_execution(execution_id)
        if execution.status != HealingStatus.AWAITING_APPROVAL:
            raise InvalidTransition(execution_id, execution.status.value, HealingStatus.HEALING.value)

        remediation = list(commands or [])
        if not remediation and execution.diagnosis:
            remediation = list(execution.diagnosis.suggested_commands)
        if not remediation:
            raise ValueError(f"Execution {execution_id} has no remediation commands to run")

        target = self._get_target(execution.target_id)
        with self._in_flight_lock:
            if execution_id in self._in_flight:
                raise HealingInProgress(execution.target_id, execution_id)
            self._in_flight.add(execution_id)

        holder = self.arena.holder(target.id)
        if holder != execution_id and not self._claim(target.id, execution_id):
            with self._in_flight_lock:
                self._in_flight.discard(execution_id)
            raise HealingInProgress(target.id, holder)

        try:
            execution.approved_by = approved_by
            execution.owner_pid = os.getpid()
            execution.reason = None
            execution.log(f"Approved by {approved_by}")
            if commands:
                execution.log(f"Operator supplied {len(commands)} replacement commands")
            await self._heal(target, execution, remediation)
            return execution
        except StaleExecution:
            self.arena.release(target.id, execution_id)
            raise
        except Exception as e:
            if execution.is_active:
                logger.exception(f"[{target.id}] Healing execution {execution_id} crashed")
                execution.log(f"Unexpected error: {e}", ExecutionLogLevel.ERROR, error=str(e))
                self._finish(execution, HealingStatus.FAILED, reason="InternalError")
            raise
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(execution_id)
            if not execution.is_active:
                self.arena.release(target.id, execution_id)

    def reject(
        self,
        execution_id: int,
        reason: str = "Rejected by operator",
        rejected_by: str = "operator",
    ) -> HealingExecution:
        """Close an execution that was waiting for approval."""
        execution = self._get_execution(execution_id)
        if execution.status != HealingStatus.AWAITING_APPROVAL:
            raise InvalidTransition(execution_id, execution.status.value, HealingStatus.REJECTED.value)

        execution.log(f"{reason} ({rejected_by})", ExecutionLogLevel.WARNING)
        self._finish(execution, HealingStatus.REJECTED, reason="Rejected")
        self.arena.release(execution.target_id, execution_id)
        logger.info(f"[{execution.target_id}] Execution {execution_id} rejected by {rejected_by}")
        return execution

    async def rollback(self, execution_id: int) -> HealingExecution:
        """Restore the pre-heal backup of a failed execution."""
        execution = self._get_execution(execution_id)
        if execution.status != HealingStatus.FAILED:
            raise InvalidTransition(execution_id, execution.status.value, HealingStatus.ROLLED_BACK.value)
        if not execution.backup_id:
            raise InvalidTransition(execution_id, "failed without backup", HealingStatus.ROLLED_BACK.value)

        target = self._get_target(execution.target_id)
        await self._restore(target, execution)
        return execution

    def recover(self) -> int:
        """Reconcile executions left active by a previous process.

        Executions waiting for approval, and executions whose owner process
        is still running, keep their row. Executions that were mid-flight in
        a process that is gone are marked FAILED.

        Returns:
            Number of executions marked as interrupted
        """
        interrupted = 0
        for execution in self.db.get_active_healing_executions():
            if execution.status == HealingStatus.AWAITING_APPROVAL:
                self.arena.try_claim(execution.target_id, execution.id)
                continue
            if owner_alive(execution.owner_pid):
                logger.debug(
                    f"[{execution.target_id}] Execution {execution.id} still running "
                    f"in process {execution.owner_pid}"
                )
                continue

            execution.log(
                f"Interrupted while {execution.status.value}; healer restarted",
                ExecutionLogLevel.ERROR,
            )
            try:
                self._finish(execution, HealingStatus.FAILED, reason="Interrupted")
            except StaleExecution:
                continue
            interrupted += 1

        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted healing executions as failed")
        return interrupted

    def refresh_health(
        self,
        target: Target,
        diagnostic: DiagnosticExecution,
        diagnosis: Diagnosis | None = None,
    ) -> HealthStatus:
        """Store a target's health status and score from a diagnostic pass."""
        status = health_status_for(
            diagnostic.health_score, diagnosis.diagnosis_type if diagnosis else None
        )
        self.db.update_target_health(target.id, status, diagnostic.health_score)
        target.health_status = status
        target.health_score = diagnostic.health_score
        return status

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _diagnose_and_decide(
        self,
        target: Target,
        execution: HealingExecution,
        raw_signals: list[ErrorSignal] | None,
    ) -> None:
        self._transition(execution, HealingStatus.DIAGNOSING)

        diagnostic = await self.runner.run_checks(target, triggered_by="healing")
        diagnosis = self.classifier.classify(diagnostic, raw_signals, target=target)
        execution.diagnosis = diagnosis
        execution.diagnostic_execution_id = diagnostic.id
        execution.pre_health_score = diagnostic.health_score
        self.refresh_health(target, diagnostic, diagnosis)

        execution.log(
            f"Diagnosis: {diagnosis.diagnosis_type.value} "
            f"(confidence {diagnosis.confidence:.0%}, score {diagnostic.health_score})"
            + (f", culprit {diagnosis.culprit}" if diagnosis.culprit else "")
        )

        if diagnosis.diagnosis_type == DiagnosisType.HEALTHY:
            self._finish(execution, HealingStatus.HEALTHY)
            logger.info(f"[{target.id}] Healthy, nothing to heal")
            return

        if not diagnosis.suggested_commands:
            execution.cannot_heal = 1
            execution.reason = "Blacklisted" if diagnosis.protected else "NoRemediation"
            execution.log(
                f"No automatic remediation available: {diagnosis.suggested_action}",
                ExecutionLogLevel.WARNING,
            )
            self._transition(execution, HealingStatus.AWAITING_APPROVAL)
            return

        self._reset_cooldown_if_elapsed(target)
        blocked = self._auto_heal_blocker(target, diagnosis)
        if blocked is not None:
            reason, message = blocked
            execution.needs_approval = 1
            execution.reason = reason
            execution.log(f"Awaiting approval: {message}", ExecutionLogLevel.WARNING)
            self._transition(execution, HealingStatus.AWAITING_APPROVAL)
            logger.info(f"[{target.id}] Execution {execution.id} awaiting approval: {message}")
            return

        execution.auto_healed = 1
        execution.log("Auto-healing permitted by mode, risk and pattern history")
        await self._heal(target, execution, diagnosis.suggested_commands)

    def _auto_heal_blocker(self, target: Target, diagnosis: Diagnosis) -> tuple[str, str] | None:
        """Why the executor may not heal on its own, or None if it may."""
        if target.is_attempt_limited():
            cooldown = CooldownActive(
                target.id, target.current_healing_attempts, target.cooldown_remaining()
            )
            logger.warning(str(cooldown))
            return cooldown.reason, str(cooldown)

        if target.healing_mode == HealingMode.MANUAL:
            return "ManualMode", "healing mode is manual"

        if not can_auto_heal(target.healing_mode, diagnosis.risk_level):
            return (
                "RiskTooHigh",
                f"{diagnosis.risk_level.value} risk exceeds what "
                f"{target.healing_mode.value} heals automatically",
            )

        if self.config.require_approved_pattern:
            pattern = self.patterns.lookup(diagnosis.signature)
            if pattern is None or not pattern.auto_approved:
                return "PatternNotApproved", self.patterns.reasoning(pattern)

        return None

    def _reset_cooldown_if_elapsed(self, target: Target) -> None:
        if target.current_healing_attempts > 0 and target.cooldown_remaining() == 0:
            self.db.reset_healing_attempts(target.id)
            target.current_healing_attempts = 0
            logger.debug(f"[{target.id}] Healing cooldown elapsed, attempts reset")

    async def _heal(self, target: Target, execution: HealingExecution, commands: list[str]) -> None:
        """Validate, back up, run the remediation, verify and learn."""
        diagnosis = execution.diagnosis
        execution.commands = list(commands)

        for command in commands:
            result = validate_command(command)
            if not result.valid:
                rejected = CommandRejected(command, result.reason or "invalid command")
                execution.log(
                    f"Command rejected: {result.reason}",
                    ExecutionLogLevel.ERROR,
                    command=command,
                    error=result.reason,
                )
                logger.warning(f"[{target.id}] {rejected}")
                self._finish(execution, HealingStatus.FAILED, reason=rejected.reason)
                return

        mutating = diagnosis.mutating if diagnosis else True
        if mutating:
            try:
                execution.backup_id = await self.executor.take_backup(target)
            except Exception as e:
                failure = e if isinstance(e, BackupFailed) else BackupFailed(target.id, str(e))
                execution.log(f"Backup failed: {failure.detail}", ExecutionLogLevel.ERROR, error=failure.detail)
                logger.error(f"[{target.id}] {failure}")
                self._finish(execution, HealingStatus.FAILED, reason=failure.reason)
                return
            execution.log(f"Backup {execution.backup_id} taken", ExecutionLogLevel.SUCCESS)
        else:
            execution.non_mutating = True
            execution.log("Remediation is non-mutating, no backup needed")

        self._transition(execution, HealingStatus.HEALING)
        attempts = self.db.increment_healing_attempts(target.id)
        target.current_healing_attempts = attempts
        self.db.update_target_health(target.id, HealthStatus.HEALING)
        logger.info(
            f"[{target.id}] Healing execution {execution.id}: "
            f"{len(commands)} steps (attempt {attempts}/{target.max_healing_attempts})"
        )

        failure = await self._run_steps(target, execution, commands)
        reason = failure.reason if failure else None

        if failure is None and self.config.verify_after_heal:
            if not await self._verify(target, execution):
                reason = "VerificationFailed"
        elif failure is not None and execution.pre_health_score is not None:
            self.db.update_target_health(
                target.id,
                health_status_for(
                    execution.pre_health_score,
                    diagnosis.diagnosis_type if diagnosis else None,
                ),
            )

        if reason is None:
            self.db.reset_healing_attempts(target.id)
            target.current_healing_attempts = 0
            execution.log("Healing succeeded", ExecutionLogLevel.SUCCESS)
            self._finish(execution, HealingStatus.SUCCESS)
            logger.info(f"[{target.id}] Healing execution {execution.id} succeeded")
            self._learn(execution, success=True)
            return

        self._finish(execution, HealingStatus.FAILED, reason=reason)
        logger.warning(f"[{target.id}] Healing execution {execution.id} failed: {reason}")
        self._learn(execution, success=False)

        if execution.backup_id and self.config.auto_rollback:
            await self._restore(target, execution)
        elif execution.backup_id:
            execution.log(
                f"Automatic rollback disabled; backup {execution.backup_id} kept for manual rollback",
                ExecutionLogLevel.WARNING,
            )
            self._save(execution)

    async def _run_steps(
        self,
        target: Target,
        execution: HealingExecution,
        commands: list[str],
    ) -> RemediationStepFailed | None:
        """Run remediation commands in order, stopping at the first failure."""
        for step, command in enumerate(commands, start=1):
            try:
                outcome = await run_validated(
                    self.executor, target, command, self.config.command_timeout
                )
            except CommandRejected as e:
                outcome = CommandOutcome(command=command, exit_code=-1, stderr=e.detail)
            except Exception as e:
                logger.exception(f"[{target.id}] Step {step} raised")
                outcome = CommandOutcome(command=command, exit_code=-1, stderr=str(e))

            if outcome.ok:
                execution.log(
                    f"Step {step} succeeded",
                    ExecutionLogLevel.SUCCESS,
                    step=step,
                    command=command,
                    exit_code=outcome.exit_code,
                    output=outcome.stdout[:1000] or None,
                    duration_ms=outcome.latency_ms,
                )
                self._save(execution)
                continue

            failure = RemediationStepFailed(step, command, outcome.exit_code, outcome.stderr)
            execution.log(
                f"Step {step} failed" + (" (timed out)" if outcome.timed_out else ""),
                ExecutionLogLevel.ERROR,
                step=step,
                command=command,
                exit_code=outcome.exit_code,
                output=outcome.stdout[:1000] or None,
                error=outcome.stderr[:1000] or f"exit code {outcome.exit_code}",
                duration_ms=outcome.latency_ms,
            )
            for skipped, rest in enumerate(commands[step:], start=step + 1):
                execution.log(
                    f"Step {skipped} not attempted",
                    ExecutionLogLevel.SKIPPED,
                    step=skipped,
                    command=rest,
                )
            logger.warning(f"[{target.id}] {failure}")
            self._save(execution)
            return failure

        return None

    async def _verify(self, target: Target, execution: HealingExecution) -> bool:
        """Re-run the checks and require a better health score."""
        verification = await self.runner.run_checks(target, triggered_by="verification")
        post = self.classifier.classify(verification, target=target)
        self.refresh_health(target, verification, post)

        execution.verification_execution_id = verification.id
        execution.post_health_score = verification.health_score
        before = execution.pre_health_score if execution.pre_health_score is not None else 0
        improved = (
            verification.health_score > before
            or post.diagnosis_type == DiagnosisType.HEALTHY
        )

        message = (
            f"Verification: score {before} -> {verification.health_score}, "
            f"diagnosis {post.diagnosis_type.value}"
        )
        execution.log(
            message,
            ExecutionLogLevel.SUCCESS if improved else ExecutionLogLevel.ERROR,
        )
        return improved

    async def _restore(self, target: Target, execution: HealingExecution) -> bool:
        backup_id = execution.backup_id
        execution.log(f"Restoring backup {backup_id}")
        try:
            restored = await self.executor.restore_backup(target, backup_id)
        except Exception as e:
            logger.exception(f"[{target.id}] Restore of backup {backup_id} raised")
            execution.log(f"Restore failed: {e}", ExecutionLogLevel.ERROR, error=str(e))
            restored = False
        else:
            if not restored:
                execution.log(f"Restore of backup {backup_id} failed", ExecutionLogLevel.ERROR)

        if not restored:
            self._save(execution)
            logger.error(f"[{target.id}] Rollback of execution {execution.id} failed")
            return False

        execution.log(f"Backup {backup_id} restored", ExecutionLogLevel.SUCCESS)
        self._finish(execution, HealingStatus.ROLLED_BACK, reason=execution.reason)
        logger.info(f"[{target.id}] Execution {execution.id} rolled back")
        return True

    def _learn(self, execution: HealingExecution, success: bool) -> None:
        diagnosis = execution.diagnosis
        if diagnosis is None or diagnosis.diagnosis_type == DiagnosisType.UNKNOWN:
            return
        pattern = self.patterns.record_outcome(diagnosis, execution.commands, success)
        execution.log(f"Pattern {pattern.signature}: {self.patterns.reasoning(pattern)}")
        self._save(execution)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, execution: HealingExecution, new: HealingStatus) -> None:
        allowed = ALLOWED_TRANSITIONS.get(execution.status, set())
        if new not in allowed:
            raise InvalidTransition(execution.id, execution.status.value, new.value)
        if new == HealingStatus.HEALING and not (execution.backup_id or execution.non_mutating):
            raise InvalidTransition(execution.id, "no backup", new.value)

        current = execution.status
        execution.status = new
        if new in FINISHED_STATUSES:
            execution.finished_at = datetime.now()
        self._save(execution, expected=current)
        logger.debug(f"Execution {execution.id}: {current.value} -> {new.value}")

    def _finish(
        self,
        execution: HealingExecution,
        status: HealingStatus,
        reason: str | None = None,
    ) -> None:
        if reason is not None:
            execution.reason = reason
        self._transition(execution, status)

    def _save(self, execution: HealingExecution, expected: HealingStatus | None = None) -> None:
        """Write the execution back unless another process moved it meanwhile."""
        expected = expected or execution.status
        if self.db.update_healing_execution(execution, expected=expected):
            return
        stored = self.db.get_healing_execution(execution.id)
        stale = StaleExecution(execution.id, expected.value, stored.status.value if stored else None)
        if stored is not None:
            execution.status = stored.status
        logger.error(str(stale))
        raise stale

    def _claim(self, target_id: str, execution_id: int | None = None) -> bool:
        """Claim a target, dropping a claim left by an execution that has finished."""
        if self.arena.try_claim(target_id, execution_id):
            return True
        holder = self.arena.holder(target_id)
        if holder is None:
            return False
        with self._in_flight_lock:
            if holder in self._in_flight:
                return False
        stored = self.db.get_healing_execution(holder)
        if stored is not None and stored.is_active:
            return False
        logger.debug(f"[{target_id}] Dropping claim of finished execution {holder}")
        self.arena.release(target_id, holder)
        return self.arena.try_claim(target_id, execution_id)

    def _get_target(self, target_id: str) -> Target:
        target = self.db.get_target(target_id)
        if target is None:
            raise TargetNotFound(target_id)
        return target

    def _get_execution(self, execution_id: int) -> HealingExecution:
        execution = self.db.get_healing_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution
