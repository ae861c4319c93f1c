"""Exceptions raised by the healing engine.

Every error carries a machine-readable ``reason`` (the class name unless
overridden) which is stored on terminal healing executions.
"""

from __future__ import annotations


class HealerError(Exception):
    """Base class for healing engine errors."""

    @property
    def reason(self) -> str:
        return type(self).__name__


class CommandRejected(HealerError):
    """The command validator refused a command. It was never executed."""

    def __init__(self, command: str, detail: str):
        self.command = command
        self.detail = detail
        super().__init__(f"Command rejected ({detail}): {command!r}")


class CheckError(HealerError):
    """Transport failure or timeout while running a diagnostic check."""

    def __init__(self, check: str, detail: str):
        self.check = check
        self.detail = detail
        super().__init__(f"Check '{check}' errored: {detail}")


class BackupFailed(HealerError):
    """A pre-heal backup could not be taken."""

    def __init__(self, target_id: str, detail: str):
        self.target_id = target_id
        self.detail = detail
        super().__init__(f"Backup failed for target '{target_id}': {detail}")


class RemediationStepFailed(HealerError):
    """A remediation command exited non-zero or timed out."""

    def __init__(self, step: int, command: str, exit_code: int, stderr: str = ""):
        self.step = step
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Step {step} failed (exit={exit_code}): {command}")


class HealingInProgress(HealerError):
    """The target already has an active healing execution."""

    def __init__(self, target_id: str, execution_id: int | None = None):
        self.target_id = target_id
        self.execution_id = execution_id
        super().__init__(
            f"Healing already in progress for target '{target_id}'"
            + (f" (execution {execution_id})" if execution_id is not None else "")
        )


class CooldownActive(HealerError):
    """The attempt budget is spent and the cooldown window is still running."""

    def __init__(self, target_id: str, attempts: int, remaining_seconds: float):
        self.target_id = target_id
        self.attempts = attempts
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Target '{target_id}' reached {attempts} healing attempts, "
            f"cooldown has {int(remaining_seconds)}s remaining"
        )


class TargetNotFound(HealerError):
    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"Target not found: {target_id}")


class ExecutionNotFound(HealerError):
    def __init__(self, execution_id: int):
        self.execution_id = execution_id
        super().__init__(f"Healing execution not found: {execution_id}")


class InvalidTransition(HealerError):
    """A requested state change is not allowed from the current state."""

    def __init__(self, execution_id: int | None, current: str, requested: str):
        self.execution_id = execution_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Execution {execution_id} cannot move from {current} to {requested}"
        )


class StaleExecution(HealerError):
    """The stored execution changed state under this process."""

    def __init__(self, execution_id: int | None, expected: str, stored: str | None):
        self.execution_id = execution_id
        self.expected = expected
        self.stored = stored
        super().__init__(
            f"Execution {execution_id} is no longer {expected} (stored: {stored or 'missing'})"
        )


class HealerDisabled(HealerError):
    """Healing is switched off for the target."""

    def __init__(self, target_id: str):
        self.target_id = target_id
        super().__init__(f"Healer is disabled for target '{target_id}'")
