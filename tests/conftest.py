"""Shared fixtures for AppHealer tests."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path

import pytest

from apphealer.core.checks import CheckRunner
from apphealer.core.classifier import DiagnosisClassifier
from apphealer.core.executor import CommandOutcome, RemoteExecutor
from apphealer.core.healing import HealingExecutor
from apphealer.core.patterns import PatternStore
from apphealer.db import Database
from apphealer.models import ChecksConfig, HealingConfig, HealingMode, PatternsConfig, Target

DF_OUTPUT = (
    "Filesystem     1024-blocks     Used Available Capacity Mounted on\n"
    "/dev/sda1        102400000 40960000  61440000      {usage}% /\n"
)

PLUGIN_FATAL = (
    "[12-Mar-2026 10:00:00 UTC] PHP Fatal error:  Uncaught Error: Call to undefined "
    "function foo() in /var/www/html/wp-content/plugins/akismet/akismet.php on line 42"
)


class FakeExecutor(RemoteExecutor):
    """Scripted executor: commands are answered by prefix rules.

    Each rule holds a sequence of outcomes; calls consume it and the last
    outcome repeats. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.rules: list[tuple[str, list[dict]]] = []
        self.commands: list[str] = []
        self.backups: list[str] = []
        self.restores: list[str] = []
        self.backup_error: Exception | None = None
        self.restore_ok = True
        self.delay = 0.0

    def on(self, prefix: str, *outcomes: dict) -> FakeExecutor:
        self.rules.insert(0, (prefix, list(outcomes) or [{}]))
        return self

    async def execute(self, target: Target, command: str, timeout: float) -> CommandOutcome:
        self.commands.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        for prefix, outcomes in self.rules:
            if command.startswith(prefix):
                scripted = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                if "sleep" in scripted:
                    await asyncio.sleep(scripted["sleep"])
                return CommandOutcome(
                    command=command,
                    exit_code=scripted.get("exit_code", 0),
                    stdout=scripted.get("stdout", ""),
                    stderr=scripted.get("stderr", ""),
                    timed_out=scripted.get("timed_out", False),
                )
        return CommandOutcome(command=command, exit_code=0)

    async def take_backup(self, target: Target) -> str:
        if self.backup_error is not None:
            raise self.backup_error
        backup_id = f"backup-{len(self.backups) + 1}"
        self.backups.append(backup_id)
        return backup_id

    async def restore_backup(self, target: Target, backup_id: str) -> bool:
        self.restores.append(backup_id)
        return self.restore_ok

    def remediation_commands(self) -> list[str]:
        """Commands other than the read-only ones issued by checks."""
        check_commands = ("find . -maxdepth", "test -f .maintenance", "tail -n", "df -P")
        return [c for c in self.commands if not c.startswith(check_commands)]


def healthy_host(executor: FakeExecutor, usage: int = 40) -> FakeExecutor:
    """Script every built-in check to pass."""
    executor.on("df -P .", {"stdout": DF_OUTPUT.format(usage=usage)})
    executor.on("find . -maxdepth 1 -name .maintenance", {"stdout": ""})
    executor.on("test -f .maintenance", {"stdout": "absent\n"})
    executor.on("find . -maxdepth 3 -type f -perm", {"stdout": ""})
    executor.on("tail -n", {"stdout": ""})
    return executor


@pytest.fixture
def temp_db():
    """Create a temporary database."""
    tmp_dir = Path(tempfile.mkdtemp(prefix="apphealer_test_"))
    yield Database(tmp_dir / "test.db")
    shutil.rmtree(tmp_dir, ignore_errors=True)


@pytest.fixture
def executor():
    return healthy_host(FakeExecutor())


@pytest.fixture
def make_target(temp_db):
    """Register a target in the temporary database."""

    def _make(target_id: str = "site", **kwargs) -> Target:
        fields = {
            "path": "/var/www/site",
            "healing_mode": HealingMode.FULL_AUTO,
            "log_paths": ["wp-content/debug.log"],
        }
        fields.update(kwargs)
        target = Target(id=target_id, **fields)
        temp_db.upsert_target(target)
        return temp_db.get_target(target_id)

    return _make


@pytest.fixture
def engine(temp_db, executor):
    """A healing executor wired to the fake executor."""
    runner = CheckRunner(executor=executor, db=temp_db, config=ChecksConfig(check_timeout=2))
    patterns = PatternStore(temp_db, PatternsConfig())
    classifier = DiagnosisClassifier(pattern_store=patterns)
    return HealingExecutor(
        db=temp_db,
        executor=executor,
        runner=runner,
        classifier=classifier,
        patterns=patterns,
        config=HealingConfig(command_timeout=2),
    )


def approve_pattern(engine: HealingExecutor, diagnosis, commands: list[str], successes: int = 3):
    """Give a signature enough history to be auto-approved."""
    pattern = None
    for _ in range(successes):
        pattern = engine.patterns.record_outcome(diagnosis, commands, success=True)
    return pattern
