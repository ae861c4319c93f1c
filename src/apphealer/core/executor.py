"""Remote executor adapters.

The engine only ever talks to a target through a RemoteExecutor, and only
through `run_validated`, so no command reaches a transport unvalidated.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from loguru import logger

from apphealer.core.errors import BackupFailed
from apphealer.core.validator import ensure_valid
from apphealer.models import Target

TIMEOUT_EXIT_CODE = -1


@dataclass
class CommandOutcome:
    """Result of running one command on a target."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    latency_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class RemoteExecutor(ABC):
    """Transport used to reach a target host."""

    @abstractmethod
    async def execute(self, target: Target, command: str, timeout: float) -> CommandOutcome:
        """Run an already validated command on the target."""
        pass

    @abstractmethod
    async def take_backup(self, target: Target) -> str:
        """Capture the target's state and return a backup id.

        Raises:
            BackupFailed: If the backup could not be taken
        """
        pass

    @abstractmethod
    async def restore_backup(self, target: Target, backup_id: str) -> bool:
        """Restore the target to a previously captured state."""
        pass


async def run_validated(
    executor: RemoteExecutor,
    target: Target,
    command: str,
    timeout: float,
) -> CommandOutcome:
    """Validate a command and run it on the target.

    Raises:
        CommandRejected: If the validator refuses the command
    """
    ensure_valid(command)
    logger.debug(f"[{target.id}] $ {command}")
    return await executor.execute(target, command, timeout)


class LocalExecutor(RemoteExecutor):
    """Runs commands on this host inside the target's directory.

    Backups are directory snapshots kept under
    ``<backup_dir>/<target_id>/<backup_id>``.
    """

    def __init__(self, backup_dir: Path, max_backups: int = 5, max_output: int = 4096):
        self.backup_dir = backup_dir
        self.max_backups = max_backups
        self.max_output = max_output

    async def execute(self, target: Target, command: str, timeout: float) -> CommandOutcome:
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=target.path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return CommandOutcome(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=str(e),
                latency_ms=int((time.monotonic() - start) * 1000),
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            return CommandOutcome(
                command=command,
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=f"Command timed out after {timeout}s",
                latency_ms=int((time.monotonic() - start) * 1000),
                timed_out=True,
            )

        return CommandOutcome(
            command=command,
            exit_code=proc.returncode if proc.returncode is not None else TIMEOUT_EXIT_CODE,
            stdout=stdout.decode(errors="replace")[: self.max_output],
            stderr=stderr.decode(errors="replace")[: self.max_output],
            latency_ms=int((time.monotonic() - start) * 1000),
        )

    def _target_backups(self, target: Target) -> Path:
        return self.backup_dir / target.id

    async def take_backup(self, target: Target) -> str:
        source = Path(target.path)
        if not source.is_dir():
            raise BackupFailed(target.id, f"target path does not exist: {source}")

        backup_id = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        destination = self._target_backups(target) / backup_id

        try:
            await asyncio.to_thread(shutil.copytree, source, destination, symlinks=True)
        except (OSError, shutil.Error) as e:
            shutil.rmtree(destination, ignore_errors=True)
            raise BackupFailed(target.id, str(e)) from e

        logger.info(f"[{target.id}] Backup {backup_id} written to {destination}")
        await asyncio.to_thread(self._prune, target)
        return backup_id

    async def restore_backup(self, target: Target, backup_id: str) -> bool:
        snapshot = self._target_backups(target) / backup_id
        if not snapshot.is_dir():
            logger.error(f"[{target.id}] Backup {backup_id} not found at {snapshot}")
            return False

        try:
            await asyncio.to_thread(self._replace_tree, snapshot, Path(target.path))
        except (OSError, shutil.Error) as e:
            logger.error(f"[{target.id}] Restore of backup {backup_id} failed: {e}")
            return False

        logger.info(f"[{target.id}] Restored backup {backup_id}")
        return True

    @staticmethod
    def _replace_tree(snapshot: Path, destination: Path) -> None:
        """Swap a snapshot copy in for the live tree.

        The snapshot is copied next to the destination first; the live tree
        is only moved aside once the copy is complete, and moved back if
        the swap fails.
        """
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        staging = destination.with_name(f".{destination.name}.restore-{stamp}")
        retired = destination.with_name(f".{destination.name}.replaced-{stamp}")

        try:
            shutil.copytree(snapshot, staging, symlinks=True)
        except (OSError, shutil.Error):
            shutil.rmtree(staging, ignore_errors=True)
            raise

        if destination.exists():
            os.replace(destination, retired)
        try:
            os.replace(staging, destination)
        except OSError:
            if retired.exists():
                os.replace(retired, destination)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        shutil.rmtree(retired, ignore_errors=True)

    def _prune(self, target: Target) -> None:
        """Keep only the newest `max_backups` snapshots."""
        backups = sorted(p for p in self._target_backups(target).iterdir() if p.is_dir())
        for old in backups[: max(0, len(backups) - self.max_backups)]:
            shutil.rmtree(old, ignore_errors=True)
            logger.debug(f"[{target.id}] Pruned old backup {old.name}")
