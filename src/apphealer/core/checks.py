"""Diagnostic checks and the check runner.

Checks are read-only inspections run in parallel against a target. Each one is
bounded by its own timeout and the whole pass by the profile's deadline.
A check that errors or times out yields ERROR, never FAIL.
"""

from __future__ import annotations

import asyncio
import re
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger

from apphealer.core.errors import CheckError, CommandRejected
from apphealer.core.executor import CommandOutcome, RemoteExecutor, run_validated
from apphealer.core.log_analysis import ErrorSignal, parse_log
from apphealer.models import (
    CheckCategory,
    CheckProfile,
    CheckResult,
    CheckStatus,
    ChecksConfig,
    DiagnosticExecution,
    RiskLevel,
    Target,
)

if TYPE_CHECKING:
    from apphealer.db import Database


# Weight of a check in the health score, by severity
SEVERITY_WEIGHTS: dict[RiskLevel, float] = {
    RiskLevel.CRITICAL: 3.0,
    RiskLevel.HIGH: 2.0,
    RiskLevel.MEDIUM: 1.0,
    RiskLevel.LOW: 0.5,
}

DB_ERROR_MARKER = "Error establishing a database connection"


def compute_health_score(results: list[CheckResult]) -> int:
    """Severity-weighted average of check scores, clamped to [0, 100].

    SKIPPED checks do not count. With nothing to score the target is
    considered fully healthy.
    """
    total = 0.0
    weight_sum = 0.0
    for result in results:
        score = result.score
        if score is None:
            continue
        weight = SEVERITY_WEIGHTS[result.severity]
        total += score * weight
        weight_sum += weight

    if weight_sum == 0:
        return 100
    return max(0, min(100, round(total / weight_sum)))


def compute_category_scores(results: list[CheckResult]) -> dict[str, int]:
    """Mean check score for each category (100 when a category has no checks)."""
    scores: dict[str, list[int]] = {c.value: [] for c in CheckCategory}
    for result in results:
        if result.score is not None:
            scores[result.category.value].append(result.score)
    return {
        category: round(sum(values) / len(values)) if values else 100
        for category, values in scores.items()
    }


@dataclass
class CheckContext:
    """Everything a check needs to inspect one target."""

    target: Target
    executor: RemoteExecutor
    config: ChecksConfig
    log_depth: int = 200
    http_transport: httpx.AsyncBaseTransport | None = None

    async def run(self, check: str, command: str) -> CommandOutcome:
        """Run a read-only command for a check.

        Raises:
            CheckError: On validator refusal, transport failure or timeout
        """
        try:
            outcome = await run_validated(
                self.executor, self.target, command, self.config.check_timeout
            )
        except CommandRejected as e:
            raise CheckError(check, e.detail) from e
        if outcome.timed_out:
            raise CheckError(check, f"command timed out: {command}")
        return outcome


class DiagnosticCheck(ABC):
    """Base class for one diagnostic check."""

    name: str = ""
    category: CheckCategory = CheckCategory.SYSTEM
    severity: RiskLevel = RiskLevel.MEDIUM
    description: str = ""

    @abstractmethod
    async def run(self, ctx: CheckContext) -> CheckResult:
        pass

    def result(
        self,
        status: CheckStatus,
        message: str,
        details: dict[str, Any] | None = None,
        duration_ms: int = 0,
    ) -> CheckResult:
        return CheckResult(
            name=self.name,
            category=self.category,
            status=status,
            severity=self.severity,
            message=message,
            details=details or {},
            duration_ms=duration_ms,
        )


class HttpStatusCheck(DiagnosticCheck):
    """Fetches the target URL and inspects status and body."""

    name = "http_status"
    category = CheckCategory.AVAILABILITY
    severity = RiskLevel.CRITICAL
    description = "Site responds over HTTP"

    async def run(self, ctx: CheckContext) -> CheckResult:
        if not ctx.target.url:
            return self.result(CheckStatus.SKIPPED, "No URL configured")

        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=ctx.config.http_timeout,
                follow_redirects=True,
                transport=ctx.http_transport,
            ) as client:
                response = await client.get(
                    ctx.target.url, headers={"User-Agent": "AppHealer/1.0"}
                )
        except httpx.TimeoutException as e:
            raise CheckError(self.name, f"HTTP timeout: {e}") from e
        except httpx.HTTPError as e:
            raise CheckError(self.name, f"HTTP error: {e}") from e

        elapsed = int((time.monotonic() - start) * 1000)
        body = response.text
        details = {
            "status_code": response.status_code,
            "response_time_ms": elapsed,
            "db_error": DB_ERROR_MARKER in body,
            "wsod": response.status_code == 200 and not body.strip(),
        }

        if response.status_code >= 500:
            return self.result(
                CheckStatus.FAIL, f"Server error: HTTP {response.status_code}", details
            )
        if details["db_error"]:
            return self.result(CheckStatus.FAIL, "Database connection error page", details)
        if details["wsod"]:
            return self.result(CheckStatus.FAIL, "Empty response (white screen)", details)
        if response.status_code >= 400:
            return self.result(
                CheckStatus.WARN, f"Client error: HTTP {response.status_code}", details
            )
        return self.result(CheckStatus.PASS, f"HTTP {response.status_code} in {elapsed}ms", details)


class MaintenanceModeCheck(DiagnosticCheck):
    """Detects a leftover .maintenance file."""

    name = "maintenance_mode"
    category = CheckCategory.AVAILABILITY
    severity = RiskLevel.HIGH
    description = "Site is not stuck in maintenance mode"

    async def run(self, ctx: CheckContext) -> CheckResult:
        minutes = ctx.config.maintenance_stuck_minutes
        stuck = await ctx.run(
            self.name, f"find . -maxdepth 1 -name .maintenance -mmin +{minutes}"
        )
        if stuck.stdout.strip():
            return self.result(
                CheckStatus.FAIL,
                f"Maintenance mode active for more than {minutes} minutes",
                {"stuck": True, "minutes": minutes},
            )

        present = await ctx.run(
            self.name, "test -f .maintenance && echo present || echo absent"
        )
        if present.stdout.strip() == "present":
            return self.result(
                CheckStatus.WARN, "Maintenance mode active", {"stuck": False}
            )
        return self.result(CheckStatus.PASS, "Maintenance mode off")


class DatabaseConnectionCheck(DiagnosticCheck):
    """Runs the target's database check command."""

    name = "database_connection"
    category = CheckCategory.AVAILABILITY
    severity = RiskLevel.CRITICAL
    description = "Application can reach its database"

    async def run(self, ctx: CheckContext) -> CheckResult:
        command = ctx.target.db_check_command
        if not command:
            return self.result(CheckStatus.SKIPPED, "No database check command configured")

        outcome = await ctx.run(self.name, command)
        if outcome.ok:
            return self.result(CheckStatus.PASS, "Database connection OK")

        output = f"{outcome.stdout}\n{outcome.stderr}"
        error_type = "DB_ACCESS_DENIED" if "Access denied for user" in output else "DB_CONNECTION"
        return self.result(
            CheckStatus.FAIL,
            f"Database check failed (exit={outcome.exit_code})",
            {"error_type": error_type, "stderr": outcome.stderr[:500]},
        )


class ErrorLogCheck(DiagnosticCheck):
    """Reads the tail of the configured error logs."""

    name = "error_log"
    category = CheckCategory.CONFIGURATION
    severity = RiskLevel.HIGH
    description = "No fatal errors in the application logs"

    async def run(self, ctx: CheckContext) -> CheckResult:
        if ctx.log_depth <= 0 or not ctx.target.log_paths:
            return self.result(CheckStatus.SKIPPED, "Log analysis disabled")

        signals: list[ErrorSignal] = []
        logs_read = []
        for log_path in ctx.target.log_paths:
            outcome = await ctx.run(
                self.name, f"tail -n {ctx.log_depth} {shlex.quote(log_path)}"
            )
            if not outcome.ok:
                logger.debug(f"[{ctx.target.id}] Log {log_path} not readable: {outcome.stderr.strip()}")
                continue
            logs_read.append(log_path)
            signals.extend(parse_log(outcome.stdout))

        if not logs_read:
            return self.result(CheckStatus.SKIPPED, "No readable error logs")

        details = {
            "logs": logs_read,
            "signals": [s.to_dict() for s in signals],
        }
        fatal = [s for s in signals if s.is_fatal]
        if fatal:
            return self.result(
                CheckStatus.FAIL, f"{len(fatal)} fatal errors in logs", details
            )
        if signals:
            return self.result(CheckStatus.WARN, f"{len(signals)} warnings in logs", details)
        return self.result(CheckStatus.PASS, "No errors in logs", details)


class DiskSpaceCheck(DiagnosticCheck):
    """Checks usage of the filesystem holding the target."""

    name = "disk_space"
    category = CheckCategory.SYSTEM
    severity = RiskLevel.MEDIUM
    description = "Enough free disk space"

    _USAGE_RE = re.compile(r"(\d+)%")

    async def run(self, ctx: CheckContext) -> CheckResult:
        outcome = await ctx.run(self.name, "df -P .")
        if not outcome.ok:
            raise CheckError(self.name, outcome.stderr.strip() or "df failed")

        lines = outcome.stdout.strip().splitlines()
        match = self._USAGE_RE.search(lines[-1]) if lines else None
        if not match:
            raise CheckError(self.name, "could not parse df output")

        usage = int(match.group(1))
        details = {"usage_percent": usage}
        config = ctx.config
        if usage >= config.disk_fail_percent:
            return self.result(CheckStatus.FAIL, f"Disk usage critical: {usage}%", details)
        if usage >= config.disk_critical_percent:
            return self.result(CheckStatus.WARN, f"Disk usage high: {usage}%", details)
        if usage >= config.disk_warn_percent:
            return self.result(CheckStatus.WARN, f"Disk usage elevated: {usage}%", details)
        return self.result(CheckStatus.PASS, f"Disk usage {usage}%", details)


class FilePermissionsCheck(DiagnosticCheck):
    """Looks for world-writable files."""

    name = "file_permissions"
    category = CheckCategory.SECURITY
    severity = RiskLevel.MEDIUM
    description = "No world-writable files"

    async def run(self, ctx: CheckContext) -> CheckResult:
        outcome = await ctx.run(self.name, "find . -maxdepth 3 -type f -perm -o+w")
        if not outcome.ok:
            raise CheckError(self.name, outcome.stderr.strip() or "find failed")

        files = [line for line in outcome.stdout.splitlines() if line.strip()]
        if files:
            return self.result(
                CheckStatus.FAIL,
                f"{len(files)} world-writable files",
                {"files": files[:20], "count": len(files)},
            )
        return self.result(CheckStatus.PASS, "File permissions OK")


BUILTIN_CHECKS: list[type[DiagnosticCheck]] = [
    HttpStatusCheck,
    MaintenanceModeCheck,
    DatabaseConnectionCheck,
    ErrorLogCheck,
    DiskSpaceCheck,
    FilePermissionsCheck,
]


@dataclass
class ProfileSettings:
    """Checks, overall deadline and log depth of a check profile."""

    checks: list[str]
    deadline: float
    log_depth: int
    description: str = ""


PROFILES: dict[CheckProfile, ProfileSettings] = {
    CheckProfile.FULL: ProfileSettings(
        checks=[
            "http_status",
            "maintenance_mode",
            "database_connection",
            "error_log",
            "disk_space",
            "file_permissions",
        ],
        deadline=120,
        log_depth=500,
        description="Complete diagnosis with all checks",
    ),
    CheckProfile.LIGHT: ProfileSettings(
        checks=["http_status", "maintenance_mode", "database_connection", "error_log", "disk_space"],
        deadline=60,
        log_depth=100,
        description="Critical checks for scheduled diagnosis",
    ),
    CheckProfile.QUICK: ProfileSettings(
        checks=["http_status", "maintenance_mode"],
        deadline=30,
        log_depth=0,
        description="Minimal checks for fast feedback",
    ),
    CheckProfile.CUSTOM: ProfileSettings(
        checks=[],
        deadline=90,
        log_depth=200,
        description="User-defined check combination",
    ),
}


@dataclass
class CheckRunner:
    """Runs a set of checks against a target and scores the result."""

    executor: RemoteExecutor
    db: Database | None = None
    config: ChecksConfig = field(default_factory=ChecksConfig)
    http_transport: httpx.AsyncBaseTransport | None = None
    checks: dict[str, DiagnosticCheck] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.checks:
            for check_cls in BUILTIN_CHECKS:
                self.register(check_cls())

    def register(self, check: DiagnosticCheck) -> None:
        """Add or replace a check."""
        self.checks[check.name] = check

    def resolve(self, profile: CheckProfile, custom: list[str] | None = None) -> list[DiagnosticCheck]:
        """Get the checks for a profile, in presentation order."""
        if profile == CheckProfile.CUSTOM:
            names = custom if custom is not None else self.config.custom_checks
        else:
            names = PROFILES[profile].checks

        unknown = [n for n in names if n not in self.checks]
        if unknown:
            raise ValueError(f"Unknown checks: {', '.join(unknown)}")
        return [self.checks[n] for n in names]

    async def run_checks(
        self,
        target: Target,
        profile: CheckProfile | None = None,
        custom: list[str] | None = None,
        triggered_by: str = "manual",
    ) -> DiagnosticExecution:
        """Run every check of a profile in parallel and persist the pass."""
        profile = profile or target.check_profile or self.config.profile
        plan = PROFILES[profile]
        checks = self.resolve(profile, custom)
        ctx = CheckContext(
            target=target,
            executor=self.executor,
            config=self.config,
            log_depth=plan.log_depth,
            http_transport=self.http_transport,
        )

        logger.info(f"[{target.id}] Running {len(checks)} checks ({profile.value})")
        start = time.monotonic()

        tasks = [asyncio.create_task(self._run_one(check, ctx)) for check in checks]
        done, pending = await asyncio.wait(tasks, timeout=plan.deadline) if tasks else (set(), set())
        for task in pending:
            task.cancel()

        results = []
        for check, task in zip(checks, tasks):
            if task in done:
                results.append(task.result())
            else:
                logger.warning(f"[{target.id}] Check {check.name} exceeded the {plan.deadline}s deadline")
                results.append(
                    check.result(
                        CheckStatus.ERROR,
                        f"Diagnosis deadline of {plan.deadline}s exceeded",
                        {"error": "deadline"},
                    )
                )

        execution = DiagnosticExecution(
            target_id=target.id,
            profile=profile,
            results=results,
            health_score=compute_health_score(results),
            category_scores=compute_category_scores(results),
            triggered_by=triggered_by,
            created_at=datetime.now(),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

        if self.db:
            execution.id = self.db.save_diagnostic_execution(execution)
            self.db.mark_health_checked(target.id, execution.created_at)

        logger.info(
            f"[{target.id}] Checks finished: score {execution.health_score} "
            f"in {execution.duration_ms}ms"
        )
        return execution

    async def _run_one(self, check: DiagnosticCheck, ctx: CheckContext) -> CheckResult:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(check.run(ctx), timeout=self.config.check_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{ctx.target.id}] Check {check.name} timed out")
            return check.result(
                CheckStatus.ERROR,
                f"Check timed out after {self.config.check_timeout}s",
                {"error": "timeout"},
                int((time.monotonic() - start) * 1000),
            )
        except CheckError as e:
            logger.warning(f"[{ctx.target.id}] {e}")
            return check.result(
                CheckStatus.ERROR,
                f"Check failed: {e.detail}",
                {"error": e.detail},
                int((time.monotonic() - start) * 1000),
            )
        except Exception as e:
            logger.exception(f"[{ctx.target.id}] Unexpected error in check {check.name}")
            return check.result(
                CheckStatus.ERROR,
                f"Check failed: {e}",
                {"error": str(e)},
                int((time.monotonic() - start) * 1000),
            )

        if result.duration_ms:
            return result
        return result.model_copy(update={"duration_ms": int((time.monotonic() - start) * 1000)})
