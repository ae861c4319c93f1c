"""Rule-table diagnosis classifier.

Each rule pairs a match predicate with the diagnosis it produces. Rules are
evaluated in order and the first match wins, so new rules can be added
without touching the healing executor or the pattern store.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from loguru import logger

from apphealer.core.log_analysis import (
    DB_ACCESS_DENIED,
    DB_CONNECTION,
    MEMORY_EXHAUSTION,
    PLUGIN_FAULT,
    SYNTAX_ERROR,
    THEME_FAULT,
    ErrorSignal,
    LogSummary,
)
from apphealer.models import (
    CheckStatus,
    Diagnosis,
    DiagnosisType,
    DiagnosticExecution,
    HealthStatus,
    RiskLevel,
    Target,
    make_signature,
)

if TYPE_CHECKING:
    from apphealer.core.patterns import PatternStore


@dataclass
class Evidence:
    """What a rule predicate gets to look at."""

    execution: DiagnosticExecution
    logs: LogSummary

    def failed(self, check: str) -> bool:
        return self.execution.has_status(check, CheckStatus.FAIL)

    def detail(self, check: str, key: str, default=None):
        result = self.execution.get(check)
        if result is None:
            return default
        return result.details.get(key, default)


@dataclass
class RuleMatch:
    """A rule predicate's verdict: error type, culprit and evidence lines."""

    error_type: str
    culprit: str | None = None
    evidence: list[str] = field(default_factory=list)


@dataclass
class DiagnosisRule:
    """One row of the classification table."""

    name: str
    diagnosis_type: DiagnosisType
    confidence: float
    risk_level: RiskLevel
    match: Callable[[Evidence], RuleMatch | None]
    commands: list[str] = field(default_factory=list)
    action: str = ""
    mutating: bool = True
    component: str | None = None  # "plugin" or "theme" the commands would disable

    def render_commands(self, culprit: str | None) -> list[str]:
        name = shlex.quote(culprit) if culprit else ""
        return [c.format(culprit=name) for c in self.commands]


def _stuck_maintenance(ev: Evidence) -> RuleMatch | None:
    if ev.failed("maintenance_mode") and ev.detail("maintenance_mode", "stuck"):
        return RuleMatch("STUCK_MAINTENANCE", evidence=["maintenance_mode: stuck .maintenance file"])
    return None


def _database_error(ev: Evidence) -> RuleMatch | None:
    if ev.failed("database_connection"):
        error_type = ev.detail("database_connection", "error_type", DB_CONNECTION)
        return RuleMatch(error_type, evidence=["database_connection: check failed"])
    if ev.detail("http_status", "db_error"):
        return RuleMatch(DB_CONNECTION, evidence=["http_status: database error page"])
    signals = ev.logs.of_type(DB_CONNECTION, DB_ACCESS_DENIED)
    if signals:
        error_type = DB_ACCESS_DENIED if ev.logs.of_type(DB_ACCESS_DENIED) else DB_CONNECTION
        return RuleMatch(error_type, evidence=[s.message for s in signals[:3]])
    return None


def _signal_rule(signal_type: str, with_culprit: bool) -> Callable[[Evidence], RuleMatch | None]:
    def match(ev: Evidence) -> RuleMatch | None:
        signals = ev.logs.of_type(signal_type)
        if not signals:
            return None
        culprit = ev.logs.top_culprit(signal_type) if with_culprit else None
        if with_culprit and not culprit:
            return None
        return RuleMatch(signal_type, culprit, [s.message for s in signals[:3]])

    return match


def _world_writable(ev: Evidence) -> RuleMatch | None:
    if ev.failed("file_permissions"):
        count = ev.detail("file_permissions", "count", 0)
        return RuleMatch("WORLD_WRITABLE", evidence=[f"file_permissions: {count} world-writable files"])
    return None


def _disk_full(ev: Evidence) -> RuleMatch | None:
    if ev.failed("disk_space"):
        usage = ev.detail("disk_space", "usage_percent")
        return RuleMatch("DISK_FULL", evidence=[f"disk_space: {usage}% used"])
    return None


DEFAULT_RULES: list[DiagnosisRule] = [
    DiagnosisRule(
        name="stuck_maintenance",
        diagnosis_type=DiagnosisType.MAINTENANCE,
        confidence=1.0,
        risk_level=RiskLevel.LOW,
        match=_stuck_maintenance,
        commands=["rm -f .maintenance"],
        action="Remove the stale .maintenance file",
    ),
    DiagnosisRule(
        name="database_error",
        diagnosis_type=DiagnosisType.DB_ERROR,
        confidence=0.85,
        risk_level=RiskLevel.HIGH,
        match=_database_error,
        commands=["wp db check", "wp db repair"],
        action="Check and repair the database; verify credentials in wp-config.php",
    ),
    DiagnosisRule(
        name="plugin_fault",
        diagnosis_type=DiagnosisType.WSOD,
        confidence=0.95,
        risk_level=RiskLevel.MEDIUM,
        match=_signal_rule(PLUGIN_FAULT, with_culprit=True),
        commands=["wp plugin deactivate {culprit}"],
        action="Deactivate the faulty plugin",
        component="plugin",
    ),
    DiagnosisRule(
        name="theme_fault",
        diagnosis_type=DiagnosisType.SYNTAX_ERROR,
        confidence=0.95,
        risk_level=RiskLevel.HIGH,
        match=_signal_rule(THEME_FAULT, with_culprit=True),
        commands=[
            "mv wp-content/themes/{culprit} wp-content/themes/{culprit}.disabled",
            "wp theme activate twentytwentyfour",
        ],
        action="Disable the faulty theme and switch to a default theme",
        component="theme",
    ),
    DiagnosisRule(
        name="memory_exhaustion",
        diagnosis_type=DiagnosisType.MEMORY_EXHAUSTION,
        confidence=0.90,
        risk_level=RiskLevel.MEDIUM,
        match=_signal_rule(MEMORY_EXHAUSTION, with_culprit=False),
        commands=[
            "wp config set WP_MEMORY_LIMIT 256M --raw",
            "wp config set WP_MAX_MEMORY_LIMIT 512M --raw",
        ],
        action="Raise the PHP memory limits",
    ),
    DiagnosisRule(
        name="syntax_error",
        diagnosis_type=DiagnosisType.WSOD,
        confidence=0.80,
        risk_level=RiskLevel.HIGH,
        match=_signal_rule(SYNTAX_ERROR, with_culprit=False),
        action="Fix the PHP syntax error reported in the logs",
    ),
    DiagnosisRule(
        name="world_writable",
        diagnosis_type=DiagnosisType.PERMISSION,
        confidence=0.80,
        risk_level=RiskLevel.MEDIUM,
        match=_world_writable,
        commands=["find . -type f -perm -o+w -exec chmod o-w {{}} +"],
        action="Remove world-write permission from files",
    ),
    DiagnosisRule(
        name="disk_full",
        diagnosis_type=DiagnosisType.DISK_FULL,
        confidence=0.70,
        risk_level=RiskLevel.HIGH,
        match=_disk_full,
        action="Free disk space on the host",
    ),
]


def collect_signals(
    execution: DiagnosticExecution,
    raw_signals: list[ErrorSignal] | None = None,
) -> LogSummary:
    """Merge signals found by the error_log check with ad hoc ones."""
    signals = [
        ErrorSignal.from_dict(s)
        for result in execution.results
        for s in result.details.get("signals", [])
    ]
    signals.extend(raw_signals or [])
    return LogSummary(signals)


class DiagnosisClassifier:
    """Maps check results and error signals to a Diagnosis."""

    def __init__(
        self,
        rules: list[DiagnosisRule] | None = None,
        pattern_store: PatternStore | None = None,
        confidence_boost: float = 0.05,
    ):
        self.rules = list(rules if rules is not None else DEFAULT_RULES)
        self.pattern_store = pattern_store
        self.confidence_boost = confidence_boost

    def add_rule(self, rule: DiagnosisRule, before: str | None = None) -> None:
        """Register a rule, at the end or ahead of the named rule."""
        if before is None:
            self.rules.append(rule)
            return
        for index, existing in enumerate(self.rules):
            if existing.name == before:
                self.rules.insert(index, rule)
                return
        raise ValueError(f"No rule named {before!r}")

    def classify(
        self,
        execution: DiagnosticExecution,
        raw_signals: list[ErrorSignal] | None = None,
        target: Target | None = None,
    ) -> Diagnosis:
        logs = collect_signals(execution, raw_signals)

        if execution.all_passing and not logs.signals:
            return Diagnosis(
                diagnosis_type=DiagnosisType.HEALTHY,
                confidence=1.0,
                suggested_action="No action needed",
                risk_level=RiskLevel.LOW,
                mutating=False,
            )

        evidence = Evidence(execution, logs)
        for rule in self.rules:
            match = rule.match(evidence)
            if match is None:
                continue
            diagnosis = Diagnosis(
                diagnosis_type=rule.diagnosis_type,
                confidence=rule.confidence,
                error_type=match.error_type,
                culprit=match.culprit,
                suggested_commands=rule.render_commands(match.culprit),
                suggested_action=rule.action,
                risk_level=rule.risk_level,
                mutating=rule.mutating,
                rule=rule.name,
                evidence=match.evidence,
            )
            logger.debug(
                f"[{execution.target_id}] Rule {rule.name} matched: "
                f"{diagnosis.diagnosis_type.value} ({match.error_type}, {match.culprit})"
            )
            diagnosis = self._apply_history(diagnosis)
            if target is not None and rule.component and diagnosis.culprit:
                self._protect(target, rule.component, diagnosis)
            return diagnosis

        return Diagnosis(
            diagnosis_type=DiagnosisType.UNKNOWN,
            confidence=0.0,
            suggested_action="Manual investigation required",
            evidence=[
                f"{r.name}: {r.status.value}"
                for r in execution.results
                if r.status in (CheckStatus.WARN, CheckStatus.FAIL)
            ],
        )

    def _protect(self, target: Target, component: str, diagnosis: Diagnosis) -> None:
        """Drop the remediation if it would disable a blacklisted component."""
        if not target.is_blacklisted(component, diagnosis.culprit):
            return
        diagnosis.protected = True
        diagnosis.suggested_commands = []
        diagnosis.suggested_action = (
            f"{component.capitalize()} {diagnosis.culprit} is blacklisted and cannot be disabled"
        )
        logger.info(f"[{target.id}] {diagnosis.suggested_action}")

    def _apply_history(self, diagnosis: Diagnosis) -> Diagnosis:
        """Boost confidence and reuse commands of a proven pattern."""
        if self.pattern_store is None:
            return diagnosis

        pattern = self.pattern_store.lookup(
            make_signature(diagnosis.diagnosis_type, diagnosis.error_type, diagnosis.culprit)
        )
        if pattern is None:
            return diagnosis

        diagnosis.pattern_id = pattern.id
        if pattern.auto_approved:
            diagnosis.confidence = min(1.0, diagnosis.confidence + self.confidence_boost)
            if pattern.commands:
                diagnosis.suggested_commands = list(pattern.commands)
        return diagnosis


def health_status_for(score: int, diagnosis_type: DiagnosisType | None = None) -> HealthStatus:
    """Translate a health score and diagnosis into a target health status."""
    if diagnosis_type == DiagnosisType.HEALTHY:
        return HealthStatus.HEALTHY
    if diagnosis_type == DiagnosisType.MAINTENANCE:
        return HealthStatus.MAINTENANCE
    if score >= 80:
        return HealthStatus.HEALTHY
    if score >= 40:
        return HealthStatus.DEGRADED
    return HealthStatus.DOWN
