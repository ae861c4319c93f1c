"""Pydantic models for AppHealer configuration and state."""

from __future__ import annotations

import fnmatch
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HealthStatus(str, Enum):
    """Observed health of a target."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    MAINTENANCE = "maintenance"
    HEALING = "healing"
    UNKNOWN = "unknown"


class HealingMode(str, Enum):
    """How much risk the healer may remediate without a human."""

    MANUAL = "manual"
    SEMI_AUTO = "semi_auto"  # auto-heals LOW only
    FULL_AUTO = "full_auto"  # auto-heals LOW and MEDIUM


class CheckCategory(str, Enum):
    """Category of a diagnostic check."""

    SYSTEM = "system"
    SECURITY = "security"
    PERFORMANCE = "performance"
    AVAILABILITY = "availability"
    CONFIGURATION = "configuration"


class CheckStatus(str, Enum):
    """Outcome of a single diagnostic check."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"
    ERROR = "error"  # transport failure or timeout, never evidence
    SKIPPED = "skipped"


class RiskLevel(str, Enum):
    """Severity grading of a check or issue."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_ORDER: dict[RiskLevel, int] = {
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}

# Highest risk each mode may remediate on its own
MODE_MAX_AUTO_RISK: dict[HealingMode, RiskLevel | None] = {
    HealingMode.MANUAL: None,
    HealingMode.SEMI_AUTO: RiskLevel.LOW,
    HealingMode.FULL_AUTO: RiskLevel.MEDIUM,
}


def can_auto_heal(mode: HealingMode, risk: RiskLevel) -> bool:
    """Check whether a healing mode permits auto-remediation at a risk level."""
    ceiling = MODE_MAX_AUTO_RISK[mode]
    if ceiling is None:
        return False
    return RISK_ORDER[risk] <= RISK_ORDER[ceiling]


class DiagnosisType(str, Enum):
    """Symptom pattern identified by the classifier."""

    HEALTHY = "healthy"
    WSOD = "wsod"
    DB_ERROR = "db_error"
    SYNTAX_ERROR = "syntax_error"
    MEMORY_EXHAUSTION = "memory_exhaustion"
    PERMISSION = "permission"
    MAINTENANCE = "maintenance"
    DISK_FULL = "disk_full"
    UNKNOWN = "unknown"


class HealingStatus(str, Enum):
    """State of a healing execution."""

    PENDING = "pending"
    DIAGNOSING = "diagnosing"
    HEALTHY = "healthy"
    AWAITING_APPROVAL = "awaiting_approval"
    HEALING = "healing"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"


ACTIVE_HEALING_STATUSES = frozenset({
    HealingStatus.PENDING,
    HealingStatus.DIAGNOSING,
    HealingStatus.AWAITING_APPROVAL,
    HealingStatus.HEALING,
})


class CheckProfile(str, Enum):
    """Predefined sets of diagnostic checks."""

    FULL = "full"
    LIGHT = "light"
    QUICK = "quick"
    CUSTOM = "custom"


class ExecutionLogLevel(str, Enum):
    """Level of an execution log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"


# ============================================================================
# Configuration
# ============================================================================


class DaemonConfig(BaseModel):
    """Logging configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    log_rotation: str = "10 MB"
    log_retention: int = 5


class ChecksConfig(BaseModel):
    """Check runner configuration."""

    profile: CheckProfile = CheckProfile.FULL
    custom_checks: list[str] = Field(default_factory=list)
    check_timeout: float = 30.0  # seconds, per check
    http_timeout: float = 15.0
    disk_warn_percent: int = 80
    disk_critical_percent: int = 90
    disk_fail_percent: int = 95
    maintenance_stuck_minutes: int = 10


class HealingConfig(BaseModel):
    """Healing executor configuration."""

    command_timeout: float = 120.0  # seconds, per remediation step
    auto_rollback: bool = True
    require_approved_pattern: bool = True
    verify_after_heal: bool = True
    default_mode: HealingMode = HealingMode.MANUAL
    default_max_attempts: int = 3
    default_cooldown: int = 3600  # seconds


class PatternsConfig(BaseModel):
    """Pattern learning thresholds."""

    min_success_count: int = 3
    min_confidence: float = 0.9
    confidence_boost: float = 0.05
    revoke_on_failure: bool = False

    @field_validator("min_confidence", "confidence_boost")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v


class ExecutorConfig(BaseModel):
    """Local executor configuration."""

    backup_dir: str = "~/.apphealer/backups"
    max_backups: int = 5
    max_output: int = 4096


class HealerConfig(BaseModel):
    """Main AppHealer configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    checks: ChecksConfig = Field(default_factory=ChecksConfig)
    healing: HealingConfig = Field(default_factory=HealingConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    database: str | None = None


class TargetConfig(BaseModel):
    """Configuration of one managed application (one YAML file per target)."""

    name: str = ""
    path: str
    url: str | None = None
    enabled: bool = True
    healing_mode: HealingMode | None = None
    max_healing_attempts: int | None = None
    healing_cooldown: int | None = None
    log_paths: list[str] = Field(default_factory=lambda: ["wp-content/debug.log"])
    db_check_command: str | None = None
    check_profile: CheckProfile | None = None
    blacklisted_plugins: list[str] = Field(default_factory=list)
    blacklisted_themes: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


# ============================================================================
# State
# ============================================================================


class Target(BaseModel):
    """A monitored application instance and its healing state."""

    id: str
    name: str = ""
    path: str
    url: str | None = None
    healing_mode: HealingMode = HealingMode.MANUAL
    is_healer_enabled: bool = True
    max_healing_attempts: int = 3
    healing_cooldown: int = 3600
    current_healing_attempts: int = 0
    last_healing_attempt_at: datetime | None = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    health_score: int | None = None
    last_health_check: datetime | None = None
    log_paths: list[str] = Field(default_factory=list)
    db_check_command: str | None = None
    check_profile: CheckProfile | None = None
    blacklisted_plugins: list[str] = Field(default_factory=list)
    blacklisted_themes: list[str] = Field(default_factory=list)

    @classmethod
    def from_config(
        cls,
        target_id: str,
        config: TargetConfig,
        defaults: HealingConfig | None = None,
    ) -> Target:
        """Build a target from its YAML configuration."""
        defaults = defaults or HealingConfig()
        return cls(
            id=target_id,
            name=config.name or target_id,
            path=config.path,
            url=config.url,
            healing_mode=config.healing_mode or defaults.default_mode,
            is_healer_enabled=config.enabled,
            max_healing_attempts=(
                config.max_healing_attempts
                if config.max_healing_attempts is not None
                else defaults.default_max_attempts
            ),
            healing_cooldown=(
                config.healing_cooldown
                if config.healing_cooldown is not None
                else defaults.default_cooldown
            ),
            log_paths=config.log_paths,
            db_check_command=config.db_check_command,
            check_profile=config.check_profile,
            blacklisted_plugins=config.blacklisted_plugins,
            blacklisted_themes=config.blacklisted_themes,
        )

    def cooldown_remaining(self, now: datetime | None = None) -> float:
        """Seconds left in the healing cooldown window (0 if elapsed)."""
        if self.last_healing_attempt_at is None:
            return 0.0
        now = now or datetime.now()
        elapsed = (now - self.last_healing_attempt_at).total_seconds()
        return max(0.0, self.healing_cooldown - elapsed)

    def is_attempt_limited(self, now: datetime | None = None) -> bool:
        """True if the attempt budget is spent and the cooldown still runs."""
        return (
            self.current_healing_attempts >= self.max_healing_attempts
            and self.cooldown_remaining(now) > 0
        )

    def is_blacklisted(self, component: str, name: str) -> bool:
        """True if a plugin or theme must never be disabled by the healer.

        Entries are exact names or shell-style wildcards (``woocommerce-*``).
        """
        blacklist = self.blacklisted_plugins if component == "plugin" else self.blacklisted_themes
        return any(fnmatch.fnmatchcase(name, entry) for entry in blacklist)


CHECK_STATUS_SCORES: dict[CheckStatus, int] = {
    CheckStatus.PASS: 100,
    CheckStatus.WARN: 50,
    CheckStatus.FAIL: 0,
    CheckStatus.ERROR: 0,
}


class CheckResult(BaseModel):
    """One diagnostic finding. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    name: str
    category: CheckCategory
    status: CheckStatus
    severity: RiskLevel
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0

    @property
    def score(self) -> int | None:
        """Score contribution of this check, None when skipped."""
        return CHECK_STATUS_SCORES.get(self.status)


class DiagnosticExecution(BaseModel):
    """The outcome of one check runner pass."""

    id: int | None = None
    target_id: str
    profile: CheckProfile = CheckProfile.FULL
    results: list[CheckResult] = Field(default_factory=list)
    health_score: int = 100
    category_scores: dict[str, int] = Field(default_factory=dict)
    triggered_by: str = "manual"
    created_at: datetime = Field(default_factory=datetime.now)
    duration_ms: int = 0

    def get(self, name: str) -> CheckResult | None:
        """Get a check result by check name."""
        for result in self.results:
            if result.name == name:
                return result
        return None

    def has_status(self, name: str, *statuses: CheckStatus) -> bool:
        result = self.get(name)
        return result is not None and result.status in statuses

    @property
    def all_passing(self) -> bool:
        """True when every non-skipped check passed."""
        scored = [r for r in self.results if r.status != CheckStatus.SKIPPED]
        return all(r.status == CheckStatus.PASS for r in scored)


class Diagnosis(BaseModel):
    """Classifier output for one diagnostic execution."""

    diagnosis_type: DiagnosisType
    confidence: float = 0.0
    error_type: str | None = None
    culprit: str | None = None
    suggested_commands: list[str] = Field(default_factory=list)
    suggested_action: str = ""
    risk_level: RiskLevel = RiskLevel.HIGH
    mutating: bool = True
    rule: str | None = None
    pattern_id: int | None = None
    protected: bool = False
    evidence: list[str] = Field(default_factory=list)

    @property
    def signature(self) -> str:
        """Stable pattern store key for this diagnosis."""
        return make_signature(self.diagnosis_type, self.error_type, self.culprit)


def make_signature(
    diagnosis_type: DiagnosisType,
    error_type: str | None,
    culprit: str | None,
) -> str:
    """Build the signature string for (diagnosis type, error type, culprit)."""
    return f"{diagnosis_type.value}:{error_type or '-'}:{culprit or '-'}"


class HealingPattern(BaseModel):
    """A learned diagnosis signature with its success history."""

    id: int | None = None
    signature: str
    diagnosis_type: DiagnosisType
    error_type: str | None = None
    culprit: str | None = None
    error_pattern: str | None = None
    commands: list[str] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    auto_approved: bool = False
    approval_locked: bool = False
    last_used_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def total_count(self) -> int:
        return self.success_count + self.failure_count

    @property
    def confidence(self) -> float:
        """Observed success rate, derived from the counters."""
        if self.total_count == 0:
            return 0.0
        return self.success_count / self.total_count


class ExecutionLogEntry(BaseModel):
    """One step record in a healing execution's log."""

    timestamp: datetime = Field(default_factory=datetime.now)
    level: ExecutionLogLevel = ExecutionLogLevel.INFO
    message: str
    step: int | None = None
    command: str | None = None
    exit_code: int | None = None
    output: str | None = None
    error: str | None = None
    duration_ms: int | None = None


class HealingExecution(BaseModel):
    """One remediation attempt against a target."""

    id: int | None = None
    target_id: str
    status: HealingStatus = HealingStatus.PENDING
    healing_mode: HealingMode = HealingMode.MANUAL
    diagnosis: Diagnosis | None = None
    diagnostic_execution_id: int | None = None
    verification_execution_id: int | None = None
    pre_health_score: int | None = None
    post_health_score: int | None = None
    commands: list[str] = Field(default_factory=list)
    backup_id: str | None = None
    non_mutating: bool = False
    auto_healed: int = 0
    needs_approval: int = 0
    cannot_heal: int = 0
    reason: str | None = None
    triggered_by: str = "manual"
    approved_by: str | None = None
    owner_pid: int | None = None
    execution_logs: list[ExecutionLogEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_HEALING_STATUSES

    def log(
        self,
        message: str,
        level: ExecutionLogLevel = ExecutionLogLevel.INFO,
        **fields: Any,
    ) -> ExecutionLogEntry:
        """Append an entry to the execution log."""
        entry = ExecutionLogEntry(message=message, level=level, **fields)
        self.execution_logs.append(entry)
        return entry
