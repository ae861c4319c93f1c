"""Parse application error logs into typed error signals."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

PLUGIN_FAULT = "PLUGIN_FAULT"
THEME_FAULT = "THEME_FAULT"
SYNTAX_ERROR = "SYNTAX_ERROR"
MEMORY_EXHAUSTION = "MEMORY_EXHAUSTION"
DB_CONNECTION = "DB_CONNECTION"
DB_ACCESS_DENIED = "DB_ACCESS_DENIED"

# Signal types that mean the application cannot serve requests
FATAL_SIGNAL_TYPES = frozenset({
    PLUGIN_FAULT,
    THEME_FAULT,
    SYNTAX_ERROR,
    MEMORY_EXHAUSTION,
    DB_CONNECTION,
    DB_ACCESS_DENIED,
})

SIGNAL_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        PLUGIN_FAULT,
        re.compile(
            r"(?:PHP Fatal error|PHP Parse error|PHP Warning):.* in .*/wp-content/plugins/([A-Za-z0-9][A-Za-z0-9._-]*)/"
        ),
    ),
    (
        THEME_FAULT,
        re.compile(
            r"(?:PHP Fatal error|PHP Parse error|PHP Warning):.* in .*/wp-content/themes/([A-Za-z0-9][A-Za-z0-9._-]*)/"
        ),
    ),
    (SYNTAX_ERROR, re.compile(r"PHP Parse error: syntax error")),
    (MEMORY_EXHAUSTION, re.compile(r"Allowed memory size of \d+ bytes exhausted")),
    (DB_CONNECTION, re.compile(r"Error establishing a database connection")),
    (DB_ACCESS_DENIED, re.compile(r"Access denied for user")),
]

_LOCATION_RE = re.compile(r" in (/\S+?)(?: on line |:)(\d+)")
_SEVERITY_RE = re.compile(r"PHP (Fatal error|Parse error|Warning|Notice|Deprecated)")
# Plugin and theme directory names; anything else never reaches a command line
_SLUG_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


def is_slug(name: str) -> bool:
    return bool(_SLUG_RE.fullmatch(name)) and ".." not in name


@dataclass
class ErrorSignal:
    """One error extracted from a log line."""

    type: str
    message: str
    culprit: str | None = None
    file: str | None = None
    line: int | None = None
    severity: str | None = None

    @property
    def is_fatal(self) -> bool:
        return self.type in FATAL_SIGNAL_TYPES and self.severity != "Warning"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message,
            "culprit": self.culprit,
            "file": self.file,
            "line": self.line,
            "severity": self.severity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ErrorSignal:
        return cls(
            type=data["type"],
            message=data.get("message", ""),
            culprit=data.get("culprit"),
            file=data.get("file"),
            line=data.get("line"),
            severity=data.get("severity"),
        )


def parse_line(line: str) -> ErrorSignal | None:
    """Match one log line against the known signatures."""
    for signal_type, pattern in SIGNAL_PATTERNS:
        match = pattern.search(line)
        if not match:
            continue

        culprit = match.group(1) if pattern.groups else None
        location = _LOCATION_RE.search(line)
        severity = _SEVERITY_RE.search(line)
        return ErrorSignal(
            type=signal_type,
            message=line.strip()[:500],
            culprit=culprit,
            file=location.group(1) if location else None,
            line=int(location.group(2)) if location else None,
            severity=severity.group(1) if severity else None,
        )
    return None


def parse_log(text: str) -> list[ErrorSignal]:
    """Extract every recognized error signal from a block of log text."""
    signals = []
    for line in text.splitlines():
        signal = parse_line(line)
        if signal is not None:
            signals.append(signal)
    return signals


@dataclass
class LogSummary:
    """Aggregated view of a set of error signals."""

    signals: list[ErrorSignal] = field(default_factory=list)

    def of_type(self, *types: str) -> list[ErrorSignal]:
        return [s for s in self.signals if s.type in types]

    def top_culprit(self, *types: str) -> str | None:
        """Most frequently blamed component among signals of the given types."""
        culprits = Counter(
            s.culprit for s in self.of_type(*types) if s.culprit and is_slug(s.culprit)
        )
        return culprits.most_common(1)[0][0] if culprits else None


def error_pattern(message: str) -> str:
    """Normalize an error message so equivalent errors compare equal."""
    pattern = re.sub(r"/[^\s:]+\.php", "FILE.php", message)
    pattern = re.sub(r"on line \d+", "on line N", pattern)
    pattern = re.sub(r"\d+", "N", pattern)
    return pattern[:200]
