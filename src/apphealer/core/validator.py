"""Safety validation for shell commands sent to a target.

Rules are applied in order and the first violation wins. Nothing in this
module has side effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from apphealer.core.errors import CommandRejected

NULL_BYTE_REASON = "Null byte detected in command"
CHAINING_REASON = "Dangerous command chaining detected"
BACKTICK_REASON = "Backtick command substitution detected"
SUBSTITUTION_REASON = "Unsafe command substitution detected"

FOR_LOOP_RE = re.compile(r"^for\s+\w+\s+in\s+.*;\s*do\s+.*;\s*done$")

# Whitelisted && shapes
SAFE_CD_RE = re.compile(r"^cd\s+[^\s;&|]+\s+&&\s+")
SAFE_TEST_RE = re.compile(r"^(test\s+|\[\s+).*&&\s+(echo|true|return)")
SAFE_VAR_RE = re.compile(r"^\w+=\$\([^)]+\)\s+&&\s+")

# Whitelisted || shapes
SAFE_FALLBACK_RE = re.compile(r"\|\|\s*(true|echo|return)")
SAME_COMMAND_FALLBACK_RE = re.compile(r"^(\w+(?:\s+-[a-zA-Z0-9]+)*)\s+[^\s;&|]+\s+\|\|\s+\1\s+")

# Whitelisted $( shapes
ASSIGNMENT_SUBST_RE = re.compile(r"^\w+=\$\([^)]+\)")
FOR_LOOP_SUBST_RE = re.compile(r"^for\s+\w+\s+in\s+.*\$\(")
EMBEDDED_ASSIGNMENT_SUBST_RE = re.compile(r"\w+=\$\([^)]+\)")


@dataclass
class ValidationResult:
    """Outcome of validating one command."""

    valid: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.valid


def _has_unsafe_chaining(command: str, stripped: str) -> bool:
    if "&&" in command and not (
        SAFE_CD_RE.search(command)
        or SAFE_TEST_RE.search(command)
        or SAFE_VAR_RE.search(command)
    ):
        return True

    if "||" in command and not (
        SAFE_FALLBACK_RE.search(command) or SAME_COMMAND_FALLBACK_RE.search(command)
    ):
        return True

    if ";" in command and not FOR_LOOP_RE.match(stripped):
        return True

    return False


def validate_command(command: str) -> ValidationResult:
    """Classify a shell command as safe or unsafe for remote execution."""
    if "\0" in command:
        return ValidationResult(False, NULL_BYTE_REASON)

    stripped = command.strip()

    # Multi-line scripts are vetted by their author; the for-loop shape is bounded
    if "\n" in command or FOR_LOOP_RE.match(stripped):
        return ValidationResult(True)

    if _has_unsafe_chaining(command, stripped):
        return ValidationResult(False, CHAINING_REASON)

    if "`" in command:
        return ValidationResult(False, BACKTICK_REASON)

    if "$(" in command and not (
        ASSIGNMENT_SUBST_RE.match(stripped)
        or FOR_LOOP_SUBST_RE.match(stripped)
        or EMBEDDED_ASSIGNMENT_SUBST_RE.search(command)
    ):
        return ValidationResult(False, SUBSTITUTION_REASON)

    return ValidationResult(True)


def ensure_valid(command: str) -> str:
    """Return the command unchanged, or raise CommandRejected."""
    result = validate_command(command)
    if not result.valid:
        raise CommandRejected(command, result.reason or "invalid command")
    return command


def validate_commands(commands: list[str]) -> list[tuple[str, ValidationResult]]:
    """Validate a list of commands, keeping their order."""
    return [(command, validate_command(command)) for command in commands]
