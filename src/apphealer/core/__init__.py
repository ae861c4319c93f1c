"""AppHealer core components."""

from apphealer.core.checks import CheckRunner, DiagnosticCheck
from apphealer.core.classifier import DiagnosisClassifier, DiagnosisRule
from apphealer.core.executor import LocalExecutor, RemoteExecutor
from apphealer.core.healing import HealingExecutor
from apphealer.core.orchestrator import Healer
from apphealer.core.patterns import PatternStore
from apphealer.core.validator import validate_command

__all__ = [
    "CheckRunner",
    "DiagnosisClassifier",
    "DiagnosisRule",
    "DiagnosticCheck",
    "Healer",
    "HealingExecutor",
    "LocalExecutor",
    "PatternStore",
    "RemoteExecutor",
    "validate_command",
]
