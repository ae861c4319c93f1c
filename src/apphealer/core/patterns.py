"""Pattern store: learns which remediations work for which diagnoses.

A pattern is keyed by (diagnosis type, error type, culprit). After each
healing attempt its counters are updated and auto-approval re-evaluated in
one transaction per signature.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING

from loguru import logger

from apphealer.core.log_analysis import error_pattern
from apphealer.models import Diagnosis, HealingPattern, PatternsConfig

if TYPE_CHECKING:
    from apphealer.db import Database


class PatternStore:
    """Durable success/failure statistics per diagnosis signature."""

    def __init__(self, db: Database, config: PatternsConfig | None = None):
        self.db = db
        self.config = config or PatternsConfig()
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, signature: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[signature]

    def lookup(self, signature: str) -> HealingPattern | None:
        """Read a pattern. Never mutates state."""
        return self.db.get_pattern_by_signature(signature)

    def meets_threshold(self, pattern: HealingPattern) -> bool:
        return (
            pattern.success_count >= self.config.min_success_count
            and pattern.confidence >= self.config.min_confidence
        )

    def _evaluate_approval(self, pattern: HealingPattern, success: bool) -> bool:
        """Decide auto-approval after the counters changed."""
        if pattern.approval_locked:
            return False
        if not pattern.auto_approved:
            return self.meets_threshold(pattern)
        if not success and self.config.revoke_on_failure:
            return False
        # Once approved, only a confidence drop revokes
        return pattern.confidence >= self.config.min_confidence

    def record_outcome(
        self,
        diagnosis: Diagnosis,
        commands: list[str],
        success: bool,
    ) -> HealingPattern:
        """Count one healing outcome for the diagnosis signature."""
        signature = diagnosis.signature
        now = datetime.now()
        message = diagnosis.evidence[0] if diagnosis.evidence else None

        def mutate(current: HealingPattern | None) -> HealingPattern:
            pattern = current or HealingPattern(
                signature=signature,
                diagnosis_type=diagnosis.diagnosis_type,
                error_type=diagnosis.error_type,
                culprit=diagnosis.culprit,
                created_at=now,
            )
            was_approved = pattern.auto_approved

            if success:
                pattern.success_count += 1
                pattern.last_success_at = now
            else:
                pattern.failure_count += 1
                pattern.last_failure_at = now
            pattern.last_used_at = now
            if commands:
                pattern.commands = list(commands)
            if message:
                pattern.error_pattern = error_pattern(message)

            pattern.auto_approved = self._evaluate_approval(pattern, success)
            if pattern.auto_approved and not was_approved:
                logger.info(
                    f"Pattern {signature} auto-approved after "
                    f"{pattern.success_count}/{pattern.total_count} successes"
                )
            elif was_approved and not pattern.auto_approved:
                logger.warning(
                    f"Pattern {signature} lost auto-approval "
                    f"(confidence {pattern.confidence:.0%})"
                )
            return pattern

        with self._lock_for(signature):
            pattern = self.db.modify_pattern(signature, mutate)

        logger.debug(
            f"Recorded {'success' if success else 'failure'} for {signature}: "
            f"{pattern.success_count}/{pattern.total_count}"
        )
        return pattern

    def list_patterns(self) -> list[HealingPattern]:
        """All patterns, most reliable first."""
        return self.db.list_patterns()

    def set_pattern_approval(self, pattern_id: int, approved: bool) -> HealingPattern | None:
        """Operator override of a pattern's auto-approval.

        Revoking pins the pattern so learning will not re-approve it;
        approving again clears the pin.
        """
        pattern = self.db.get_pattern(pattern_id)
        if pattern is None:
            return None

        with self._lock_for(pattern.signature):
            self.db.set_pattern_approval(pattern_id, approved, locked=not approved)

        logger.info(f"Pattern {pattern.signature} {'approved' if approved else 'revoked'} by operator")
        return self.db.get_pattern(pattern_id)

    def delete_pattern(self, pattern_id: int) -> bool:
        deleted = self.db.delete_pattern(pattern_id)
        if deleted:
            logger.info(f"Deleted pattern {pattern_id}")
        return deleted

    def reasoning(self, pattern: HealingPattern | None) -> str:
        """Explain a pattern's auto-approval state."""
        if pattern is None or pattern.total_count == 0:
            return "New pattern - not yet tested"

        rate = f"{pattern.confidence:.0%}"
        history = f"worked {pattern.success_count}/{pattern.total_count} times"
        if pattern.auto_approved:
            return f"Auto-approved: {history} ({rate} success rate)"
        if pattern.approval_locked:
            return f"Revoked by operator: {history} ({rate} success rate)"
        if pattern.confidence < self.config.min_confidence and pattern.failure_count > 0:
            return f"Unreliable: {history} ({rate} success rate)"

        needed = max(0, self.config.min_success_count - pattern.success_count)
        return (
            f"Learning: {history}, {needed} more successes needed for auto-approval"
        )
