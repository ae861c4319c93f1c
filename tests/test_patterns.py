"""Tests for pattern learning and auto-approval."""

import threading

import pytest

from apphealer.core.patterns import PatternStore
from apphealer.models import Diagnosis, DiagnosisType, PatternsConfig, RiskLevel

COMMANDS = ["wp plugin deactivate akismet"]


def plugin_diagnosis(culprit: str = "akismet") -> Diagnosis:
    return Diagnosis(
        diagnosis_type=DiagnosisType.WSOD,
        confidence=0.95,
        error_type="PLUGIN_FAULT",
        culprit=culprit,
        suggested_commands=[f"wp plugin deactivate {culprit}"],
        risk_level=RiskLevel.MEDIUM,
        evidence=[f"PHP Fatal error: x in /srv/wp-content/plugins/{culprit}/a.php on line 7"],
    )


@pytest.fixture
def store(temp_db):
    return PatternStore(temp_db, PatternsConfig())


class TestLearning:
    """Tests for counters and auto-approval thresholds."""

    def test_first_outcome_creates_pattern(self, store):
        pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)

        assert pattern.id is not None
        assert pattern.signature == "wsod:PLUGIN_FAULT:akismet"
        assert pattern.success_count == 1
        assert pattern.failure_count == 0
        assert pattern.commands == COMMANDS
        assert pattern.error_pattern == "PHP Fatal error: x in FILE.php on line N"
        assert not pattern.auto_approved

    def test_auto_approved_after_three_successes(self, store):
        """Successes 3, failures 0 means confidence 1.0 and approval."""
        diagnosis = plugin_diagnosis()
        store.record_outcome(diagnosis, COMMANDS, success=True)
        store.record_outcome(diagnosis, COMMANDS, success=True)
        assert not store.lookup(diagnosis.signature).auto_approved

        pattern = store.record_outcome(diagnosis, COMMANDS, success=True)
        assert pattern.confidence == 1.0
        assert pattern.auto_approved
        assert store.lookup(diagnosis.signature).auto_approved

    def test_low_confidence_not_approved(self, store):
        diagnosis = plugin_diagnosis()
        store.record_outcome(diagnosis, COMMANDS, success=False)
        for _ in range(3):
            pattern = store.record_outcome(diagnosis, COMMANDS, success=True)

        assert pattern.confidence == 0.75
        assert not pattern.auto_approved

    def test_failure_revokes_only_below_threshold(self, store):
        diagnosis = plugin_diagnosis()
        for _ in range(9):
            store.record_outcome(diagnosis, COMMANDS, success=True)

        pattern = store.record_outcome(diagnosis, COMMANDS, success=False)
        assert pattern.confidence == 0.9
        assert pattern.auto_approved

        pattern = store.record_outcome(diagnosis, COMMANDS, success=False)
        assert pattern.confidence < 0.9
        assert not pattern.auto_approved

    def test_revoke_on_failure(self, temp_db):
        store = PatternStore(temp_db, PatternsConfig(revoke_on_failure=True))
        diagnosis = plugin_diagnosis()
        for _ in range(10):
            store.record_outcome(diagnosis, COMMANDS, success=True)

        pattern = store.record_outcome(diagnosis, COMMANDS, success=False)
        assert not pattern.auto_approved

    def test_signatures_are_independent(self, store):
        for _ in range(3):
            store.record_outcome(plugin_diagnosis("akismet"), COMMANDS, success=True)
        store.record_outcome(plugin_diagnosis("jetpack"), COMMANDS, success=True)

        assert store.lookup("wsod:PLUGIN_FAULT:akismet").auto_approved
        assert not store.lookup("wsod:PLUGIN_FAULT:jetpack").auto_approved

    def test_empty_commands_keep_previous(self, store):
        diagnosis = plugin_diagnosis()
        store.record_outcome(diagnosis, COMMANDS, success=True)
        pattern = store.record_outcome(diagnosis, [], success=True)

        assert pattern.commands == COMMANDS

    def test_survives_new_store(self, store, temp_db):
        for _ in range(3):
            store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)

        reopened = PatternStore(temp_db)
        pattern = reopened.lookup("wsod:PLUGIN_FAULT:akismet")
        assert pattern.success_count == 3
        assert pattern.auto_approved
        assert pattern.last_success_at is not None


class TestOperatorOverride:
    """Tests for manual approval and revocation."""

    def test_revoke_pins_pattern(self, store):
        diagnosis = plugin_diagnosis()
        pattern = None
        for _ in range(3):
            pattern = store.record_outcome(diagnosis, COMMANDS, success=True)

        revoked = store.set_pattern_approval(pattern.id, approved=False)
        assert not revoked.auto_approved
        assert revoked.approval_locked

        pattern = store.record_outcome(diagnosis, COMMANDS, success=True)
        assert not pattern.auto_approved
        assert "Revoked by operator" in store.reasoning(pattern)

    def test_approve_clears_pin(self, store):
        pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)
        store.set_pattern_approval(pattern.id, approved=False)

        approved = store.set_pattern_approval(pattern.id, approved=True)
        assert approved.auto_approved
        assert not approved.approval_locked

    def test_unknown_pattern(self, store):
        assert store.set_pattern_approval(999, approved=True) is None
        assert store.delete_pattern(999) is False

    def test_delete(self, store):
        pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)

        assert store.delete_pattern(pattern.id)
        assert store.lookup(pattern.signature) is None


class TestReasoning:
    """Tests for the human-readable approval explanation."""

    def test_new(self, store):
        assert store.reasoning(None) == "New pattern - not yet tested"

    def test_learning(self, store):
        pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)
        assert store.reasoning(pattern) == (
            "Learning: worked 1/1 times, 2 more successes needed for auto-approval"
        )

    def test_approved(self, store):
        for _ in range(3):
            pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)
        assert store.reasoning(pattern) == "Auto-approved: worked 3/3 times (100% success rate)"

    def test_unreliable(self, store):
        store.record_outcome(plugin_diagnosis(), COMMANDS, success=True)
        pattern = store.record_outcome(plugin_diagnosis(), COMMANDS, success=False)
        assert store.reasoning(pattern).startswith("Unreliable: worked 1/2 times")


class TestListing:
    """Tests for pattern ordering."""

    def test_most_reliable_first(self, store):
        store.record_outcome(plugin_diagnosis("weak"), COMMANDS, success=True)
        store.record_outcome(plugin_diagnosis("weak"), COMMANDS, success=False)
        for _ in range(2):
            store.record_outcome(plugin_diagnosis("strong"), COMMANDS, success=True)
        store.record_outcome(plugin_diagnosis("single"), COMMANDS, success=True)

        culprits = [p.culprit for p in store.list_patterns()]
        assert culprits == ["strong", "single", "weak"]


class TestConcurrency:
    """Concurrent outcomes for one signature must not lose updates."""

    def test_parallel_record_outcome(self, temp_db):
        diagnosis = plugin_diagnosis()
        errors = []

        def worker(success: bool):
            # Each thread gets its own store, so only the database serializes them
            store = PatternStore(temp_db)
            try:
                for _ in range(5):
                    store.record_outcome(diagnosis, COMMANDS, success=success)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i % 4 != 0,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        pattern = PatternStore(temp_db).lookup(diagnosis.signature)
        assert pattern.total_count == 40
        assert pattern.success_count == 30
        assert pattern.failure_count == 10
