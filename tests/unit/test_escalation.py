"""Tests for the retry/escalation policy."""
import pytest

from cardflow.escalation import EscalationDecision, escalate


class TestEscalate:

    @pytest.mark.parametrize(
        "attempts,max_attempts,has_failed,expected",
        [
            (1, 3, True, EscalationDecision.RETRY),
            (2, 3, True, EscalationDecision.RETRY),
            (3, 3, True, EscalationDecision.ESCALATE),
            (7, 3, True, EscalationDecision.ESCALATE),
            (1, 1, True, EscalationDecision.ESCALATE),
            (3, 3, False, EscalationDecision.RETRY),
            (100, 3, False, EscalationDecision.RETRY),
        ],
    )
    def test_decision_table(self, attempts, max_attempts, has_failed, expected):
        assert escalate(attempts, max_attempts, has_failed) is expected

    def test_without_failed_column_never_escalates(self):
        """Retry is unbounded when no failed column exists."""
        for max_attempts in range(1, 6):
            for attempts in range(0, 20):
                assert escalate(attempts, max_attempts, False) is EscalationDecision.RETRY

    def test_escalates_exactly_at_threshold(self):
        for max_attempts in range(1, 6):
            decisions = [escalate(a, max_attempts, True) for a in range(1, max_attempts + 3)]
            first = decisions.index(EscalationDecision.ESCALATE) + 1
            assert first == max_attempts
