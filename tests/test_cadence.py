"""Tests for cadence parsing and due-time decisions."""

from datetime import UTC, datetime, timedelta

import pytest

from purgecert.services.cadence import InvalidCadenceError, due_at, parse_cadence

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


class TestParseCadence:
    """Tests for parse_cadence."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("@hourly", timedelta(hours=1)),
            ("@daily", timedelta(days=1)),
            ("@weekly", timedelta(weeks=1)),
            ("@monthly", timedelta(days=30)),
            ("every 15m", timedelta(minutes=15)),
            ("every 6h", timedelta(hours=6)),
            ("every 3d", timedelta(days=3)),
            ("every 2w", timedelta(weeks=2)),
            ("  Every 6H ", timedelta(hours=6)),
        ],
    )
    def test_supported_expressions(self, expression, expected):
        assert parse_cadence(expression) == expected

    @pytest.mark.parametrize("expression", ["", "daily", "@yearly", "every 6", "every -1h", "*/5"])
    def test_unrecognized_expressions(self, expression):
        with pytest.raises(InvalidCadenceError):
            parse_cadence(expression)

    def test_zero_interval_rejected(self):
        with pytest.raises(InvalidCadenceError, match="positive"):
            parse_cadence("every 0m")

    def test_is_a_value_error(self):
        """Test callers catching ValueError also catch cadence errors."""
        with pytest.raises(ValueError):
            parse_cadence("sometimes")


class TestDueAt:
    """Tests for due_at."""

    def test_never_ran_is_due_now(self):
        decision = due_at("@daily", None, NOW)
        assert decision.is_due
        assert decision.next_due_at == NOW

    def test_due_after_full_interval(self):
        decision = due_at("@daily", NOW - timedelta(days=1), NOW)
        assert decision.is_due
        assert decision.next_due_at == NOW

    def test_not_due_within_interval(self):
        decision = due_at("@daily", NOW - timedelta(hours=3), NOW)
        assert not decision.is_due
        assert decision.next_due_at == NOW + timedelta(hours=21)

    def test_invalid_cadence_propagates(self):
        with pytest.raises(InvalidCadenceError):
            due_at("whenever", NOW, NOW)
