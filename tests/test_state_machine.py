"""Unit tests for webhook processing stage guardrails."""

import pytest

from loyalty.common.state_machine import validate_transition


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("UNAUTHENTICATED", "VALIDATED")
    validate_transition("APPENDED", "RESPONDED")


def test_invalid_transition():
    """Skipping validation must raise so no unauthenticated body reaches the ledger."""

    with pytest.raises(ValueError):
        validate_transition("UNAUTHENTICATED", "APPENDED")


def test_responded_is_terminal():
    with pytest.raises(ValueError):
        validate_transition("RESPONDED", "VALIDATED")
