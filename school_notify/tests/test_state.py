"""Tests for the notification status state machine."""

import pytest

from school_notify.errors import InvalidTransitionError
from school_notify.notifications.state import (
    TRANSITIONS,
    can_transition,
    check_transition,
    is_terminal,
    is_valid_path,
)


class TestTransitions:
    @pytest.mark.parametrize(
        "path",
        [
            ["pending", "sending", "sent", "delivered", "read"],
            ["scheduled", "queued", "sending", "sent"],
            ["pending", "sending", "failed", "queued", "sending", "sent", "read"],
            ["pending", "queued", "sending", "failed"],
        ],
    )
    def test_valid_paths(self, path):
        assert is_valid_path(path)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            ("sent", "pending"),
            ("read", "delivered"),
            ("delivered", "failed"),
            ("scheduled", "sent"),
            ("pending", "sent"),
        ],
    )
    def test_rejected_transitions(self, from_status, to_status):
        assert not can_transition(from_status, to_status)
        with pytest.raises(InvalidTransitionError):
            check_transition(from_status, to_status)

    def test_read_has_no_outgoing_transitions(self):
        assert all(not can_transition("read", target) for target in TRANSITIONS)


class TestIsTerminal:
    def test_read_is_terminal(self):
        assert is_terminal({"status": "read"})

    def test_failed_with_retries_left_is_not_terminal(self):
        assert not is_terminal({"status": "failed", "retryable": True, "retry_count": 2})

    def test_failed_after_max_retries_is_terminal(self):
        assert is_terminal({"status": "failed", "retryable": True, "retry_count": 3})

    def test_permanent_failure_is_terminal(self):
        assert is_terminal({"status": "failed", "retryable": False, "retry_count": 0})

    def test_delivered_is_not_terminal(self):
        assert not is_terminal({"status": "delivered"})
