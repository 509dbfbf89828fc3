# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Tests for polling module
"""

from unittest.mock import MagicMock

import pytest

from ps_deploy.polling import attempts_for, poll_until


class TestPollUntil:
    """Test the bounded poll helper"""

    def test_satisfied_first_attempt(self, no_sleep):
        """Test no sleep when the first check succeeds"""
        outcome = poll_until(lambda: (True, "ready"), interval=5, max_attempts=3)

        assert outcome.satisfied is True
        assert outcome.value == "ready"
        assert outcome.attempts == 1
        no_sleep.assert_not_called()

    def test_satisfied_after_retries(self, no_sleep):
        """Test sleeping between attempts until done"""
        check = MagicMock(side_effect=[(False, "a"), (False, "b"), (True, "c")])

        outcome = poll_until(check, interval=5, max_attempts=10)

        assert outcome.satisfied is True
        assert outcome.value == "c"
        assert outcome.attempts == 3
        assert no_sleep.call_count == 2
        no_sleep.assert_called_with(5)

    def test_exhausted_keeps_last_value(self, no_sleep):
        """Test exhaustion returns the last observed value without raising"""
        check = MagicMock(side_effect=[(False, 1), (False, 2), (False, 3)])

        outcome = poll_until(check, interval=2, max_attempts=3)

        assert outcome.satisfied is False
        assert outcome.value == 3
        assert outcome.attempts == 3
        # No sleep after the final attempt
        assert no_sleep.call_count == 2

    def test_retry_on_treats_error_as_not_done(self, no_sleep):
        """Test listed exceptions count as a failed attempt"""
        check = MagicMock(side_effect=[KeyError("missing"), (True, "ok")])

        outcome = poll_until(check, interval=1, max_attempts=3, retry_on=(KeyError,))

        assert outcome.satisfied is True
        assert outcome.attempts == 2

    def test_unlisted_errors_propagate(self, no_sleep):
        """Test other exceptions are raised to the caller"""
        check = MagicMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            poll_until(check, interval=1, max_attempts=3, retry_on=(KeyError,))

    def test_on_attempt_called_each_attempt(self, no_sleep):
        """Test the callback sees every attempt number and value"""
        seen = []
        check = MagicMock(side_effect=[(False, "x"), (True, "y")])

        poll_until(
            check,
            interval=1,
            max_attempts=5,
            on_attempt=lambda attempt, value: seen.append((attempt, value)),
        )

        assert seen == [(1, "x"), (2, "y")]

    def test_on_attempt_can_abort(self, no_sleep):
        """Test an exception from the callback stops polling"""

        def abort(attempt, value):
            raise InterruptedError("stop")

        check = MagicMock(return_value=(False, None))

        with pytest.raises(InterruptedError):
            poll_until(check, interval=1, max_attempts=5, on_attempt=abort)
        assert check.call_count == 1

    def test_rejects_zero_attempts(self):
        """Test max_attempts must be positive"""
        with pytest.raises(ValueError):
            poll_until(lambda: (True, None), interval=1, max_attempts=0)


class TestAttemptsFor:
    """Test timeout to attempt conversion"""

    def test_default_stack_timeout(self):
        """Test 1800s at 15s gives 121 attempts"""
        assert attempts_for(1800, 15) == 121

    def test_short_timeout_still_polls_once(self):
        """Test a timeout below one interval still checks once"""
        assert attempts_for(5, 15) == 1

    def test_rejects_non_positive_interval(self):
        """Test interval must be positive"""
        with pytest.raises(ValueError):
            attempts_for(10, 0)
