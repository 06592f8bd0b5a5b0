"""Tests for retry_with_backoff and backoff_delay."""
from __future__ import annotations

import pytest

from reelfeed.errors import TransientIOError, ValidationError
from reelfeed.utils.retry import backoff_delay, retry_with_backoff


class TestBackoffDelay:
    @pytest.mark.parametrize("attempt,expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
    def test_powers_of_base(self, attempt, expected):
        assert backoff_delay(attempt) == expected

    def test_capped(self):
        assert backoff_delay(10, base=2.0, max_delay=60.0) == 60.0


class TestRetryWithBackoff:
    def test_succeeds_after_transient_failures(self):
        sleeps = []
        calls = []

        @retry_with_backoff(max_retries=3, base_delay=1.0, sleep=sleeps.append)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientIOError("try again")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_reraises_after_last_attempt(self):
        sleeps = []

        @retry_with_backoff(max_retries=2, base_delay=1.0, sleep=sleeps.append)
        def always_fails():
            raise TransientIOError("down")

        with pytest.raises(TransientIOError):
            always_fails()
        assert sleeps == [1.0]

    def test_does_not_retry_other_errors(self):
        sleeps = []
        calls = []

        @retry_with_backoff(max_retries=3, sleep=sleeps.append)
        def invalid():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            invalid()
        assert len(calls) == 1
        assert sleeps == []

    def test_max_delay(self):
        sleeps = []

        @retry_with_backoff(max_retries=4, base_delay=5.0, max_delay=8.0, sleep=sleeps.append)
        def always_fails():
            raise TransientIOError("down")

        with pytest.raises(TransientIOError):
            always_fails()
        assert sleeps == [5.0, 8.0, 8.0]

    def test_preserves_function_name(self):
        @retry_with_backoff()
        def fetch_thing():
            return 1

        assert fetch_thing.__name__ == "fetch_thing"
