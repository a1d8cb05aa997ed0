"""
Unit tests for stage deadlines.
"""

from unittest.mock import patch

import pytest

from jobmarket.errors import StageTimeoutError
from jobmarket.pipeline.budget import StageDeadline


def test_unlimited_deadline_never_expires():
    deadline = StageDeadline("dedupe")
    assert not deadline.limited
    assert deadline.remaining() is None
    assert not deadline.expired()
    deadline.check()


def test_zero_budget_means_unlimited():
    assert not StageDeadline("dedupe", 0).limited


def test_deadline_expires():
    with patch("jobmarket.pipeline.budget.time.monotonic", return_value=100.0):
        deadline = StageDeadline("cluster", 2.0)
    with patch("jobmarket.pipeline.budget.time.monotonic", return_value=101.5):
        assert deadline.remaining() == pytest.approx(0.5)
        assert not deadline.expired()
    with patch("jobmarket.pipeline.budget.time.monotonic", return_value=103.0):
        assert deadline.remaining() == 0.0
        with pytest.raises(StageTimeoutError) as exc_info:
            deadline.check()
    assert exc_info.value.stage == "cluster"
    assert exc_info.value.budget_seconds == 2.0
