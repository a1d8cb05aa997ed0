"""
Per-stage wall-clock budgets.
"""

import time
import logging
from typing import Optional

from ..errors import StageTimeoutError

logger = logging.getLogger(__name__)


class StageDeadline:
    """Deadline for one stage; a None budget never expires."""

    def __init__(self, stage: str, budget_seconds: Optional[float] = None):
        """
        Args:
            stage: Stage name reported on timeout
            budget_seconds: Wall-clock budget, or None/0 for unlimited
        """
        self.stage = stage
        self.budget_seconds = budget_seconds or None
        self.started = time.monotonic()

    @property
    def limited(self) -> bool:
        return self.budget_seconds is not None

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unlimited."""
        if self.budget_seconds is None:
            return None
        return max(0.0, self.started + self.budget_seconds - time.monotonic())

    def expired(self) -> bool:
        return self.budget_seconds is not None and self.remaining() <= 0.0

    def check(self) -> None:
        """Raise StageTimeoutError once the budget is spent."""
        if self.expired():
            raise StageTimeoutError(self.stage, self.budget_seconds)
