"""
Error taxonomy for the job market pipeline.

Parse failures are not exceptions: field parsers return None and the record
is kept. Only conditions that make a run untrustworthy are raised.
"""

from typing import Optional


class JobMarketError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(JobMarketError):
    """Invalid or inconsistent configuration."""


class VocabularyMismatchError(JobMarketError):
    """Documents were embedded against a vocabulary fit on another corpus."""

    def __init__(self, expected: Optional[str], actual: Optional[str]):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vocabulary was fit on corpus {expected or '<unfitted>'} "
            f"but transform was requested for corpus {actual or '<unknown>'}; refit required"
        )


class StageTimeoutError(JobMarketError):
    """A stage exceeded its wall-clock budget."""

    def __init__(self, stage: str, budget_seconds: float):
        self.stage = stage
        self.budget_seconds = budget_seconds
        super().__init__(f"Stage '{stage}' exceeded its budget of {budget_seconds:.1f}s")


class CheckpointError(JobMarketError):
    """A checkpoint artifact could not be read or written."""


class StoreError(JobMarketError):
    """Persisting a batch failed and the transaction was rolled back."""


class InputError(JobMarketError):
    """An input batch could not be read or has an unsupported format."""
