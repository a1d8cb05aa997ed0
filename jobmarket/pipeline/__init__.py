"""
Corpus-level stages and run machinery.

Embedding, clustering and keyword tagging, plus checkpoints, stores and
the orchestrator that chains them.
"""

from .orchestrator import JobMarketPipeline
from .checkpoint import CheckpointManager
from .store import JsonFileStore, PostgresStore

__all__ = ['JobMarketPipeline', 'CheckpointManager', 'JsonFileStore', 'PostgresStore']
