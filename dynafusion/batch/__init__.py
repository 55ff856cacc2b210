"""
Grouped, flat-parallel and streaming execution of many access requests.
"""

from .models import (
    BatchChunk,
    BatchExecutionOptions,
    BatchExecutionResult,
    BatchExecutionSummary,
    BatchUnit,
    ParallelExecutionResult,
)
from .orchestrator import BatchOrchestrator

__all__ = [
    "BatchChunk",
    "BatchExecutionOptions",
    "BatchExecutionResult",
    "BatchExecutionSummary",
    "BatchOrchestrator",
    "BatchUnit",
    "ParallelExecutionResult",
]
