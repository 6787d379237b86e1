"""Memory module: session-scoped tool call ledger, similarity dedup, and summaries."""

from src.memory.dedup import DedupHit, ToolMemoryDedup
from src.memory.similarity import args_similarity
from src.memory.summarizer import ToolMemorySummarizer
from src.memory.tool_memory import (
    TimeRange,
    ToolCallRecord,
    ToolCallSummary,
    ToolMemoryStore,
)

__all__ = [
    "DedupHit",
    "TimeRange",
    "ToolCallRecord",
    "ToolCallSummary",
    "ToolMemoryDedup",
    "ToolMemoryStore",
    "ToolMemorySummarizer",
    "args_similarity",
]
