"""In-process metrics for tool execution.

Tracks latency, error kinds, latency-budget violations, policy denials,
loop detections, dedup hits, and registry load time. Process-local and
bounded: duration samples keep the most recent MAX_SAMPLES per tool.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field

MAX_SAMPLES = 1000


def _percentile(samples: list[float], pct: float) -> float:
    """Nearest-rank percentile. Empty input returns 0.0."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


@dataclass(frozen=True)
class ToolStats:
    tool_id: str
    executions: int
    p50_ms: float
    p95_ms: float
    errors: dict[str, int]
    budget_violations: int


@dataclass
class MetricsStore:
    durations: dict[str, deque[float]] = field(
        default_factory=lambda: defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
    )
    executions: Counter[str] = field(default_factory=Counter)
    errors: dict[str, Counter[str]] = field(default_factory=lambda: defaultdict(Counter))
    budget_violations: Counter[str] = field(default_factory=Counter)
    policy_denials: Counter[str] = field(default_factory=Counter)
    loop_detections: Counter[str] = field(default_factory=Counter)
    dedup_hits: Counter[str] = field(default_factory=Counter)
    registry_load_ms: float | None = None

    def record_tool_execution(self, tool_id: str, duration_ms: float) -> None:
        self.durations[tool_id].append(duration_ms)
        self.executions[tool_id] += 1

    def record_error(self, tool_id: str, kind: str) -> None:
        self.errors[tool_id][kind] += 1

    def record_budget_violation(self, tool_id: str) -> None:
        self.budget_violations[tool_id] += 1

    def record_policy_denial(self, kind: str) -> None:
        self.policy_denials[kind] += 1

    def record_loop_detected(self, kind: str) -> None:
        self.loop_detections[kind] += 1

    def record_dedup_hit(self, tool_id: str) -> None:
        self.dedup_hits[tool_id] += 1

    def record_registry_load_time(self, load_ms: float) -> None:
        self.registry_load_ms = load_ms

    def tool_stats(self, tool_id: str) -> ToolStats:
        samples = list(self.durations.get(tool_id, ()))
        return ToolStats(
            tool_id=tool_id,
            executions=self.executions[tool_id],
            p50_ms=_percentile(samples, 50),
            p95_ms=_percentile(samples, 95),
            errors=dict(self.errors.get(tool_id, {})),
            budget_violations=self.budget_violations[tool_id],
        )

    def summary(self) -> dict:
        """Snapshot suitable for a health/metrics endpoint."""
        return {
            "tools": {
                tool_id: self.tool_stats(tool_id).__dict__
                for tool_id in sorted(self.executions)
            },
            "policy_denials": dict(self.policy_denials),
            "loop_detections": dict(self.loop_detections),
            "dedup_hits": dict(self.dedup_hits),
            "registry_load_ms": self.registry_load_ms,
        }

    def reset(self) -> None:
        self.durations.clear()
        self.executions.clear()
        self.errors.clear()
        self.budget_violations.clear()
        self.policy_denials.clear()
        self.loop_detections.clear()
        self.dedup_hits.clear()
        self.registry_load_ms = None
