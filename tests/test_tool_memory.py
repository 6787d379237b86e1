"""Tests for ToolMemoryStore.

Covers:
- window: 10 full responses, next 40 summary-only once summarized, rest dropped
- age limit: records older than max_age_s are dropped
- query: newest first, tool filter, error filter, time ranges
- get_full_response / get_record after aging
- find_similar: threshold, tool match, failures skipped, newest wins
- session isolation and clearing
"""

from __future__ import annotations

import pytest

from src.config.settings import ToolMemorySettings
from src.infra.errors import ErrorKind
from src.memory.tool_memory import TimeRange, ToolCallRecord, ToolMemoryStore
from src.session.handle import SessionHandle
from src.tools.response import ToolResponse


class FakeClock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock) -> ToolMemoryStore:
    return ToolMemoryStore(ToolMemorySettings(), clock=clock)


def _record(
    clock: FakeClock,
    n: int,
    *,
    tool_id: str = "search_docs",
    args: dict | None = None,
    turn: int = 1,
    ok: bool = True,
) -> ToolCallRecord:
    clock.now += 1
    response = (
        ToolResponse.success({"results": [n]})
        if ok
        else ToolResponse.failure(ErrorKind.TRANSIENT, "timeout")
    )
    return ToolCallRecord.from_response(
        call_id=f"call_{n}",
        tool_id=tool_id,
        arguments=args if args is not None else {"query": f"query {n}"},
        turn=turn,
        response=response,
        timestamp=clock.now,
    )


# ---------------------------------------------------------------------------
# Window policy
# ---------------------------------------------------------------------------


class TestWindow:
    def test_sixty_calls(self, store, clock, session):
        for n in range(60):
            store.record(session, _record(clock, n))

        # Ranks beyond recent + summary are gone immediately.
        assert len(store.query(session)) == 50
        assert store.get_record(session, "call_9") is None

        pending = store.calls_needing_summary(session)
        assert len(pending) == 40
        for call in pending:
            assert store.update_summary(session, call.call_id, f"summary of {call.call_id}")

        rows = store.query(session)
        full = [r for r in rows if r.full_response_available]
        summary_only = [r for r in rows if not r.full_response_available]
        assert [r.call_id for r in full] == [f"call_{n}" for n in range(59, 49, -1)]
        assert len(summary_only) == 40
        assert all(r.summary for r in summary_only)
        assert store.calls_needing_summary(session) == []

    def test_full_response_kept_until_summarized(self, store, clock, session):
        for n in range(11):
            store.record(session, _record(clock, n))
        assert store.get_full_response(session, "call_0") is not None
        store.update_summary(session, "call_0", "older call")
        assert store.get_full_response(session, "call_0") is None
        assert store.get_record(session, "call_0").summary == "older call"

    def test_recent_calls_keep_full_response_when_summarized(self, store, clock, session):
        store.record(session, _record(clock, 0))
        store.update_summary(session, "call_0", "early summary")
        assert store.get_full_response(session, "call_0") is not None

    def test_old_records_dropped_by_age(self, store, clock, session):
        store.record(session, _record(clock, 0))
        clock.now += 3_601
        store.record(session, _record(clock, 1))
        assert store.get_record(session, "call_0") is None
        assert store.get_record(session, "call_1") is not None

    def test_equal_timestamps_keep_newest_first(self, store, session):
        response = ToolResponse.success({"ok": True})
        for n in range(3):
            store.record(
                session,
                ToolCallRecord.from_response(
                    call_id=f"call_{n}",
                    tool_id="format_date",
                    arguments={},
                    turn=1,
                    response=response,
                    timestamp=10_000.0,
                ),
            )
        assert [r.call_id for r in store.query(session)] == ["call_2", "call_1", "call_0"]

    def test_update_unknown_call(self, store, session):
        assert store.update_summary(session, "call_missing", "x") is False


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class TestQuery:
    def test_filters(self, store, clock, session):
        store.record(session, _record(clock, 0, tool_id="search_docs"))
        store.record(session, _record(clock, 1, tool_id="lookup_order", args={"order_id": "7"}))
        store.record(session, _record(clock, 2, tool_id="search_docs", ok=False))

        assert [r.call_id for r in store.query(session)] == ["call_1", "call_0"]
        assert [r.call_id for r in store.query(session, include_errors=True)] == [
            "call_2", "call_1", "call_0",
        ]
        assert [r.call_id for r in store.query(session, tool_id="lookup_order")] == ["call_1"]
        failed = store.query(session, tool_id="search_docs", include_errors=True)[0]
        assert failed.ok is False
        assert failed.error_kind == "TRANSIENT"

    def test_time_ranges(self, store, clock, session):
        for turn in range(1, 6):
            store.record(session, _record(clock, turn, turn=turn))
        assert store.current_turn(session) == 5
        assert [r.turn for r in store.query(session, time_range=TimeRange.last_turn)] == [5]
        assert [r.turn for r in store.query(session, time_range="last_3_turns")] == [5, 4, 3]
        assert len(store.query(session, time_range=TimeRange.all)) == 5

    def test_unknown_session(self, store):
        ghost = SessionHandle("sess_ghost")
        assert store.query(ghost) == []
        assert store.get_full_response(ghost, "call_0") is None
        assert store.current_turn(ghost) == 1

    def test_summary_row_to_dict(self, store, clock, session):
        store.record(session, _record(clock, 0))
        row = store.query(session)[0].to_dict()
        assert row["call_id"] == "call_0"
        assert row["full_response_available"] is True
        assert row["arguments"] == {"query": "query 0"}


# ---------------------------------------------------------------------------
# Similarity lookup
# ---------------------------------------------------------------------------


class TestFindSimilar:
    def test_exact_match(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "refund policy"}))
        found = store.find_similar(session, "search_docs", {"query": "refund policy"})
        assert found is not None
        assert found.call_id == "call_0"

    def test_reordered_words_match(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "weather in Paris"}))
        assert store.find_similar(session, "search_docs", {"query": "Paris weather, in"})

    def test_below_threshold(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "weather in paris"}))
        # 3 shared tokens of 4 = 0.75
        assert store.find_similar(session, "search_docs", {"query": "weather in paris today"}) is None
        assert store.find_similar(
            session, "search_docs", {"query": "weather in paris today"}, threshold=0.7
        )

    def test_other_tool_ignored(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "x"}))
        assert store.find_similar(session, "lookup_order", {"query": "x"}) is None

    def test_failures_ignored(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "x"}, ok=False))
        assert store.find_similar(session, "search_docs", {"query": "x"}) is None

    def test_newest_wins(self, store, clock, session):
        store.record(session, _record(clock, 0, args={"query": "x"}))
        store.record(session, _record(clock, 1, args={"query": "x"}))
        assert store.find_similar(session, "search_docs", {"query": "x"}).call_id == "call_1"


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    def test_sessions_do_not_share_records(self, store, clock, session):
        other = SessionHandle("sess_other")
        store.record(session, _record(clock, 0))
        assert store.query(other) == []
        assert store.get_record(other, "call_0") is None

    def test_clear_session(self, store, clock, session):
        store.record(session, _record(clock, 0))
        store.clear_session(session)
        assert store.query(session) == []
        assert store.stats()["total_sessions"] == 0

    def test_stats(self, store, clock, session):
        for n in range(12):
            store.record(session, _record(clock, n))
        store.update_summary(session, "call_0", "s")
        stats = store.stats()["sessions"][0]
        assert stats["session_id"] == "sess_test"
        assert stats["total_calls"] == 12
        assert stats["calls_with_full_response"] == 11
        assert stats["calls_with_summary"] == 1
