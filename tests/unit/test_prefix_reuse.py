"""Tests for reusing the session cache prefix."""

from __future__ import annotations

from stateful_executor.inference.prefix import PrefixReuseMatcher
from stateful_executor.inference.state import ExecutorState


def _state(session: list[int], pending: list[int]) -> ExecutorState:
    state = ExecutorState(context_size=32)
    state.session_file_path = "cache.session"
    state.session_tokens = list(session)
    state.pending_tokens = list(pending)
    state.queued_input_tokens = list(pending)
    return state


def test_mismatch_truncates_session_at_divergence() -> None:
    state = _state([1, 2, 3, 4, 5], [1, 2, 9, 4, 5, 6])

    reused = PrefixReuseMatcher().try_reuse_matching_prefix(state)

    assert reused == 2
    assert state.session_tokens == [1, 2]
    assert state.session_consumed_count == 2
    assert state.past_tokens_count == 2
    assert state.pending_tokens == [9, 4, 5, 6]


def test_scan_stops_once_session_is_exhausted() -> None:
    state = _state([1, 2, 3], [1, 2, 3, 4, 5])

    reused = PrefixReuseMatcher().try_reuse_matching_prefix(state)

    assert reused == 3
    assert state.session_tokens == [1, 2, 3]
    assert state.pending_tokens == [4, 5]
    assert state.past_tokens_count == 3


def test_noop_when_session_already_consumed() -> None:
    state = _state([1, 2], [1, 2])
    state.session_consumed_count = 2

    assert PrefixReuseMatcher().try_reuse_matching_prefix(state) == 0
    assert state.pending_tokens == [1, 2]
    assert state.past_tokens_count == 0


def test_noop_after_window_recovery_invalidated_session() -> None:
    state = _state([1, 2], [1, 2])
    state.session_invalidated = True
    state.session_file_path = ""

    assert PrefixReuseMatcher().try_reuse_matching_prefix(state) == 0
    assert state.session_tokens == [1, 2]
