"""Recovery from an exhausted context window."""

from __future__ import annotations

import logging

from .state import ExecutorState

LOGGER = logging.getLogger("stateful executor.window")


class ContextWindowManager:
    """Truncates ``n_past`` and re-queues part of the recent window.

    The first ``tokens_to_keep`` positions survive; roughly half of the
    discarded span is taken back from the recent-token ring and prepended to
    the pending tokens so the engine re-derives it. Session caching is turned
    off for good because cached positions no longer line up. The kept prefix
    and the re-queued span are trimmed so the result fits the window whenever
    the pending batch is shorter than the window.
    """

    def __init__(self, context_size: int) -> None:
        if context_size <= 0:
            raise ValueError("ContextWindowManager.context_size must be positive.")
        self.context_size = int(context_size)

    def is_exhausted(self, state: ExecutorState) -> bool:
        return state.past_tokens_count + len(state.pending_tokens) > self.context_size

    def handle_run_out_of_context(self, state: ExecutorState, tokens_to_keep: int) -> int:
        """Apply the recovery in place and return the number of re-queued tokens."""

        past = state.past_tokens_count
        pending_count = len(state.pending_tokens)
        # The kept prefix must leave room for the pending batch.
        keep = max(0, min(int(tokens_to_keep), past, self.context_size - pending_count))
        n_left = past - keep
        state.past_tokens_count = max(1, keep)

        recent = state.recent_tokens.to_list()
        take = max(0, len(recent) - pending_count)
        skip = self.context_size - n_left // 2 - pending_count
        skip = min(max(0, skip), take)
        requeued = recent[skip:take]
        room = max(0, self.context_size - state.past_tokens_count - pending_count)
        if len(requeued) > room:
            requeued = requeued[len(requeued) - room :]
        state.pending_tokens[0:0] = requeued

        state.session_file_path = ""
        state.session_invalidated = True
        LOGGER.info(
            "context_exhausted | n_past=%d | keep=%d | n_left=%d | requeued=%d | session_caching=disabled",
            past,
            keep,
            n_left,
            len(requeued),
        )
        return len(requeued)


__all__ = ["ContextWindowManager"]
