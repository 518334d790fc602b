"""Skip evaluation of pending tokens already covered by the session cache."""

from __future__ import annotations

import logging

from .state import ExecutorState

LOGGER = logging.getLogger("stateful executor.prefix")


class PrefixReuseMatcher:
    """Advances the session cursor while pending tokens match the cached ones."""

    @staticmethod
    def applies(state: ExecutorState) -> bool:
        if state.session_invalidated:
            return False
        return state.session_consumed_count < len(state.session_tokens)

    def try_reuse_matching_prefix(self, state: ExecutorState) -> int:
        """Drop matched tokens from ``pending_tokens`` and return how many were reused.

        On the first mismatch the session tokens are cut back to the cursor;
        they are never extended here.
        """

        if not self.applies(state):
            return 0
        reused = 0
        for token in state.pending_tokens:
            if token != state.session_tokens[state.session_consumed_count]:
                LOGGER.debug(
                    "session_diverged | position=%d | truncated_to=%d",
                    state.session_consumed_count,
                    state.session_consumed_count,
                )
                del state.session_tokens[state.session_consumed_count :]
                break
            state.past_tokens_count += 1
            state.session_consumed_count += 1
            reused += 1
            if state.session_consumed_count >= len(state.session_tokens):
                break
        if reused:
            del state.pending_tokens[:reused]
            LOGGER.debug("prefix_reused | n_tokens=%d | n_past=%d", reused, state.past_tokens_count)
        return reused


__all__ = ["PrefixReuseMatcher"]
