"""Per-flavour hooks driven by :class:`InferenceLoopController`.

A strategy decides how text enters the token queue, when the loop keeps
going and what happens after each step. The token bookkeeping shared by all
flavours lives in the module-level helpers below.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Protocol, Sequence, Tuple, runtime_checkable

from .config import GenerationParams
from .state import InferLoopState

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .controller import InferenceLoopController

LOGGER = logging.getLogger("stateful executor.strategies")

END_OF_TEXT = " [end of text]\n"
INSTRUCT_INPUT_MARKER = "\n> "


@runtime_checkable
class ExecutorStrategy(Protocol):
    """The four hooks an executor flavour provides."""

    def preprocess(
        self, executor: "InferenceLoopController", text: str, loop_state: InferLoopState
    ) -> None: ...

    def loop_condition(
        self, executor: "InferenceLoopController", loop_state: InferLoopState
    ) -> bool: ...

    def infer_internal(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> None: ...

    def post_process(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> Tuple[bool, List[str]]: ...


def evaluate_pending(executor: "InferenceLoopController", params: GenerationParams) -> None:
    """Send ``pending_tokens`` through the engine, recovering the window first."""

    state = executor.state
    if not state.pending_tokens:
        return
    state.is_prompt_run = False
    if executor.window.is_exhausted(state):
        executor.window.handle_run_out_of_context(state, params.tokens_to_keep)
    executor.prefix_matcher.try_reuse_matching_prefix(state)
    LOGGER.debug(
        "evaluate | n_tokens=%d | n_past=%d", len(state.pending_tokens), state.past_tokens_count
    )
    state.past_tokens_count = executor.engine.evaluate(
        state.pending_tokens, state.past_tokens_count
    )
    if state.pending_tokens and state.session_enabled:
        state.session_tokens.extend(state.pending_tokens)
        state.session_consumed_count = len(state.session_tokens)


def feed_queued_input(executor: "InferenceLoopController") -> None:
    """Move up to one batch of queued input tokens into ``pending_tokens``.

    A batch never exceeds half the context window, so window recovery always
    has room for it next to the kept prefix.
    """

    state = executor.state
    batch_size = min(executor.config.batch_size, max(1, state.context_size // 2))
    while state.has_pending_input:
        token = state.queued_input_tokens[state.consumed_tokens_count]
        state.pending_tokens.append(token)
        state.recent_tokens.append(token)
        state.consumed_tokens_count += 1
        if len(state.pending_tokens) >= batch_size:
            break


def sample_next(executor: "InferenceLoopController", loop_state: InferLoopState) -> int:
    """Persist the session if still owed, then sample and record one token."""

    state = executor.state
    if loop_state.need_to_save_session and state.session_enabled:
        loop_state.need_to_save_session = False
        executor.persist_session_file(state.session_file_path)
    token, state.mirostat_mu = executor.sampler.sample(
        executor.engine.last_logits(),
        state.recent_tokens.to_list(),
        state.mirostat_mu,
    )
    state.recent_tokens.append(token)
    return token


def ends_with_antiprompt(
    executor: "InferenceLoopController", antiprompts: Sequence[str]
) -> bool:
    """Whether the text of the most recent tokens ends with any antiprompt."""

    if not antiprompts:
        return False
    engine = executor.engine
    window = max(len(engine.tokenize(prompt, add_bos=False)) for prompt in antiprompts) + 2
    tail = executor.state.recent_tokens.tail(window)
    if not tail:
        return False
    text = engine.detokenize(tail)
    return any(text.endswith(prompt) for prompt in antiprompts)


def _exhaust_budget(params: GenerationParams, loop_state: InferLoopState) -> None:
    if loop_state.remaining_tokens <= 0 and params.max_tokens != -1:
        loop_state.remaining_tokens = params.max_tokens
        loop_state.wait_for_input = True


class InteractiveStrategy:
    """Chat-style flavour: generate until an antiprompt, then wait for input."""

    def preprocess(
        self, executor: "InferenceLoopController", text: str, loop_state: InferLoopState
    ) -> None:
        state = executor.state
        if state.is_prompt_run:
            tokens = executor.engine.tokenize(text, add_bos=True)
        else:
            if not text.endswith("\n"):
                text += "\n"
            tokens = executor.engine.tokenize(text, add_bos=False)
        state.queued_input_tokens.extend(tokens)

    def loop_condition(
        self, executor: "InferenceLoopController", loop_state: InferLoopState
    ) -> bool:
        return (
            loop_state.remaining_tokens != 0 and not loop_state.wait_for_input
        ) or executor.state.is_prompt_run

    def infer_internal(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> None:
        state = executor.state
        evaluate_pending(executor, params)
        state.pending_tokens.clear()
        if not state.has_pending_input and not loop_state.wait_for_input:
            token = sample_next(executor, loop_state)
            if token == executor.engine.eos_token_id:
                token = executor.engine.newline_token_id
                if loop_state.antiprompts:
                    first = executor.engine.tokenize(loop_state.antiprompts[0], add_bos=False)
                    state.queued_input_tokens.extend(first)
            state.pending_tokens.append(token)
            loop_state.remaining_tokens -= 1
            loop_state.return_value = True
        else:
            feed_queued_input(executor)

    def post_process(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> Tuple[bool, List[str]]:
        state = executor.state
        if not state.has_pending_input:
            if ends_with_antiprompt(executor, loop_state.antiprompts):
                loop_state.wait_for_input = True
            if state.past_tokens_count > 0 and loop_state.wait_for_input:
                return True, []
        if state.pending_tokens and state.pending_tokens[-1] == executor.engine.eos_token_id:
            return True, [END_OF_TEXT]
        _exhaust_budget(params, loop_state)
        return False, []


class InstructStrategy:
    """Instruction-following flavour: every later input is wrapped in prefix/suffix tokens."""

    def __init__(self, instruction_prefix: str, instruction_suffix: str) -> None:
        self.instruction_prefix = instruction_prefix
        self.instruction_suffix = instruction_suffix

    def preprocess(
        self, executor: "InferenceLoopController", text: str, loop_state: InferLoopState
    ) -> None:
        state = executor.state
        engine = executor.engine
        if self.instruction_prefix and self.instruction_prefix not in loop_state.antiprompts:
            loop_state.antiprompts.append(self.instruction_prefix)
        if state.is_prompt_run:
            state.queued_input_tokens.extend(engine.tokenize(text, add_bos=True))
            return
        if not text.endswith("\n"):
            text += "\n"
        state.consumed_tokens_count = len(state.queued_input_tokens)
        state.queued_input_tokens.extend(engine.tokenize(self.instruction_prefix, add_bos=True))
        state.queued_input_tokens.extend(engine.tokenize(text, add_bos=False))
        state.queued_input_tokens.extend(engine.tokenize(self.instruction_suffix, add_bos=False))

    def loop_condition(
        self, executor: "InferenceLoopController", loop_state: InferLoopState
    ) -> bool:
        return loop_state.remaining_tokens != 0 or executor.state.is_prompt_run

    def infer_internal(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> None:
        state = executor.state
        evaluate_pending(executor, params)
        state.pending_tokens.clear()
        if not state.has_pending_input and not loop_state.wait_for_input:
            token = sample_next(executor, loop_state)
            state.pending_tokens.append(token)
            loop_state.remaining_tokens -= 1
            loop_state.return_value = True
        else:
            feed_queued_input(executor)

    def post_process(
        self,
        executor: "InferenceLoopController",
        params: GenerationParams,
        loop_state: InferLoopState,
    ) -> Tuple[bool, List[str]]:
        state = executor.state
        if not state.has_pending_input:
            if ends_with_antiprompt(executor, loop_state.antiprompts):
                loop_state.wait_for_input = True
                return True, []
            if state.past_tokens_count > 0 and loop_state.wait_for_input:
                return True, [INSTRUCT_INPUT_MARKER]
        if state.pending_tokens and state.pending_tokens[-1] == executor.engine.eos_token_id:
            loop_state.wait_for_input = True
        _exhaust_budget(params, loop_state)
        return False, []


__all__ = [
    "END_OF_TEXT",
    "ExecutorStrategy",
    "INSTRUCT_INPUT_MARKER",
    "InstructStrategy",
    "InteractiveStrategy",
    "ends_with_antiprompt",
    "evaluate_pending",
    "feed_queued_input",
    "sample_next",
]
