"""Top-level generation loop for a stateful executor."""

from __future__ import annotations

import logging
import threading
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Tuple

from .config import ExecutorConfig, GenerationParams
from .decoder import StreamingTextDecoder
from .engine import ModelEngine
from .prefix import PrefixReuseMatcher
from .sampler import TokenSampler
from .session import SessionCacheStore
from .state import ExecutorState, ExecutorStateSnapshot, InferLoopState
from .strategies import ExecutorStrategy, InstructStrategy, InteractiveStrategy
from .window import ContextWindowManager

LOGGER = logging.getLogger("stateful executor.controller")


class CancellationToken:
    """Cooperative stop flag polled by :class:`GenerationStream`."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class GenerationStream:
    """Pull-based iterator over generated text chunks.

    Each pull runs at most one loop iteration: cancellation is checked before
    the iteration starts, never while the engine is evaluating.
    """

    def __init__(
        self,
        controller: "InferenceLoopController",
        text: str,
        params: GenerationParams,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.controller = controller
        self.text = text
        self.params = params
        self.cancel_token = cancel_token or CancellationToken()
        self.loop_state = InferLoopState(
            antiprompts=list(params.anti_prompts),
            remaining_tokens=params.max_tokens,
        )
        self.iterations = 0
        self._chunks: Deque[str] = deque()
        self._started = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished and not self._chunks

    def __iter__(self) -> "GenerationStream":
        return self

    def __next__(self) -> str:
        while not self._chunks:
            if self._finished:
                raise StopIteration
            self._step()
        return self._chunks.popleft()

    def _step(self) -> None:
        controller = self.controller
        if not self._started:
            self._started = True
            if self.cancel_token.cancelled:
                LOGGER.info("generation_cancelled | iterations=0")
                self._finished = True
                return
            controller.preprocess(self.text, self.loop_state)
        if not controller.loop_condition(self.loop_state):
            self._finished = True
            return
        if self.cancel_token.cancelled:
            LOGGER.info("generation_cancelled | iterations=%d", self.iterations)
            self._finished = True
            return
        self.iterations += 1
        controller.infer_internal(self.params, self.loop_state)
        if self.loop_state.return_value:
            controller.decoder.add_range(controller.state.pending_tokens)
            text = controller.decoder.read()
            if text:
                self._chunks.append(text)
        should_stop, extra = controller.post_process(self.params, self.loop_state)
        self._chunks.extend(chunk for chunk in extra if chunk)
        if should_stop:
            self._finished = True


class InferenceLoopController:
    """Owns the executor state and drives the active strategy's hooks."""

    def __init__(
        self,
        engine: ModelEngine,
        strategy: Optional[ExecutorStrategy] = None,
        *,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self.engine = engine
        self.config = config or ExecutorConfig(
            context_size=engine.context_size,
            batch_size=engine.batch_size,
        )
        if self.config.context_size != engine.context_size:
            raise ValueError(
                "ExecutorConfig.context_size must match the engine context size "
                f"({self.config.context_size} != {engine.context_size})."
            )
        self.strategy = strategy or build_strategy(self.config)
        self.state = ExecutorState(context_size=engine.context_size)
        self.session_store = SessionCacheStore(engine)
        self.window = ContextWindowManager(engine.context_size)
        self.prefix_matcher = PrefixReuseMatcher()
        self.decoder = StreamingTextDecoder(engine.detokenize)
        self.sampler = TokenSampler()
        if self.config.session_path:
            self.attach_session_file(self.config.session_path)

    # Session file -----------------------------------------------------------------

    def attach_session_file(self, path: str) -> "InferenceLoopController":
        """Load ``path`` as the session cache; calling again with the same path is a no-op."""

        if not path:
            raise ValueError("Session file path cannot be empty.")
        if self.state.session_invalidated:
            raise ValueError(
                "Session caching was disabled after the context window was exhausted."
            )
        if path == self.state.session_file_path:
            return self
        tokens = self.session_store.load(path)
        self.state.session_file_path = path
        self.state.session_tokens = tokens
        self.state.session_consumed_count = 0
        self.state.matching_session_tokens_count = 0
        if self.state.queued_input_tokens:
            self._apply_session_match()
        return self

    def persist_session_file(self, path: str) -> None:
        self.session_store.save(path, self.state.session_tokens)

    def _apply_session_match(self) -> None:
        match = self.session_store.compute_match(
            self.state.session_tokens, self.state.queued_input_tokens
        )
        self.state.matching_session_tokens_count = match.length
        self.session_store.log_match(match)

    # Hooks --------------------------------------------------------------------------

    def preprocess(self, text: str, loop_state: InferLoopState) -> None:
        self.strategy.preprocess(self, text, loop_state)
        if self.state.session_enabled and self.state.session_tokens:
            self._apply_session_match()
        loop_state.need_to_save_session = self.state.session_enabled and (
            self.state.matching_session_tokens_count < len(self.state.queued_input_tokens)
        )

    def loop_condition(self, loop_state: InferLoopState) -> bool:
        return self.strategy.loop_condition(self, loop_state)

    def infer_internal(self, params: GenerationParams, loop_state: InferLoopState) -> None:
        self.strategy.infer_internal(self, params, loop_state)

    def post_process(
        self, params: GenerationParams, loop_state: InferLoopState
    ) -> Tuple[bool, List[str]]:
        return self.strategy.post_process(self, params, loop_state)

    # Entry points -------------------------------------------------------------------

    def run(
        self,
        text: str,
        params: Optional[GenerationParams] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GenerationStream:
        """Return a lazy stream of text chunks generated in response to ``text``."""

        params = params or GenerationParams()
        if params.sampling != self.sampler.config:
            # A seeded RNG continues across turns while the settings are unchanged.
            self.sampler = TokenSampler(params.sampling)
        return GenerationStream(self, text, params, cancel_token)

    def prefill(self, prompt: str) -> None:
        """Push ``prompt`` through the engine without generating anything."""

        params = GenerationParams(max_tokens=0)
        loop_state = InferLoopState(
            antiprompts=[],
            remaining_tokens=0,
            return_value=False,
            wait_for_input=True,
            need_to_save_session=False,
        )
        self.preprocess(prompt, loop_state)
        # First pass queues the prompt tokens, second pass evaluates them.
        self.infer_internal(params, loop_state)
        self.infer_internal(params, loop_state)
        LOGGER.debug("prefill_complete | n_past=%d", self.state.past_tokens_count)

    # State persistence --------------------------------------------------------------

    def get_state_data(self) -> ExecutorStateSnapshot:
        snapshot = self.state.snapshot()
        snapshot.evaluated_tokens = self.engine.known_tokens()[: self.state.past_tokens_count]
        return snapshot

    def load_state_data(self, snapshot: ExecutorStateSnapshot) -> None:
        """Restore ``snapshot`` and reseed the engine with its evaluated tokens."""

        if snapshot.recent_tokens_capacity > self.state.context_size:
            raise ValueError(
                "Snapshot ring capacity exceeds the context size "
                f"({snapshot.recent_tokens_capacity} > {self.state.context_size})."
            )
        if len(snapshot.evaluated_tokens) != snapshot.past_tokens_count:
            raise ValueError(
                "Snapshot cannot be resumed: it records "
                f"{len(snapshot.evaluated_tokens)} evaluated tokens for n_past={snapshot.past_tokens_count}."
            )
        self.state.restore(snapshot)
        self.engine.restore_history(snapshot.evaluated_tokens)
        self.decoder.reset()

    def save_state(self, path: Path | str) -> None:
        target = Path(path)
        self.get_state_data().write(target)
        LOGGER.info("state_saved | path=%s | n_past=%d", target, self.state.past_tokens_count)

    def load_state(self, path: Path | str) -> None:
        source = Path(path)
        self.load_state_data(ExecutorStateSnapshot.read(source))
        LOGGER.info("state_loaded | path=%s | n_past=%d", source, self.state.past_tokens_count)


def build_strategy(config: ExecutorConfig) -> ExecutorStrategy:
    if config.mode == "instruct":
        return InstructStrategy(config.instruction_prefix, config.instruction_suffix)
    return InteractiveStrategy()


__all__ = [
    "CancellationToken",
    "GenerationStream",
    "InferenceLoopController",
    "build_strategy",
]
