"""TransformersEngine cache bookkeeping against a toy causal LM."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import List, Optional

import pytest
import torch
from torch import nn

from stateful_executor.inference.config import ExecutorConfig, GenerationParams, SamplingConfig
from stateful_executor.inference.controller import InferenceLoopController
from stateful_executor.inference.engine import TransformersEngine

VOCAB = 128


class _ToyCache:
    def __init__(self) -> None:
        self.tokens: List[int] = []

    def get_seq_length(self) -> int:
        return len(self.tokens)

    def crop(self, length: int) -> None:
        del self.tokens[length:]


class _ToyCausalLM(nn.Module):
    """Predicts ``token + 1`` for every position."""

    def __init__(self) -> None:
        super().__init__()
        self.anchor = nn.Parameter(torch.zeros(1))
        self.forward_calls: List[List[int]] = []
        self.cache_lengths: List[int] = []

    def forward(
        self,
        input_ids: torch.Tensor,
        past_key_values: Optional[_ToyCache] = None,
        use_cache: bool = True,
    ) -> SimpleNamespace:
        ids = input_ids[0].tolist()
        cache = past_key_values if past_key_values is not None else _ToyCache()
        self.forward_calls.append(list(ids))
        self.cache_lengths.append(cache.get_seq_length())
        cache.tokens.extend(ids)
        logits = torch.zeros(1, len(ids), VOCAB)
        for position, token in enumerate(ids):
            logits[0, position, (token + 1) % VOCAB] = 10.0
        return SimpleNamespace(logits=logits, past_key_values=cache)


class _ToyTokenizer:
    bos_token_id = 1
    eos_token_id = 2

    def encode(self, text: str, add_special_tokens: bool = False) -> List[int]:
        return [ord(ch) % VOCAB for ch in text]

    def decode(self, ids: List[int], skip_special_tokens: bool = True) -> str:
        return "".join(chr(token) for token in ids if token > 2)


def _engine(*, context_size: int = 32, batch_size: int = 512) -> TransformersEngine:
    return TransformersEngine(
        _ToyCausalLM(),
        _ToyTokenizer(),
        context_size=context_size,
        batch_size=batch_size,
    )


def _argmax(engine: TransformersEngine) -> int:
    return int(torch.argmax(engine.last_logits()).item())


def test_tokenizer_helpers() -> None:
    engine = _engine()

    assert engine.tokenize("ab", add_bos=True) == [1, 97, 98]
    assert engine.tokenize("ab", add_bos=False) == [97, 98]
    assert engine.detokenize([1, 97, 98, 2]) == "ab"
    assert engine.newline_token_id == ord("\n")
    assert engine.eos_token_id == 2
    assert engine.device == torch.device("cpu")


def test_sequential_evaluation_reuses_cache() -> None:
    engine = _engine()

    assert engine.evaluate([1, 10, 11], 0) == 3
    assert _argmax(engine) == 12
    assert engine.evaluate([12], 3) == 4

    assert engine.model.forward_calls == [[1, 10, 11], [12]]
    assert engine.model.cache_lengths == [0, 3]
    assert engine.cached_tokens == 4


def test_rewind_crops_cache_before_new_batch() -> None:
    engine = _engine()
    engine.evaluate([1, 10, 11, 12], 0)

    assert engine.evaluate([20], 2) == 3

    assert engine.model.forward_calls[-1] == [20]
    assert engine.model.cache_lengths[-1] == 2
    assert _argmax(engine) == 21


def test_long_input_is_split_into_batches() -> None:
    engine = _engine(batch_size=2)

    engine.evaluate([1, 3, 4, 5, 6], 0)

    assert engine.model.forward_calls == [[1, 3], [4, 5], [6]]


def test_last_logits_re_runs_final_position_when_needed() -> None:
    engine = _engine()
    engine.evaluate([1, 10, 11], 0)
    engine.evaluate([], 2)

    assert _argmax(engine) == 11
    assert engine.model.forward_calls[-1] == [10]


def test_invalid_positions_raise() -> None:
    engine = _engine(context_size=4)

    with pytest.raises(RuntimeError, match="exceed the context window"):
        engine.evaluate([1, 3, 4, 5, 6], 0)
    with pytest.raises(RuntimeError, match="only 0 positions"):
        engine.evaluate([3], 2)
    with pytest.raises(RuntimeError, match="No tokens"):
        engine.last_logits()


def test_session_file_round_trip_rehydrates_lazily(tmp_path: Path) -> None:
    path = str(tmp_path / "sessions" / "toy.session")
    assert _engine().save_session_file(path, [1, 5, 6, 7])

    engine = _engine()
    assert engine.load_session_file(path, capacity=32) == [1, 5, 6, 7]
    assert engine.cached_tokens == 0

    assert engine.evaluate([], 4) == 4
    assert engine.model.forward_calls == [[1, 5, 6, 7]]
    assert _argmax(engine) == 8


def test_session_file_rejections(tmp_path: Path) -> None:
    path = str(tmp_path / "toy.session")
    _engine().save_session_file(path, [1, 5, 6, 7])
    garbage = tmp_path / "garbage.session"
    garbage.write_text("not a session", encoding="utf-8")
    foreign = tmp_path / "foreign.session"
    torch.save({"format": "other", "tokens": torch.tensor([1])}, foreign)

    engine = _engine()
    assert engine.load_session_file(path, capacity=3) is None
    assert engine.load_session_file(str(garbage), capacity=32) is None
    assert engine.load_session_file(str(foreign), capacity=32) is None


def test_controller_streams_through_transformers_engine() -> None:
    engine = _engine()
    controller = InferenceLoopController(engine)
    params = GenerationParams(
        max_tokens=3,
        sampling=SamplingConfig(do_sample=False, repetition_penalty=1.0),
    )

    chunks = list(controller.run("hi", params))

    assert chunks == ["j", "k", "l"]
    assert controller.state.past_tokens_count == 5


def test_known_positions_past_n_past_survive_until_overwritten(tmp_path: Path) -> None:
    path = str(tmp_path / "tail.session")
    _engine().save_session_file(path, [1, 5, 6, 7, 8, 9])
    engine = _engine()
    engine.load_session_file(path, capacity=32)

    assert engine.evaluate([], 4) == 4
    assert _argmax(engine) == 8
    assert engine.evaluate([8], 4) == 5
    assert _argmax(engine) == 9
    assert engine.known_tokens() == [1, 5, 6, 7, 8, 9]
    assert engine.model.forward_calls == [[1, 5, 6, 7], [8]]

    assert engine.evaluate([30], 5) == 6
    assert engine.known_tokens() == [1, 5, 6, 7, 8, 30]
    with pytest.raises(RuntimeError, match="only 6 positions"):
        engine.evaluate([], 7)


def test_restore_history_rehydrates_on_demand() -> None:
    engine = _engine()

    engine.restore_history([1, 5, 6])

    assert engine.model.forward_calls == []
    assert _argmax(engine) == 7
    assert engine.model.forward_calls == [[1, 5, 6]]
    with pytest.raises(ValueError, match="Cannot restore"):
        _engine(context_size=2).restore_history([1, 5, 6])


def test_repeated_prompt_reuses_session_with_generated_tail(tmp_path: Path) -> None:
    config = ExecutorConfig(context_size=32, session_path=str(tmp_path / "chat.session"))
    params = GenerationParams(
        max_tokens=3,
        sampling=SamplingConfig(do_sample=False, repetition_penalty=1.0),
    )
    first = InferenceLoopController(_engine(), config=config)
    assert list(first.run("hi", params)) == ["j", "k", "l"]
    first.persist_session_file(first.state.session_file_path)

    engine = _engine()
    second = InferenceLoopController(engine, config=config)
    chunks = list(second.run("hi", params))

    assert chunks == ["j", "k", "l"]
    assert engine.model.forward_calls == [[1, 104, 105], [106], [107]]
    assert second.state.session_tokens == [1, 104, 105, 106, 107]
    assert second.state.past_tokens_count == 5
