"""Character-level engine stub shared by the executor unit tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import torch

BOS = 1
EOS = 2
VOCAB_SIZE = 256


class StubEngine:
    """One token per character; the next sampled token follows ``script``."""

    def __init__(
        self,
        *,
        context_size: int = 64,
        batch_size: int = 512,
        script: Iterable[int] = (),
        fail_on_evaluate: bool = False,
    ) -> None:
        self.context_size = context_size
        self.batch_size = batch_size
        self.script: List[int] = list(script)
        self.fail_on_evaluate = fail_on_evaluate
        self.history: List[int] = []
        self.evaluate_calls: List[Tuple[List[int], int]] = []
        self.logits_calls = 0
        self.saved_sessions: List[Tuple[str, List[int]]] = []

    @property
    def eos_token_id(self) -> Optional[int]:
        return EOS

    @property
    def newline_token_id(self) -> int:
        return ord("\n")

    def tokenize(self, text: str, *, add_bos: bool) -> List[int]:
        tokens = [ord(ch) for ch in text]
        return [BOS] + tokens if add_bos else tokens

    def detokenize(self, tokens: Sequence[int]) -> str:
        return "".join(chr(token) for token in tokens if token > EOS)

    def evaluate(self, tokens: Sequence[int], n_past: int) -> int:
        self.evaluate_calls.append((list(tokens), n_past))
        if self.fail_on_evaluate:
            raise RuntimeError("stub evaluation failure")
        if n_past > len(self.history):
            raise RuntimeError("unknown position")
        if n_past + len(tokens) > self.context_size:
            raise RuntimeError("context overflow")
        new_tokens = list(tokens)
        for offset, token in enumerate(new_tokens):
            position = n_past + offset
            if position >= len(self.history) or self.history[position] != token:
                self.history = self.history[:position] + new_tokens[offset:]
                break
        return n_past + len(new_tokens)

    def known_tokens(self) -> List[int]:
        return list(self.history)

    def restore_history(self, tokens: Sequence[int]) -> None:
        self.history = list(tokens)

    def last_logits(self) -> torch.Tensor:
        self.logits_calls += 1
        token = self.script.pop(0) if self.script else EOS
        logits = torch.zeros(VOCAB_SIZE)
        logits[token] = 10.0
        return logits

    def save_session_file(self, path: str, tokens: Sequence[int]) -> bool:
        self.saved_sessions.append((path, list(tokens)))
        Path(path).write_text(json.dumps({"tokens": list(tokens)}), encoding="utf-8")
        return True

    def load_session_file(self, path: str, capacity: int) -> Optional[List[int]]:
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        if not isinstance(tokens, list) or len(tokens) > capacity:
            return None
        self.history = [int(token) for token in tokens]
        return list(self.history)


def chars(text: str) -> List[int]:
    return [ord(ch) for ch in text]
