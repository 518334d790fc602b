"""Incremental detokenization for streamed generation."""

from __future__ import annotations

from typing import Callable, Iterable, Iterator, List, Sequence

REPLACEMENT_CHAR = "�"

Detokenizer = Callable[[Sequence[int]], str]


class StreamingTextDecoder:
    """Turns a growing list of token ids into text that is safe to emit.

    Tokens are decoded together so multi-token characters and leading-space
    merges come out right. Trailing replacement characters mark a character
    whose remaining bytes have not arrived yet; that tail is held back until a
    later :meth:`read`. The token window restarts whenever the decoded text
    ends on a newline so it does not grow without bound.
    """

    def __init__(self, detokenize: Detokenizer) -> None:
        self._detokenize = detokenize
        self._tokens: List[int] = []
        self._emitted = 0

    def add(self, token_id: int) -> None:
        self._tokens.append(int(token_id))

    def add_range(self, tokens: Iterable[int]) -> None:
        for token_id in tokens:
            self.add(token_id)

    @property
    def pending_tokens(self) -> int:
        return len(self._tokens)

    def read(self) -> str:
        """Return all newly decodable text; never repeats earlier output."""

        return "".join(self.iter_read())

    def iter_read(self) -> Iterator[str]:
        """Yield newly decodable fragments, split after each newline."""

        if not self._tokens:
            return
        text = self._detokenize(self._tokens)
        stable = text.rstrip(REPLACEMENT_CHAR)
        fresh = stable[self._emitted :]
        self._emitted = max(self._emitted, len(stable))
        if stable == text and stable.endswith("\n"):
            self.reset()
        if fresh:
            yield from fresh.splitlines(keepends=True)

    def reset(self) -> None:
        self._tokens = []
        self._emitted = 0


__all__ = ["StreamingTextDecoder"]
