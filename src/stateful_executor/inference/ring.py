"""Fixed-capacity FIFO holding the most recent tokens seen by an executor."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, Iterator, List


class TokenRingBuffer:
    """Keeps the last ``capacity`` token ids, evicting the oldest first."""

    def __init__(self, capacity: int, tokens: Iterable[int] = ()) -> None:
        if capacity <= 0:
            raise ValueError("TokenRingBuffer capacity must be positive.")
        self.capacity = int(capacity)
        self._buffer: Deque[int] = deque(maxlen=self.capacity)
        self.extend(tokens)

    def append(self, token_id: int) -> None:
        self._buffer.append(int(token_id))

    def extend(self, tokens: Iterable[int]) -> None:
        for token_id in tokens:
            self.append(token_id)

    def clear(self) -> None:
        self._buffer.clear()

    def tail(self, count: int) -> List[int]:
        """Return up to ``count`` of the most recent tokens, oldest first."""

        if count <= 0:
            return []
        items = list(self._buffer)
        return items[-count:]

    def to_list(self) -> List[int]:
        return list(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._buffer))

    def __getitem__(self, index: int) -> int:
        return self._buffer[index]

    def __repr__(self) -> str:
        return f"TokenRingBuffer(capacity={self.capacity}, size={len(self._buffer)})"


__all__ = ["TokenRingBuffer"]
