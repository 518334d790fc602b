"""Session file cache: persisted token prefixes reused across runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Literal, Sequence

from .engine import ModelEngine

LOGGER = logging.getLogger("stateful executor.session")

MatchBand = Literal["empty", "full", "low", "partial"]


@dataclass(frozen=True, slots=True)
class SessionMatch:
    """Length of the shared prefix and its diagnostic band."""

    length: int
    prompt_length: int
    band: MatchBand


class SessionCacheStore:
    """Loads and saves session token sequences through the engine primitives."""

    def __init__(self, engine: ModelEngine) -> None:
        self.engine = engine

    @property
    def capacity(self) -> int:
        return self.engine.context_size

    def load(self, path: str) -> List[int]:
        """Return the cached tokens, or an empty list when no file exists yet."""

        if not path:
            raise ValueError("Session file path cannot be empty.")
        if not Path(path).exists():
            LOGGER.warning("session_missing | path=%s | action=will_create", path)
            return []
        LOGGER.info("session_load | path=%s", path)
        tokens = self.engine.load_session_file(path, self.capacity)
        if tokens is None:
            raise RuntimeError(f"Failed to load session file {path}")
        tokens = list(tokens[: self.capacity])
        LOGGER.info("session_loaded | path=%s | n_tokens=%d", path, len(tokens))
        return tokens

    def save(self, path: str, session_tokens: Sequence[int]) -> None:
        """Overwrite ``path`` with ``session_tokens``; best-effort."""

        if not path:
            raise ValueError("Session file path cannot be empty.")
        ok = self.engine.save_session_file(path, list(session_tokens))
        if not ok:
            LOGGER.warning("session_save_failed | path=%s | n_tokens=%d", path, len(session_tokens))
            return
        LOGGER.info("session_saved | path=%s | n_tokens=%d", path, len(session_tokens))

    @staticmethod
    def compute_match(
        session_tokens: Sequence[int], queued_input_tokens: Sequence[int]
    ) -> SessionMatch:
        """Length of the common prefix of the session and the queued input."""

        length = 0
        for cached, queued in zip(session_tokens, queued_input_tokens):
            if cached != queued:
                break
            length += 1
        prompt_length = len(queued_input_tokens)
        band: MatchBand
        if not session_tokens:
            band = "empty"
        elif length >= prompt_length:
            band = "full"
        elif length < prompt_length / 2:
            band = "low"
        else:
            band = "partial"
        return SessionMatch(length=length, prompt_length=prompt_length, band=band)

    @staticmethod
    def log_match(match: SessionMatch) -> None:
        if match.band == "full":
            LOGGER.info("session_match | band=full | n_tokens=%d", match.length)
        elif match.band == "low":
            LOGGER.warning(
                "session_match | band=low | matched=%d | prompt=%d | note=mostly_reevaluated",
                match.length,
                match.prompt_length,
            )
        elif match.band == "partial":
            LOGGER.info(
                "session_match | band=partial | matched=%d | prompt=%d",
                match.length,
                match.prompt_length,
            )


__all__ = ["MatchBand", "SessionCacheStore", "SessionMatch"]
