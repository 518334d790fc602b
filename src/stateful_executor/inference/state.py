"""Executor state containers and their serializable snapshot form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .ring import TokenRingBuffer


@dataclass(slots=True)
class ExecutorState:
    """Token bookkeeping owned by a single executor instance.

    ``pending_tokens`` are the tokens about to be evaluated by the engine,
    ``queued_input_tokens`` is the full tokenized input seen so far and
    ``session_tokens`` mirrors what the session file holds (or will hold).
    """

    context_size: int
    past_tokens_count: int = 0
    consumed_tokens_count: int = 0
    session_consumed_count: int = 0
    matching_session_tokens_count: int = 0
    session_file_path: str = ""
    pending_tokens: List[int] = field(default_factory=list)
    queued_input_tokens: List[int] = field(default_factory=list)
    session_tokens: List[int] = field(default_factory=list)
    recent_tokens: TokenRingBuffer = field(init=False)
    mirostat_mu: Optional[float] = None
    is_prompt_run: bool = True
    session_invalidated: bool = False

    def __post_init__(self) -> None:
        if self.context_size <= 0:
            raise ValueError("ExecutorState.context_size must be positive.")
        self.recent_tokens = TokenRingBuffer(self.context_size)

    @property
    def session_enabled(self) -> bool:
        return bool(self.session_file_path)

    @property
    def has_pending_input(self) -> bool:
        return len(self.queued_input_tokens) > self.consumed_tokens_count

    def snapshot(self) -> "ExecutorStateSnapshot":
        return ExecutorStateSnapshot(
            past_tokens_count=self.past_tokens_count,
            consumed_tokens_count=self.consumed_tokens_count,
            session_consumed_count=self.session_consumed_count,
            matching_session_tokens_count=self.matching_session_tokens_count,
            session_file_path=self.session_file_path,
            pending_tokens=list(self.pending_tokens),
            queued_input_tokens=list(self.queued_input_tokens),
            session_tokens=list(self.session_tokens),
            recent_tokens=self.recent_tokens.to_list(),
            recent_tokens_capacity=self.recent_tokens.capacity,
            mirostat_mu=self.mirostat_mu,
            is_prompt_run=self.is_prompt_run,
            session_invalidated=self.session_invalidated,
        )

    def restore(self, snapshot: "ExecutorStateSnapshot") -> None:
        """Overwrite every field from ``snapshot``."""

        if len(snapshot.recent_tokens) > snapshot.recent_tokens_capacity:
            raise ValueError(
                "Snapshot holds more recent tokens than its declared capacity "
                f"({len(snapshot.recent_tokens)} > {snapshot.recent_tokens_capacity})."
            )
        self.past_tokens_count = snapshot.past_tokens_count
        self.consumed_tokens_count = snapshot.consumed_tokens_count
        self.session_consumed_count = snapshot.session_consumed_count
        self.matching_session_tokens_count = snapshot.matching_session_tokens_count
        self.session_file_path = snapshot.session_file_path or ""
        self.pending_tokens = list(snapshot.pending_tokens)
        self.queued_input_tokens = list(snapshot.queued_input_tokens)
        self.session_tokens = list(snapshot.session_tokens)
        self.recent_tokens = TokenRingBuffer(
            snapshot.recent_tokens_capacity, snapshot.recent_tokens
        )
        self.mirostat_mu = snapshot.mirostat_mu
        self.is_prompt_run = snapshot.is_prompt_run
        self.session_invalidated = snapshot.session_invalidated


@dataclass(slots=True)
class InferLoopState:
    """Per-call flags threaded through the strategy hooks."""

    antiprompts: List[str] = field(default_factory=list)
    remaining_tokens: int = -1
    return_value: bool = False
    wait_for_input: bool = False
    need_to_save_session: bool = False


# Keys follow the on-disk layout used by earlier executor state files.
_SNAPSHOT_KEYS: Dict[str, str] = {
    "past_tokens_count": "n_past",
    "consumed_tokens_count": "n_consumed",
    "session_consumed_count": "n_session_consumed",
    "matching_session_tokens_count": "n_matching_session_tokens",
    "session_file_path": "path_session",
    "pending_tokens": "embd",
    "queued_input_tokens": "embd_inps",
    "session_tokens": "session_tokens",
    "recent_tokens": "last_n_tokens",
    "recent_tokens_capacity": "last_tokens_maximum_count",
    "mirostat_mu": "mirostat_mu",
    "is_prompt_run": "is_prompt_run",
    "session_invalidated": "session_invalidated",
    "evaluated_tokens": "evaluated_tokens",
}


@dataclass(slots=True)
class ExecutorStateSnapshot:
    """Serializable record of an :class:`ExecutorState`."""

    past_tokens_count: int
    consumed_tokens_count: int
    session_consumed_count: int
    matching_session_tokens_count: int
    session_file_path: str
    pending_tokens: List[int]
    queued_input_tokens: List[int]
    session_tokens: List[int]
    recent_tokens: List[int]
    recent_tokens_capacity: int
    mirostat_mu: Optional[float] = None
    is_prompt_run: bool = True
    session_invalidated: bool = False
    # Tokens the engine holds at positions 0..n_past, so it can be reseeded on restore.
    evaluated_tokens: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for attr, key in _SNAPSHOT_KEYS.items():
            value = getattr(self, attr)
            payload[key] = list(value) if isinstance(value, list) else value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ExecutorStateSnapshot":
        missing = [
            key
            for attr, key in _SNAPSHOT_KEYS.items()
            if key not in payload and attr not in _OPTIONAL_SNAPSHOT_FIELDS
        ]
        if missing:
            raise ValueError(f"State snapshot is missing keys: {', '.join(missing)}.")
        mu = payload.get("mirostat_mu")
        try:
            return cls(
                past_tokens_count=int(payload["n_past"]),
                consumed_tokens_count=int(payload["n_consumed"]),
                session_consumed_count=int(payload["n_session_consumed"]),
                matching_session_tokens_count=int(payload["n_matching_session_tokens"]),
                session_file_path=str(payload["path_session"] or ""),
                pending_tokens=[int(token) for token in payload["embd"]],
                queued_input_tokens=[int(token) for token in payload["embd_inps"]],
                session_tokens=[int(token) for token in payload["session_tokens"]],
                recent_tokens=[int(token) for token in payload["last_n_tokens"]],
                recent_tokens_capacity=int(payload["last_tokens_maximum_count"]),
                mirostat_mu=None if mu is None else float(mu),
                is_prompt_run=bool(payload.get("is_prompt_run", True)),
                session_invalidated=bool(payload.get("session_invalidated", False)),
                evaluated_tokens=[int(token) for token in payload.get("evaluated_tokens") or []],
            )
        except (TypeError, ValueError) as exc:
            raise ValueError(f"State snapshot contains malformed values: {exc}") from exc

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def read(cls, path: Path) -> "ExecutorStateSnapshot":
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"State file {path} is not valid JSON.") from exc
        if not isinstance(payload, Mapping):
            raise ValueError(f"State file {path} must contain a JSON object.")
        return cls.from_dict(payload)


_OPTIONAL_SNAPSHOT_FIELDS = frozenset(
    {"mirostat_mu", "is_prompt_run", "session_invalidated", "evaluated_tokens"}
)


__all__ = ["ExecutorState", "ExecutorStateSnapshot", "InferLoopState"]
