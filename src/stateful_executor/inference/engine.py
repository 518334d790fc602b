"""Model engine boundary and a Hugging Face backed implementation.

The executor only ever talks to an engine through :class:`ModelEngine`:
tokenization, evaluation of a token batch at a position, the logits of the
last evaluated token, and the session file primitives.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import torch
from torch import nn
from transformers import AutoModelForCausalLM, AutoTokenizer
from transformers.tokenization_utils_base import PreTrainedTokenizerBase

from ..utils import resolve_device
from .config import EngineConfig

LOGGER = logging.getLogger("stateful executor.engine")

SESSION_FORMAT = "stateful-executor-session"
SESSION_VERSION = 1


@runtime_checkable
class ModelEngine(Protocol):
    """Capabilities the executor needs from the language-model runtime."""

    context_size: int
    batch_size: int

    @property
    def eos_token_id(self) -> Optional[int]: ...

    @property
    def newline_token_id(self) -> int: ...

    def tokenize(self, text: str, *, add_bos: bool) -> List[int]: ...

    def detokenize(self, tokens: Sequence[int]) -> str: ...

    def evaluate(self, tokens: Sequence[int], n_past: int) -> int:
        """Evaluate ``tokens`` at positions ``n_past..`` and return the new ``n_past``."""
        ...

    def last_logits(self) -> torch.Tensor: ...

    def known_tokens(self) -> List[int]:
        """Every position the engine can resume from, including ones past ``n_past``."""
        ...

    def restore_history(self, tokens: Sequence[int]) -> None: ...

    def save_session_file(self, path: str, tokens: Sequence[int]) -> bool: ...

    def load_session_file(self, path: str, capacity: int) -> Optional[List[int]]:
        """Return the stored tokens, or ``None`` when the file cannot be loaded."""
        ...


class TransformersEngine:
    """Runs a causal LM with a KV cache kept aligned to the executor's ``n_past``.

    The engine remembers which token occupies every position it has been told
    about, including positions past the current ``n_past`` that a session file
    or an earlier turn supplied. Those stay valid until a different token is
    evaluated at them. Positions beyond the materialized cache are re-evaluated
    lazily before they are needed.
    """

    def __init__(
        self,
        model: nn.Module,
        tokenizer: PreTrainedTokenizerBase,
        *,
        context_size: int,
        batch_size: int = 512,
        device: Optional[torch.device | str] = None,
    ) -> None:
        if context_size <= 0:
            raise ValueError("TransformersEngine.context_size must be positive.")
        if batch_size <= 0:
            raise ValueError("TransformersEngine.batch_size must be positive.")
        self.model = model
        self.tokenizer = tokenizer
        self.context_size = int(context_size)
        self.batch_size = int(batch_size)
        self.device = torch.device(device) if device is not None else self._resolve_device()
        self._history: List[int] = []
        self._cache: Any = None
        self._logits: Optional[torch.Tensor] = None
        self._logits_position = -1
        self._n_past = 0
        if hasattr(self.model, "eval"):
            self.model.eval()

    @property
    def eos_token_id(self) -> Optional[int]:
        return getattr(self.tokenizer, "eos_token_id", None)

    @property
    def newline_token_id(self) -> int:
        ids = self.tokenize("\n", add_bos=False)
        if not ids:
            raise RuntimeError("Tokenizer produced no token for a newline.")
        return ids[-1]

    @property
    def cached_tokens(self) -> int:
        if self._cache is None:
            return 0
        return int(self._cache.get_seq_length())

    def tokenize(self, text: str, *, add_bos: bool) -> List[int]:
        ids = list(self.tokenizer.encode(text, add_special_tokens=False))
        bos = getattr(self.tokenizer, "bos_token_id", None)
        if add_bos and bos is not None:
            ids.insert(0, int(bos))
        return [int(token) for token in ids]

    def detokenize(self, tokens: Sequence[int]) -> str:
        return self.tokenizer.decode(list(tokens), skip_special_tokens=True)

    def evaluate(self, tokens: Sequence[int], n_past: int) -> int:
        if n_past < 0:
            raise ValueError("n_past must be non-negative.")
        if n_past > len(self._history):
            raise RuntimeError(
                f"Cannot evaluate at position {n_past}; only {len(self._history)} positions are known."
            )
        new_tokens = [int(token) for token in tokens]
        if n_past + len(new_tokens) > self.context_size:
            raise RuntimeError(
                f"Evaluation would exceed the context window ({n_past} + {len(new_tokens)} > {self.context_size})."
            )
        # Known positions past n_past survive until a different token lands on them.
        diverged = n_past
        for token in new_tokens:
            if diverged >= len(self._history) or self._history[diverged] != token:
                break
            diverged += 1
        if diverged < n_past + len(new_tokens):
            del self._history[diverged:]
            self._history.extend(new_tokens[diverged - n_past :])
            self._sync_cache(diverged)
        self._n_past = n_past + len(new_tokens)
        self._materialize(self._n_past)
        return self._n_past

    def last_logits(self) -> torch.Tensor:
        if self._n_past == 0:
            raise RuntimeError("No tokens have been evaluated yet.")
        if self._logits is None or self._logits_position != self._n_past - 1:
            # Re-run the final position so its logits are available again.
            self._sync_cache(self._n_past - 1)
            self._materialize(self._n_past)
        assert self._logits is not None
        return self._logits

    def known_tokens(self) -> List[int]:
        return list(self._history)

    def restore_history(self, tokens: Sequence[int]) -> None:
        """Treat ``tokens`` as already evaluated; the cache is rebuilt on demand."""

        history = [int(token) for token in tokens]
        if len(history) > self.context_size:
            raise ValueError(
                f"Cannot restore {len(history)} tokens into a context of {self.context_size}."
            )
        self._history = history
        self._n_past = len(history)
        self._cache = None
        self._logits = None

    def save_session_file(self, path: str, tokens: Sequence[int]) -> bool:
        payload = {
            "format": SESSION_FORMAT,
            "version": SESSION_VERSION,
            "n_tokens": len(tokens),
            "tokens": torch.tensor(list(tokens), dtype=torch.int32),
        }
        try:
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            torch.save(payload, target)
        except OSError:
            LOGGER.error("session_save_failed | path=%s", path, exc_info=True)
            return False
        return True

    def load_session_file(self, path: str, capacity: int) -> Optional[List[int]]:
        try:
            payload = torch.load(path, map_location="cpu", weights_only=True)
        except Exception:  # torch surfaces unpickling failures with assorted types
            LOGGER.error("session_load_failed | path=%s | reason=unreadable", path, exc_info=True)
            return None
        if not isinstance(payload, dict) or payload.get("format") != SESSION_FORMAT:
            LOGGER.error("session_load_failed | path=%s | reason=format", path)
            return None
        tokens_tensor = payload.get("tokens")
        if not isinstance(tokens_tensor, torch.Tensor) or tokens_tensor.dim() != 1:
            LOGGER.error("session_load_failed | path=%s | reason=tokens", path)
            return None
        n_tokens = int(payload.get("n_tokens", -1))
        if n_tokens != tokens_tensor.numel() or n_tokens > capacity:
            LOGGER.error(
                "session_load_failed | path=%s | reason=size | n_tokens=%d | capacity=%d",
                path,
                n_tokens,
                capacity,
            )
            return None
        tokens = [int(token) for token in tokens_tensor.tolist()]
        # The loaded tokens describe positions the cache has not materialized yet.
        self._history = list(tokens)
        self._n_past = 0
        self._cache = None
        self._logits = None
        return tokens

    def _sync_cache(self, n_past: int) -> None:
        cached = self.cached_tokens
        if cached <= n_past:
            return
        if n_past == 0:
            self._cache = None
        else:
            self._cache.crop(n_past)
        self._logits = None

    def _materialize(self, upto: int) -> None:
        start = self.cached_tokens
        while start < upto:
            end = min(upto, start + self.batch_size)
            self._forward(self._history[start:end])
            start = end

    def _forward(self, token_ids: Sequence[int]) -> None:
        input_ids = torch.tensor([list(token_ids)], dtype=torch.long, device=self.device)
        with torch.no_grad():
            try:
                outputs = self.model(
                    input_ids=input_ids,
                    past_key_values=self._cache,
                    use_cache=True,
                )
            except RuntimeError as exc:
                raise RuntimeError(
                    f"Model evaluation failed for a batch of {len(token_ids)} tokens."
                ) from exc
        self._cache = outputs.past_key_values
        self._logits = outputs.logits[0, -1, :].detach()
        self._logits_position = self.cached_tokens - 1

    def _resolve_device(self) -> torch.device:
        try:
            first_param = next(self.model.parameters())
        except StopIteration:
            return torch.device("cpu")
        return first_param.device


_DTYPES = {
    "bfloat16": torch.bfloat16,
    "bf16": torch.bfloat16,
    "float16": torch.float16,
    "fp16": torch.float16,
    "float32": torch.float32,
    "fp32": torch.float32,
}


def load_transformers_engine(
    config: EngineConfig,
    *,
    context_size: int,
    batch_size: int,
) -> TransformersEngine:
    """Load model and tokenizer from the Hugging Face hub or a local path."""

    try:
        dtype = _DTYPES[config.torch_dtype]
    except KeyError as exc:
        raise ValueError(f"Unsupported dtype alias: {config.torch_dtype!r}") from exc
    device = config.device or resolve_device()
    tokenizer = AutoTokenizer.from_pretrained(
        config.pretrained_name,
        trust_remote_code=config.trust_remote_code,
    )
    model = AutoModelForCausalLM.from_pretrained(
        config.pretrained_name,
        torch_dtype=dtype,
        trust_remote_code=config.trust_remote_code,
    )
    model.to(device)
    LOGGER.info(
        "engine_loaded | model=%s | device=%s | dtype=%s | n_ctx=%d",
        config.pretrained_name,
        device,
        config.torch_dtype,
        context_size,
    )
    return TransformersEngine(
        model,
        tokenizer,
        context_size=context_size,
        batch_size=batch_size,
        device=device,
    )


__all__ = ["ModelEngine", "TransformersEngine", "load_transformers_engine"]
