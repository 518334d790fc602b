"""Runtime configuration for stateful executors."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import yaml


@dataclass(slots=True)
class SamplingConfig:
    """Sampling controls applied to the logits of the last evaluated token."""

    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    repetition_penalty: float = 1.1
    repeat_last_n: int = 64
    do_sample: bool = True
    mirostat: Literal[0, 2] = 0
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.temperature < 0.0:
            raise ValueError("SamplingConfig.temperature must be non-negative.")
        if self.top_k < 0:
            raise ValueError("SamplingConfig.top_k must be non-negative.")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError("SamplingConfig.top_p must lie within [0, 1].")
        if self.repetition_penalty <= 0.0:
            raise ValueError("SamplingConfig.repetition_penalty must be positive.")
        if self.repeat_last_n < 0:
            raise ValueError("SamplingConfig.repeat_last_n must be non-negative.")
        if self.mirostat not in (0, 2):
            raise ValueError("SamplingConfig.mirostat must be 0 (disabled) or 2.")
        if self.mirostat_tau <= 0.0:
            raise ValueError("SamplingConfig.mirostat_tau must be positive.")
        if not 0.0 < self.mirostat_eta <= 1.0:
            raise ValueError("SamplingConfig.mirostat_eta must lie within (0, 1].")


@dataclass(slots=True)
class GenerationParams:
    """Options recognised by a single generation call.

    ``max_tokens`` of ``0`` advances state without generating; ``-1`` removes
    the budget entirely.
    """

    anti_prompts: Sequence[str] = field(default_factory=tuple)
    max_tokens: int = -1
    tokens_to_keep: int = 0
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    def __post_init__(self) -> None:
        if isinstance(self.anti_prompts, str):
            self.anti_prompts = (self.anti_prompts,)
        self.anti_prompts = tuple(prompt for prompt in self.anti_prompts if prompt)
        if self.max_tokens < -1:
            raise ValueError("GenerationParams.max_tokens must be -1 (unbounded) or >= 0.")
        if self.tokens_to_keep < 0:
            raise ValueError("GenerationParams.tokens_to_keep must be non-negative.")
        if isinstance(self.sampling, Mapping):  # type: ignore[arg-type]
            self.sampling = SamplingConfig(**self.sampling)  # type: ignore[arg-type]


@dataclass(slots=True)
class ExecutorConfig:
    """Shape of the executor: window size, feed batch and flavour."""

    context_size: int = 2048
    batch_size: int = 512
    session_path: Optional[str] = None
    mode: Literal["interactive", "instruct"] = "interactive"
    instruction_prefix: str = "\n\n### Instruction:\n\n"
    instruction_suffix: str = "\n\n### Response:\n\n"

    def __post_init__(self) -> None:
        _validate_integer("context_size", self.context_size, minimum=1)
        _validate_integer("batch_size", self.batch_size, minimum=1)
        if self.mode not in {"interactive", "instruct"}:
            raise ValueError("ExecutorConfig.mode must be 'interactive' or 'instruct'.")
        if self.session_path is not None and not str(self.session_path).strip():
            raise ValueError("ExecutorConfig.session_path must not be blank when provided.")


@dataclass(slots=True)
class EngineConfig:
    """Where to load the Hugging Face model and tokenizer from."""

    pretrained_name: str = "distilgpt2"
    torch_dtype: str = "float32"
    device: Optional[str] = None
    trust_remote_code: bool = False


@dataclass(slots=True)
class RunConfig:
    """Bundle of every section read from a YAML run file."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    generation: GenerationParams = field(default_factory=GenerationParams)


def _validate_integer(name: str, value: int, *, minimum: int) -> None:
    if value < minimum:
        raise ValueError(f"ExecutorConfig.{name} must be >= {minimum}, received {value}.")


def _section(payload: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = payload.get(name) or {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Config section {name!r} must be a mapping.")
    return dict(value)


def build_run_config(payload: Mapping[str, Any]) -> RunConfig:
    """Build a :class:`RunConfig` from a nested mapping (usually parsed YAML)."""

    unknown = sorted(set(payload) - {"engine", "executor", "generation"})
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(unknown)}.")
    generation = _section(payload, "generation")
    sampling = generation.pop("sampling", None) or {}
    anti_prompts: List[str] = list(generation.pop("anti_prompts", []) or [])
    try:
        return RunConfig(
            engine=EngineConfig(**_section(payload, "engine")),
            executor=ExecutorConfig(**_section(payload, "executor")),
            generation=GenerationParams(
                anti_prompts=tuple(anti_prompts),
                sampling=SamplingConfig(**sampling),
                **generation,
            ),
        )
    except TypeError as exc:
        raise ValueError(f"Invalid config field: {exc}") from exc


def load_run_config(path: Path) -> RunConfig:
    """Read a YAML run file; an empty file yields the defaults."""

    with Path(path).open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file {path} must contain a mapping at the top level.")
    return build_run_config(payload)


__all__ = [
    "EngineConfig",
    "ExecutorConfig",
    "GenerationParams",
    "RunConfig",
    "SamplingConfig",
    "build_run_config",
    "load_run_config",
]
