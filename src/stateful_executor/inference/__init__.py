"""Inference-time components of the stateful executor."""

from __future__ import annotations

import importlib
from types import ModuleType
from typing import Dict, Iterable, Tuple

__all__ = [
    "CancellationToken",
    "ContextWindowManager",
    "EngineConfig",
    "ExecutorConfig",
    "ExecutorState",
    "ExecutorStateSnapshot",
    "ExecutorStrategy",
    "GenerationParams",
    "GenerationStream",
    "InferLoopState",
    "InferenceLoopController",
    "InstructStrategy",
    "InteractiveStrategy",
    "ModelEngine",
    "PrefixReuseMatcher",
    "RunConfig",
    "SamplingConfig",
    "SessionCacheStore",
    "SessionMatch",
    "StreamingTextDecoder",
    "TokenRingBuffer",
    "TokenSampler",
    "TransformersEngine",
    "build_run_config",
    "build_strategy",
    "load_run_config",
    "load_transformers_engine",
]

_EXPORTS: Dict[str, Tuple[str, ...]] = {
    "config": (
        "EngineConfig",
        "ExecutorConfig",
        "GenerationParams",
        "RunConfig",
        "SamplingConfig",
        "build_run_config",
        "load_run_config",
    ),
    "controller": (
        "CancellationToken",
        "GenerationStream",
        "InferenceLoopController",
        "build_strategy",
    ),
    "decoder": ("StreamingTextDecoder",),
    "engine": ("ModelEngine", "TransformersEngine", "load_transformers_engine"),
    "prefix": ("PrefixReuseMatcher",),
    "ring": ("TokenRingBuffer",),
    "sampler": ("TokenSampler",),
    "session": ("SessionCacheStore", "SessionMatch"),
    "state": ("ExecutorState", "ExecutorStateSnapshot", "InferLoopState"),
    "strategies": ("ExecutorStrategy", "InstructStrategy", "InteractiveStrategy"),
    "window": ("ContextWindowManager",),
}


def _load_module(name: str) -> ModuleType:
    return importlib.import_module(f"stateful_executor.inference.{name}")


def __getattr__(name: str):
    for module_name, symbols in _EXPORTS.items():
        if name in symbols:
            module = _load_module(module_name)
            return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> Iterable[str]:
    return sorted(set(__all__))
