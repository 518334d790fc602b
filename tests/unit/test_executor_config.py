"""Tests for run configuration builders."""

from __future__ import annotations

from pathlib import Path

import pytest

from stateful_executor.inference.config import (
    ExecutorConfig,
    GenerationParams,
    SamplingConfig,
    build_run_config,
    load_run_config,
)


def test_build_run_config_populates_every_section() -> None:
    cfg = build_run_config(
        {
            "engine": {"pretrained_name": "sshleifer/tiny-gpt2", "torch_dtype": "float32"},
            "executor": {"context_size": 256, "batch_size": 32, "mode": "instruct"},
            "generation": {
                "anti_prompts": ["User:"],
                "max_tokens": 16,
                "tokens_to_keep": 4,
                "sampling": {"temperature": 0.0, "seed": 11},
            },
        }
    )

    assert cfg.engine.pretrained_name == "sshleifer/tiny-gpt2"
    assert cfg.executor.context_size == 256
    assert cfg.executor.mode == "instruct"
    assert cfg.generation.anti_prompts == ("User:",)
    assert cfg.generation.max_tokens == 16
    assert cfg.generation.tokens_to_keep == 4
    assert cfg.generation.sampling.temperature == 0.0
    assert cfg.generation.sampling.seed == 11


def test_empty_mapping_yields_defaults() -> None:
    cfg = build_run_config({})

    assert cfg.executor == ExecutorConfig()
    assert cfg.generation.max_tokens == -1
    assert cfg.generation.sampling == SamplingConfig()


def test_unknown_section_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown config sections: trainer"):
        build_run_config({"trainer": {}})


def test_unknown_field_is_reported_as_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid config field"):
        build_run_config({"executor": {"n_threads": 4}})


@pytest.mark.parametrize(
    "kwargs",
    [
        {"context_size": 0},
        {"batch_size": 0},
        {"mode": "chat"},
        {"session_path": "   "},
    ],
)
def test_executor_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        ExecutorConfig(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"temperature": -0.1},
        {"top_p": 1.5},
        {"repetition_penalty": 0.0},
        {"mirostat": 1},
        {"mirostat_eta": 0.0},
    ],
)
def test_sampling_config_validation(kwargs) -> None:
    with pytest.raises(ValueError):
        SamplingConfig(**kwargs)


def test_generation_params_normalise_inputs() -> None:
    params = GenerationParams(anti_prompts="User:", sampling={"top_k": 5})

    assert params.anti_prompts == ("User:",)
    assert params.sampling.top_k == 5
    with pytest.raises(ValueError):
        GenerationParams(max_tokens=-2)
    with pytest.raises(ValueError):
        GenerationParams(tokens_to_keep=-1)


def test_load_run_config_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "run.yaml"
    path.write_text(
        "executor:\n"
        "  context_size: 128\n"
        "  session_path: cache/prompt.session\n"
        "generation:\n"
        "  max_tokens: 8\n"
        "  anti_prompts:\n"
        "    - 'Q:'\n",
        encoding="utf-8",
    )

    cfg = load_run_config(path)

    assert cfg.executor.context_size == 128
    assert cfg.executor.session_path == "cache/prompt.session"
    assert cfg.generation.anti_prompts == ("Q:",)


def test_load_run_config_rejects_non_mapping(tmp_path: Path) -> None:
    path = tmp_path / "run.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")

    with pytest.raises(ValueError, match="mapping"):
        load_run_config(path)
