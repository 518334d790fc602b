# ruff: noqa: E402
"""Streaming inference CLI for the stateful executor."""

from __future__ import annotations

# Ensure local src/ is on sys.path when running from the repo without installation
import os as _os
import sys as _sys

_REPO_ROOT = _os.path.abspath(_os.path.join(_os.path.dirname(__file__), ".."))
_SRC_PATH = _os.path.join(_REPO_ROOT, "src")
if _SRC_PATH not in _sys.path and _os.path.isdir(_SRC_PATH):
    _sys.path.insert(0, _SRC_PATH)

import argparse
from dataclasses import replace
from pathlib import Path
from typing import Optional

from stateful_executor.inference import (
    CancellationToken,
    GenerationParams,
    InferenceLoopController,
    RunConfig,
    load_run_config,
    load_transformers_engine,
)
from stateful_executor.utils import configure_logging, seed_everything


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run streaming generation with session-file reuse."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML run file with engine/executor/generation sections.",
    )
    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="Prompt text to decode. Mutually exclusive with --prompt-file.",
    )
    parser.add_argument(
        "--prompt-file",
        type=Path,
        default=None,
        help="Optional text file containing the prompt. Overrides --prompt.",
    )
    parser.add_argument(
        "--session",
        type=str,
        default=None,
        help="Session file used to skip re-evaluating a previously seen prompt prefix.",
    )
    parser.add_argument(
        "--prefill-only",
        action="store_true",
        help="Evaluate the prompt to warm the cache without generating.",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help="Override the generation budget (-1 for unbounded).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help="Override sampling temperature.",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Optional RNG seed overriding the sampling config.",
    )
    parser.add_argument(
        "--anti-prompt",
        action="append",
        default=None,
        help="Stop string (repeatable).",
    )
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Keep reading follow-up inputs from stdin after each response.",
    )
    parser.add_argument(
        "--state-in",
        type=Path,
        default=None,
        help="Executor state JSON to restore before generating.",
    )
    parser.add_argument(
        "--state-out",
        type=Path,
        default=None,
        help="Where to write the executor state JSON after generating.",
    )
    parser.add_argument(
        "--hf-verbosity",
        choices=["critical", "error", "warning", "info", "debug"],
        default=None,
        help="Optional override for Hugging Face `TRANSFORMERS_VERBOSITY`.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level name; falls back to SE_LOG_LEVEL, then INFO.",
    )
    return parser.parse_args()


def resolve_prompt(args: argparse.Namespace) -> str:
    if args.prompt_file is not None:
        text = args.prompt_file.read_text(encoding="utf-8").strip()
        if not text:
            raise ValueError(f"Prompt file {args.prompt_file} is empty.")
        return text
    if args.prompt is None or not args.prompt.strip():
        raise ValueError("Provide either --prompt or --prompt-file.")
    return args.prompt


def apply_overrides(run_cfg: RunConfig, args: argparse.Namespace) -> GenerationParams:
    params = run_cfg.generation
    sampling = params.sampling
    if args.temperature is not None:
        sampling = replace(sampling, temperature=args.temperature)
    if args.seed is not None:
        sampling = replace(sampling, seed=args.seed)
    anti_prompts = tuple(params.anti_prompts) + tuple(args.anti_prompt or ())
    return replace(
        params,
        anti_prompts=anti_prompts,
        max_tokens=params.max_tokens if args.max_tokens is None else args.max_tokens,
        sampling=sampling,
    )


def stream_response(
    controller: InferenceLoopController,
    text: str,
    params: GenerationParams,
    cancel_token: CancellationToken,
) -> None:
    try:
        for chunk in controller.run(text, params, cancel_token):
            print(chunk, end="", flush=True)
    except KeyboardInterrupt:
        cancel_token.cancel()
    print(flush=True)


def _next_input() -> Optional[str]:
    try:
        line = input("> ")
    except EOFError:
        return None
    return line


def main() -> None:
    args = parse_args()
    if args.hf_verbosity is not None:
        _os.environ["TRANSFORMERS_VERBOSITY"] = args.hf_verbosity
    logger = configure_logging(
        args.log_level,
        name="stateful executor",
        extra_loggers=["transformers"],
    )
    prompt = resolve_prompt(args)
    run_cfg = load_run_config(args.config) if args.config is not None else RunConfig()
    executor_cfg = run_cfg.executor
    if args.session is not None:
        executor_cfg = replace(executor_cfg, session_path=args.session)
    params = apply_overrides(run_cfg, args)
    seed_everything(params.sampling.seed)

    engine = load_transformers_engine(
        run_cfg.engine,
        context_size=executor_cfg.context_size,
        batch_size=executor_cfg.batch_size,
    )
    controller = InferenceLoopController(engine, config=executor_cfg)
    if args.state_in is not None:
        controller.load_state(args.state_in)

    if args.prefill_only:
        controller.prefill(prompt)
        logger.info("prefill_only | n_past=%d", controller.state.past_tokens_count)
    else:
        stream_response(controller, prompt, params, CancellationToken())
        while args.interactive:
            follow_up = _next_input()
            if follow_up is None:
                break
            stream_response(controller, follow_up, params, CancellationToken())

    if controller.state.session_file_path:
        controller.persist_session_file(controller.state.session_file_path)
    if args.state_out is not None:
        controller.save_state(args.state_out)
    logger.info(
        "infer_complete | n_past=%d | session=%s",
        controller.state.past_tokens_count,
        controller.state.session_file_path or "disabled",
    )


if __name__ == "__main__":
    main()
