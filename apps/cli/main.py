"""`taleweaver`: play the village scenario against local models.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --model GM=models/llama3.gguf --model NPC=models/llama3.gguf play`
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import Sequence

from taleweaver.engine.config import (
    BATTLE_ROLE,
    GM_ROLE,
    NPC_ROLE,
    OrchestratorConfig,
    load_config,
    parse_model_bindings,
)
from taleweaver.engine.orchestrator import RoleOrchestrator
from taleweaver.engine.pool import EngineLoadError
from taleweaver.engine.registry import backend_for_path, list_backends

from apps.cli.output import format_table, print_json
from apps.cli.play import play_repl

PLAY_ROLES = (GM_ROLE, NPC_ROLE)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="taleweaver", description="Local LLM role orchestration for a text RPG")
    p.add_argument(
        "--model",
        action="append",
        default=[],
        metavar="ROLE=PATH",
        help="Bind a role to a model artifact (repeatable; roles with the same path share one instance)",
    )
    p.add_argument("--config", help="JSON config file (models, engine, roles)")
    p.add_argument(
        "--backend",
        choices=list_backends(),
        default=None,
        help="Force an engine backend (default: picked from the artifact path)",
    )
    p.add_argument("--n-ctx", type=int, default=None, help="Context window in tokens (default: 2048)")
    p.add_argument("--threads", type=int, default=None, help="Compute threads (default: 8)")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: %(default)s)",
    )

    sub = p.add_subparsers(dest="command")

    sub.add_parser("play", help="Talk to the village elder (default)")

    roles_p = sub.add_parser("roles", help="Show the role to model binding without loading anything")
    roles_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def resolve_config(args: argparse.Namespace) -> OrchestratorConfig:
    """Build the orchestrator config from `--config` and/or `--model` flags.

    `--model` bindings override the file's bindings role by role.
    """
    bindings = parse_model_bindings(args.model)
    if args.config:
        config = load_config(args.config)
        if bindings:
            config = replace(config, model_paths={**config.model_paths, **bindings})
    elif bindings:
        config = OrchestratorConfig(model_paths=bindings)
    else:
        raise ValueError("No models configured; pass --model ROLE=PATH or --config FILE.")

    engine_overrides = {}
    if args.backend is not None:
        engine_overrides["backend"] = args.backend
    if args.n_ctx is not None:
        engine_overrides["n_ctx"] = args.n_ctx
    if args.threads is not None:
        engine_overrides["n_threads"] = args.threads
        engine_overrides["n_threads_batch"] = args.threads
    if engine_overrides:
        config = replace(config, engine=replace(config.engine, **engine_overrides))

    config.validate()
    return config


def binding_rows(config: OrchestratorConfig) -> list[dict[str, object]]:
    """One row per role, with the roles sharing its artifact."""
    by_path: dict[str, list[str]] = {}
    for role, path in config.model_paths.items():
        by_path.setdefault(path, []).append(role)

    rows = []
    for role, path in config.model_paths.items():
        rows.append(
            {
                "role": role,
                "path": path,
                "backend": backend_for_path(path, config.engine.backend),
                "shared_with": [r for r in by_path[path] if r != role],
            }
        )
    return rows


def cmd_roles(config: OrchestratorConfig, *, json_output: bool) -> int:
    rows = binding_rows(config)
    if json_output:
        print_json({"roles": rows, "instances": len({r["path"] for r in rows})})
        return 0
    print(
        format_table(
            ["role", "backend", "shared with", "path"],
            [(r["role"], r["backend"], ",".join(r["shared_with"]) or "-", r["path"]) for r in rows],
        )
    )
    missing = [r for r in (GM_ROLE, NPC_ROLE, BATTLE_ROLE) if r not in config.model_paths]
    if missing:
        print(f"\nunbound roles: {', '.join(missing)}")
    return 0


def cmd_play(config: OrchestratorConfig) -> int:
    missing = [r for r in PLAY_ROLES if r not in config.model_paths]
    if missing:
        print(f"error: play needs models for roles: {', '.join(missing)}", file=sys.stderr)
        return 2
    if BATTLE_ROLE not in config.model_paths:
        print("note: no BATTLE model bound; /fight is unavailable", file=sys.stderr)

    print("loading models...", file=sys.stderr)
    try:
        orch = RoleOrchestrator(config)
    except EngineLoadError as exc:
        print(f"Fatal model load error: {exc}", file=sys.stderr)
        return 1

    try:
        return play_repl(orch)
    finally:
        orch.shutdown()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = resolve_config(args)
    except (OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    # `taleweaver` defaults to `taleweaver play`.
    command = args.command or "play"

    if command == "roles":
        return cmd_roles(config, json_output=bool(getattr(args, "json", False)))
    if command == "play":
        return cmd_play(config)
    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
