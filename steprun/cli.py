from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from steprun.config_loader import load_config_file
from steprun.core import Options, build_context, build_steps, run_steps
from steprun.kinds import KindFactory, builtin_kinds
from steprun.model import AbortCause
from steprun.runner import EXIT_CANCELLED
from steprun.summary import write_summary

CONFIG_ENV = "STEPRUN_CONFIG"
DEFAULT_CONFIG_NAMES = ("steprun.toml", "steprun.yaml", "steprun.yml", "steprun.json")


def _discover_config_file(explicit: Path | None, search_dir: Path) -> Path | None:
    if explicit is not None:
        return explicit
    env = os.environ.get(CONFIG_ENV)
    if env:
        return Path(env)
    for name in DEFAULT_CONFIG_NAMES:
        candidate = search_dir / name
        if candidate.is_file():
            return candidate
    return None


def _setup_logger(verbose: bool) -> logging.Logger:
    logger = logging.getLogger("steprun")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="steprun")
    parser.add_argument(
        "--config",
        type=Path,
        help="Step file (*.toml, *.yaml, *.yml, *.json). Defaults to $STEPRUN_CONFIG, "
        "then steprun.{toml,yaml,yml,json} in the current directory.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the commands but do not run them.",
    )
    parser.add_argument(
        "--async",
        dest="use_async",
        action="store_true",
        help="Run steps on an asyncio event loop instead of blocking subprocess calls.",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Let step output go straight to the terminal instead of capturing it.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List the resolved steps and exit.",
    )
    parser.add_argument(
        "--summary",
        type=Path,
        help="Write a JSON run summary to this path.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Verbose logs.",
    )
    args = parser.parse_args(argv)

    logger = _setup_logger(args.verbose)

    config_path = _discover_config_file(args.config, Path.cwd())
    if config_path is None:
        logger.error(
            "No step file found (pass --config, set %s, or add one of: %s)",
            CONFIG_ENV,
            ", ".join(DEFAULT_CONFIG_NAMES),
        )
        return 2
    if not config_path.is_file():
        logger.error("Step file not found: %s", config_path)
        return 2

    try:
        loaded = load_config_file(config_path)
    except (OSError, ValueError) as e:
        logger.error("Failed to load config @ %s: %s", config_path, e)
        return 2

    options = Options(
        dry_run=bool(args.dry_run),
        stream=bool(args.stream),
        use_async=bool(args.use_async),
    )
    ctx = build_context(config=loaded, options=options, logger=logger)
    factory = KindFactory(builtin_kinds())
    logger.debug("Registered step kinds: %s", ", ".join(factory.registered_kinds))

    try:
        steps = build_steps(loaded, factory, ctx)
    except ValueError as e:
        logger.error("%s", e)
        return 2
    if not steps:
        logger.error("No steps defined in %s", config_path)
        return 2

    if args.list:
        for i, step in enumerate(steps):
            logger.info("%2d  %s  (cwd: %s)", i, step.label, step.cwd)
        return 0

    desc = loaded.description or config_path.name
    ver = loaded.version if loaded.version is not None else "?"
    logger.info("=== %s v%s (%d steps) ===", desc, ver, len(steps))

    result = run_steps(steps, ctx)

    if args.summary is not None:
        try:
            write_summary(args.summary, result)
        except OSError as e:
            logger.error("Failed to write summary @ %s: %s", args.summary, e)
            return 2
        logger.debug("Wrote summary to %s", args.summary)

    if result.ok:
        logger.info("Done.")
        return 0

    abort = result.abort
    if abort.cause is AbortCause.CANCELLED:
        logger.error("Interrupted.")
        return EXIT_CANCELLED
    # Signal deaths show up as negative return codes.
    return abort.exit_code if 0 < abort.exit_code < 256 else 1
