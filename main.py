"""
main.py — graphfleet application entry point.

Parses CLI args, runs pre-flight checks, loads the fleet configuration and
hands the graphs to the orchestrator. Ctrl-C (SIGINT) or SIGTERM tears every
graph down and exits immediately.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import traceback

# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="graphfleet",
        description="Launch a fleet of pipeline graphs and wait for all of them",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--config",
        default=None,
        help="Fleet YAML file (default: $GRAPHFLEET_CONFIG, then config/fleet.yaml)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN"],
        default=None,
        help="Minimum log level for stderr output (overrides the config file)",
    )
    p.add_argument(
        "--log-dir",
        default=None,
        help="Directory for the JSONL run log (overrides the config file)",
    )
    p.add_argument(
        "--poll-interval-ms",
        type=float,
        default=None,
        help="Completion poll interval per graph",
    )
    p.add_argument(
        "--expected-completions",
        type=int,
        default=None,
        help="Outputs each graph must emit before it counts as done",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Pre-flight checks
# ──────────────────────────────────────────────────────────────

def _check_python() -> None:
    """Abort if Python version is below 3.10."""
    if sys.version_info < (3, 10):
        print(
            f"[ERROR] Python 3.10+ required; running {sys.version}",
            file=sys.stderr,
        )
        sys.exit(1)
    print(f"[OK] Python {sys.version.split()[0]}")


def _apply_overrides(cfg, args: argparse.Namespace):
    """Layer CLI flags over the loaded config and re-validate."""
    from graphfleet.core.config import validate_config

    changes = {}
    if args.poll_interval_ms is not None:
        changes["poll_interval_ms"] = args.poll_interval_ms
    if args.expected_completions is not None:
        changes["expected_completions"] = args.expected_completions
    log_changes = {}
    if args.log_level is not None:
        log_changes["level"] = args.log_level
    if args.log_dir is not None:
        log_changes["log_dir"] = args.log_dir
    if log_changes:
        changes["logging"] = dataclasses.replace(cfg.logging, **log_changes)
    if not changes:
        return cfg
    cfg = dataclasses.replace(cfg, **changes)
    validate_config(cfg)
    return cfg


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    """Application entry point. Returns process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # 1. Python version check
    _check_python()

    from graphfleet.core import logger as run_log
    from graphfleet.core.config import load_config
    from graphfleet.core.constants import FleetConstants as C

    # 2. Configuration
    try:
        cfg = _apply_overrides(load_config(args.config), args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return C.EXIT_CONFIG_ERROR

    # 3. Logging: stdlib level + JSONL run log directory
    level_map = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING,
                 "WARNING": logging.WARNING, "ERROR": logging.ERROR}
    logging.basicConfig(level=level_map.get(cfg.logging.level.upper(), logging.INFO))
    log = run_log.configure(cfg.logging.log_dir)
    log.info("main", "config_loaded", {
        "graphs": [dataclasses.asdict(p) for p in cfg.pipelines],
        "poll_interval_ms": cfg.poll_interval_ms,
        "expected_completions": cfg.expected_completions,
        "signals": list(cfg.signals),
    })

    # 4. Host capacity
    C.validate(len(cfg.pipelines))

    # 5. Engine + orchestrator
    from graphfleet.engine.local import LocalGraphEngine
    from graphfleet.pipeline.orchestrator import Orchestrator

    orchestrator = Orchestrator(LocalGraphEngine(), cfg)
    for p in cfg.pipelines:
        print(f"[INFO] {p.config_source} graph-{p.graph_id} context {p.context_id}")

    exit_code = C.EXIT_OK
    try:
        exit_code = orchestrator.run(cfg.pipelines)
    except Exception:                              # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.critical("main", "unhandled_exception", {"traceback": tb})
        exit_code = C.EXIT_ALL_FAILED
    finally:
        log.flush()

    print(f"[INFO] graphfleet exited with code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
