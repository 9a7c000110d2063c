from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
from typing import Optional

from perturbzoom.config import SessionConfig, load_config, normalise_config
from perturbzoom.orbit import ReferenceOrbitEngine, set_reference_precision
from perturbzoom.period import get_period_rule
from perturbzoom.pipeline import RenderSession, backend_info, choose_backend
from perturbzoom.util.logging_setup import configure_logging, get_logger, stop_logging
from perturbzoom.util.manifest import build_manifest, write_manifest
from perturbzoom.util.progress import TqdmSink, logging_sink

def _git_commit() -> Optional[str]:
    try:
        r = subprocess.run(["git", "rev-parse", "HEAD"], capture_output=True, text=True, check=True)
        return r.stdout.strip()
    except (OSError, subprocess.CalledProcessError):
        return None

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="perturbzoom", description="Perturbation-theory deep zoom escape-time renderer (CPU/GPU).")
    p.add_argument("--config", type=str, default=None, help="Path to config JSON. If omitted, built-in defaults are used.")
    p.add_argument("--backend", type=str, default=None, choices=["auto", "cpu", "gpu"], help="Override the config backend.")
    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level.")
    p.add_argument("--log-file", type=str, default="render.log", help="Log file path (rotating). Set empty to disable file logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("render", help="Render escape/period arrays to an .npz file.")
    r.add_argument("--output", type=str, default=None, help="Override output path from config.")
    r.add_argument("--workers", type=int, default=None, help="Override worker_count from config.")
    r.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")

    o = sub.add_parser("orbit", help="Iterate the reference orbit and print its checkpoint table.")
    o.add_argument("--iterations", type=int, default=None, help="Orbit length (defaults to config.iteration_cap).")

    sub.add_parser("probe", help="Print backend capability info as JSON.")

    return p

def _cmd_render(cfg, args) -> int:
    logger = get_logger()
    if args.output:
        cfg["output"] = args.output
    if args.workers:
        cfg["worker_count"] = args.workers
    config = SessionConfig.from_dict(cfg)

    sink = logging_sink if args.no_progress else TqdmSink(config.width * config.height)
    try:
        session = RenderSession(config, sink=sink)
        result = session.run()
    finally:
        if isinstance(sink, TqdmSink):
            sink.close()

    result.save_npz(config.output)
    logger.info("Result arrays written: %s", config.output)

    manifest = build_manifest(
        config=config.to_dict(),
        backend_info=backend_info(session.backend, session.board_dims),
        git_commit=_git_commit(),
        summary=result.stats,
    )
    write_manifest(os.path.join("artifacts", "run.json"), manifest)
    logger.info("Run manifest written: artifacts/run.json")
    return 0

def _cmd_orbit(cfg, args) -> int:
    config = SessionConfig.from_dict(cfg)
    length = args.iterations or config.iteration_cap
    set_reference_precision(
        config.pixel_size, length,
        min_digits=config.min_precision_digits, max_digits=config.max_precision_digits,
    )
    engine = ReferenceOrbitEngine(
        config.center,
        exponent=config.exponent,
        escape_radius_sq=config.escape_radius_sq,
        period_rule=get_period_rule(config.period_rule),
    )
    engine.extend_to(length)
    escape = engine.escape
    print(f"orbit length: {len(engine)}")
    print(f"escaped: {escape.escaped} at iteration {escape.escape_iteration}" if escape.escaped else "escaped: False")
    print("checkpoints:")
    for cp in engine.checkpoints:
        print(f"  {cp.iteration:>8d}  {cp.value.real:+.17e} {cp.value.imag:+.17e}i")
    near = engine.find_near_periodic_checkpoints()
    if near:
        print(f"near-periodic checkpoints: {near}")
    return 0

def _cmd_probe(cfg, args) -> int:
    config = SessionConfig.from_dict(cfg)
    dims = (min(config.board_size, config.width), min(config.board_size, config.height))
    resolved = choose_backend(config.backend, dims)
    info = backend_info(resolved, dims)
    print(json.dumps(info, indent=2, sort_keys=True, default=str))
    return 0

def main(argv: Optional[list] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    log_file = args.log_file if args.log_file and args.log_file.strip() else None
    listener = configure_logging(level=log_level, console=True, log_file=log_file)

    try:
        cfg = normalise_config(load_config(args.config))
        if args.backend:
            cfg["backend"] = args.backend

        if args.cmd == "render":
            return _cmd_render(cfg, args)
        if args.cmd == "orbit":
            return _cmd_orbit(cfg, args)
        if args.cmd == "probe":
            return _cmd_probe(cfg, args)

        raise RuntimeError("Unknown command.")
    finally:
        stop_logging(listener)

if __name__ == "__main__":
    raise SystemExit(main())
