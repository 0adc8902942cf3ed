from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from typing import List, Optional, Sequence

from .config import load_config
from .connection import RpcConnection
from .detection.coordinator import DetectionCoordinator
from .detection.criteria import PRESETS
from .detection.types import CandidateRecord, DetectionSummary
from .http import close_session
from .logging_utils import configure_logging
from .providers.dexscreener import DexScreenerGateway

log = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="solscout", description="Detect new Solana tokens")
    p.add_argument("--config", default=None, help="Path to a TOML config file")
    p.add_argument("--log-level", default=None)
    p.add_argument("--json-logs", action="store_true", default=None, help="Emit JSON log lines")
    p.add_argument("--log-file", default=None)
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the detection engine until interrupted")
    run.add_argument("--criteria", choices=sorted(PRESETS), default=None)
    run.add_argument("--sources", default=None, help="Comma separated detection sources")
    run.add_argument("--stagger", type=float, default=None, help="Seconds between strategy starts")
    run.add_argument("--diagnostics", action="store_true", help="Also print per-batch summaries")

    sub.add_parser("health", help="Probe the configured RPC endpoint")
    return p


def _print_candidates(records: List[CandidateRecord]) -> None:
    for record in records:
        print(json.dumps(dataclasses.asdict(record), default=str), flush=True)


def _print_summary(summary: DetectionSummary) -> None:
    print(json.dumps({"summary": dataclasses.asdict(summary)}), file=sys.stderr, flush=True)


async def _serve_until(coordinator: DetectionCoordinator, stop: asyncio.Event) -> None:
    """Start *coordinator* and run until *stop* is set, even mid-startup."""

    starting = asyncio.create_task(coordinator.start(), name="solscout-start")
    waiting = asyncio.create_task(stop.wait(), name="solscout-stop")
    try:
        await asyncio.wait({starting, waiting}, return_when=asyncio.FIRST_COMPLETED)
        if starting.done():
            starting.result()
            await waiting
    finally:
        for task in (starting, waiting):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await coordinator.stop()


async def _run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.sources:
        config.enabled_sources = [s.strip() for s in args.sources.split(",") if s.strip()]
        config.required_sources = list(config.enabled_sources)
    if args.stagger is not None:
        config.stagger_delay = max(0.0, args.stagger)

    connection = RpcConnection(config.solana_rpc_url, config.solana_ws_url)
    gateway = DexScreenerGateway(
        base_url=config.dexscreener_base_url, cache_ttl=config.gateway_cache_ttl
    )
    coordinator = DetectionCoordinator(
        connection,
        gateway,
        config,
        criteria=args.criteria,
        on_candidates=_print_candidates,
        on_result=_print_summary if args.diagnostics else None,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        await _serve_until(coordinator, stop)
    finally:
        await connection.close()
    return 0


async def _health(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    connection = RpcConnection(config.solana_rpc_url, config.solana_ws_url)
    try:
        slot = await connection.get_slot()
    except Exception as exc:
        log.error("RPC probe failed: %s", exc)
        return 1
    finally:
        await connection.close()
    print(json.dumps({"rpc": config.solana_rpc_url, "slot": slot}))
    return 0


async def _main(args: argparse.Namespace) -> int:
    try:
        if args.command == "health":
            return await _health(args)
        return await _run(args)
    finally:
        await close_session()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level, json_logs=args.json_logs, logfile=args.log_file)
    try:
        return asyncio.run(_main(args))
    except ConnectionError as exc:
        log.error("Detection engine failed to start: %s", exc)
        return 1
    except (ValueError, OSError) as exc:
        log.error("Invalid configuration: %s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
