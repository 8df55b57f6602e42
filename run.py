#!/usr/bin/env python3
"""
Canvas Runtime - Main runner script

Usage:
    python run.py                              # Run the basic scenario until done
    python run.py --scenario translate         # Pick a built-in scenario
    python run.py --ticks 10                   # Cap the number of ticks
    python run.py --record recording.json      # Save the event log
    python run.py --replay recording.json      # Replay a saved log
    python run.py --import canvas.json         # Start from an exported session
    python run.py --export canvas.json         # Save the session afterwards
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from canvas_runtime.config import get, load_config
from canvas_runtime.simulation import (
    CanvasSession,
    export_session,
    import_session,
    list_scenarios,
    load_scenario,
)
from canvas_runtime.simulation.types import ErrorStats
from canvas_runtime.world.errors import CanvasError
from canvas_runtime.world.event_log import atomic_write_text, load_event_log, save_event_log

logger = logging.getLogger("canvas_runtime")

DEFAULT_MAX_TICKS = 50


def format_micro(amount_micro: int) -> str:
    return f"${amount_micro / 1_000_000:,.2f}"


def print_balances(session: CanvasSession) -> None:
    for agent in session.agents.values():
        print(f"  {agent.id:<10} {agent.name:<12} {agent.status.value:<10} {format_micro(agent.balance_micro)}")


def print_error_summary(stats: ErrorStats) -> None:
    """Print agent error summary at end of run."""
    if stats.total_errors == 0:
        return

    print("\n" + "=" * 60)
    print("AGENT ERROR SUMMARY")
    print("=" * 60)
    print(f"Total errors: {stats.total_errors}")

    if stats.by_type:
        print("\nBy type:")
        for error_type, count in sorted(stats.by_type.items(), key=lambda x: -x[1]):
            pct = count * 100 / stats.total_errors
            print(f"  {error_type}: {count} ({pct:.0f}%)")

    if stats.by_agent:
        print("\nBy agent:")
        for agent_id, count in sorted(stats.by_agent.items(), key=lambda x: -x[1])[:5]:
            print(f"  {agent_id}: {count}")

    if stats.recent_errors:
        recent = stats.recent_errors[-1]
        print("\nMost recent error:")
        print(f"  Tick: {recent.tick}")
        print(f"  Agent: {recent.agent_id}")
        print(f"  Message: {recent.message[:200]}")

    print("=" * 60)


def run_replay(path: str, quiet: bool) -> int:
    log = load_event_log(path)
    session = CanvasSession()
    engine = session.enter_replay(log)
    final = engine.run_to_end()
    if not quiet:
        index, total = engine.get_position()
        print(f"Replayed {index}/{total} events ({log.total_ticks} ticks)")
    print(json.dumps(final, indent=2))
    return 0


def run_session(args: argparse.Namespace) -> int:
    session = CanvasSession()
    if args.import_path:
        with open(args.import_path) as f:
            import_session(session, f.read())
    else:
        load_scenario(session, args.scenario)

    if args.record:
        session.start_recording()

    max_ticks = args.ticks if args.ticks is not None else DEFAULT_MAX_TICKS
    executed = session.run_ticks(max_ticks)

    if args.record:
        log = session.stop_recording()
        save_event_log(log, args.record)

    if args.export:
        atomic_write_text(args.export, export_session(session))

    if not args.quiet:
        print(f"=== Run {'complete' if session.done else 'stopped'} after {executed} tick(s) ===")
        print(f"Virtual time: {session.ledger.virtual_time_ms} ms")
        print("Balances:")
        print_balances(session)
        print("Transactions:")
        for tx in session.transactions.values():
            print(f"  {tx.id:<8} {tx.source_id} -> {tx.target_id} {tx.state.value:<12} {format_micro(tx.amount_micro)}")
        if args.record:
            print(f"Event log: {args.record}")
        if args.export:
            print(f"Session snapshot: {args.export}")
        print_error_summary(session.runtime.error_stats)
    return 0


def main() -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Run a Canvas Runtime simulation"
    )
    parser.add_argument(
        "--config", default=None, help="Path to config file (default: config/config.yaml)"
    )
    parser.add_argument(
        "--scenario", default="basic", choices=list_scenarios(), help="Built-in scenario to load"
    )
    parser.add_argument("--ticks", type=int, help="Maximum ticks to run")
    parser.add_argument("--record", metavar="PATH", help="Write the event log to PATH")
    parser.add_argument("--replay", metavar="PATH", help="Replay an event log and print the final state")
    parser.add_argument("--export", metavar="PATH", help="Write the session snapshot to PATH")
    parser.add_argument(
        "--import", dest="import_path", metavar="PATH", help="Load a session snapshot instead of a scenario"
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress output")
    args: argparse.Namespace = parser.parse_args()

    load_config(args.config)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else str(get("logging.level", "INFO")),
        format=str(get("logging.format", "%(asctime)s %(levelname)s %(name)s: %(message)s")),
    )

    try:
        if args.replay:
            code = run_replay(args.replay, args.quiet)
        else:
            code = run_session(args)
    except (CanvasError, OSError) as e:
        logger.error("%s", e)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
