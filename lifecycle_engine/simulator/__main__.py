#!/usr/bin/env python3
"""
CLI for dry-running rules against a context.

Usage:
    python -m lifecycle_engine.simulator --trigger LOW_BALANCE --context user.json --rules rules.yaml
    python -m lifecycle_engine.simulator -t PAYMENT_COMPLETED -c - --trace < user.json
    python -m lifecycle_engine.simulator -t LOW_BALANCE -c user.json -r rules.yaml --json
"""

import argparse
import json
import sys
from typing import List, Optional

from lifecycle_engine.rules.engine import RulesEngine
from lifecycle_engine.rules.models import UnknownTriggerError
from lifecycle_engine.simulator.report import format_report
from lifecycle_engine.simulator.simulator import InvalidContextError, Simulator
from lifecycle_engine.stores.memory import InMemoryRuleStore

EXIT_OK = 0
EXIT_INPUT_ERROR = 2


def create_parser() -> argparse.ArgumentParser:
    """Create and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="python -m lifecycle_engine.simulator",
        description="Show which rules would fire for a trigger and a user context",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m lifecycle_engine.simulator -t LOW_BALANCE -c user.json -r rules.yaml
  python -m lifecycle_engine.simulator -t BOT_START -c - --trace < user.json
        """
    )
    parser.add_argument(
        "--trigger", "-t",
        required=True,
        help="Trigger name (e.g. PAYMENT_COMPLETED, LOW_BALANCE)"
    )
    parser.add_argument(
        "--context", "-c",
        required=True,
        help="JSON file with the user context ('-' reads stdin)"
    )
    parser.add_argument(
        "--rules", "-r",
        help="YAML file with rules (a list, or a mapping with a 'rules' key)"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Include per-condition evaluation traces"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON"
    )
    return parser


def _read_context(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        store = InMemoryRuleStore.from_yaml(args.rules) if args.rules else InMemoryRuleStore()
        context_text = _read_context(args.context)
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    simulator = Simulator(RulesEngine(store))
    try:
        result = simulator.simulate(args.trigger, context_text, trace=args.trace)
    except (UnknownTriggerError, InvalidContextError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_INPUT_ERROR

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    else:
        print(format_report(result))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
