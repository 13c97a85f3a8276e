#!/usr/bin/env python3
"""
Feed directory change events into the change relay.

Reads one JSON envelope per line (``{"type": "user_changed", "user": {...}}``)
from a file or stdin and applies them in order.  Blank lines are skipped.
A failing event is reported and the run continues.

Usage:
    python3 scripts/relay_events.py --file events.jsonl
    cat events.jsonl | python3 scripts/relay_events.py
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Apply directory change events from a JSON-lines file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--file",
        type=Path,
        default=None,
        help="JSON-lines file of event envelopes (default: stdin).",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Configuration sets directory (default: inventory_config/sets).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print the outcome of every event, not only failures.",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    from inventory_config import get_active_config
    from inventory_config.bridges import engine_kwargs
    from inventory_kernel.db.engine import get_session_factory, init_engine_from_url
    from inventory_services.change_relay import ChangeRelay, RelayOutcome
    from inventory_services.listing_cache import InMemoryCacheBackend, ListingCache
    from inventory_services.orchestrator import InventoryOrchestrator

    if args.file is not None and not args.file.is_file():
        print(f"ERROR: File not found: {args.file}", file=sys.stderr)
        return 1

    try:
        config = get_active_config(config_dir=args.config_dir)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1
    init_engine_from_url(config.database.url, **engine_kwargs(config))

    cache = ListingCache(InMemoryCacheBackend(), config.listing.cache_ttl_seconds)
    relay = ChangeRelay(
        InventoryOrchestrator(get_session_factory(), config, cache),
        config.relay,
    )

    stream = args.file.open(encoding="utf-8") if args.file is not None else sys.stdin
    try:
        lines = [line for line in (raw.strip() for raw in stream) if line]
    finally:
        if stream is not sys.stdin:
            stream.close()

    results = relay.process_batch(lines)
    failed = 0
    for number, result in enumerate(results, start=1):
        if result.outcome is RelayOutcome.FAILED:
            failed += 1
            print(f"  line {number}: FAILED {result.event_type}: {result.detail}", file=sys.stderr)
        elif args.verbose:
            print(f"  line {number}: {result.outcome.value} {result.event_type}: {result.detail}")

    applied = sum(r.outcome is RelayOutcome.APPLIED for r in results)
    print(f"Events: {len(results)}, applied: {applied}, failed: {failed}")
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
