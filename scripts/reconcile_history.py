#!/usr/bin/env python3
"""
Check or repair device assignment ledgers.

Finds devices whose ledger breaks a ledger invariant (null-user records,
records left open, holder not matching the open record, stale status) and
repairs them in place.  Repairs are idempotent: a second run reports
nothing to do.

Usage:
    python3 scripts/reconcile_history.py [options]

Examples:
    # Report violations only, write nothing
    python3 scripts/reconcile_history.py --dry-run

    # Repair every laptop
    python3 scripts/reconcile_history.py --kind laptops --actor <uuid>

    # Repair one device
    python3 scripts/reconcile_history.py --kind phone --device <uuid> --actor <uuid>
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check and repair device assignment ledgers.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--kind",
        default=None,
        help="Device kind (laptop, monitor, printer, projector, phone, tool). Default: all.",
    )
    parser.add_argument(
        "--device",
        default=None,
        help="Repair a single device id (requires --kind).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report violations; do not write.",
    )
    parser.add_argument(
        "--actor",
        default=None,
        help="Actor UUID recorded as updater (default: RECONCILE_ACTOR_ID env or new UUID).",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Configuration sets directory (default: inventory_config/sets).",
    )
    return parser.parse_args()


def check_ledgers(session, kind: str | None, device: str | None) -> dict:
    """Violations per device id for one device (``kind`` and ``device`` given) or many."""
    from inventory_kernel.services.reconciliation_service import ReconciliationService

    service = ReconciliationService(session)
    if device is None:
        return service.check_all(kind)
    violations = service.check_device(kind, device)
    return {device: violations} if violations else {}


def main() -> int:
    args = _parse_args()
    actor_id = UUID(args.actor) if args.actor else UUID(os.environ.get("RECONCILE_ACTOR_ID", str(uuid4())))

    from inventory_config import get_active_config
    from inventory_config.bridges import engine_kwargs
    from inventory_kernel.db.engine import get_session_factory, init_engine_from_url
    from inventory_kernel.exceptions import InventoryError
    from inventory_services.listing_cache import InMemoryCacheBackend, ListingCache
    from inventory_services.orchestrator import InventoryOrchestrator

    try:
        config = get_active_config(config_dir=args.config_dir)
    except (FileNotFoundError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    try:
        init_engine_from_url(config.database.url, **engine_kwargs(config))
    except Exception as e:
        print(f"ERROR: Database init failed: {e}", file=sys.stderr)
        return 1

    if args.device is not None and args.kind is None:
        print("ERROR: --device requires --kind", file=sys.stderr)
        return 1

    if args.dry_run:
        session = get_session_factory()()
        try:
            report = check_ledgers(session, args.kind, args.device)
        except InventoryError as e:
            print(f"ERROR: [{e.code}] {e}", file=sys.stderr)
            return 1
        finally:
            session.close()
        if not report:
            print("No ledger violations found.")
            return 0
        print(f"{len(report)} device(s) with violations:")
        for device_id, violations in report.items():
            for violation in violations:
                print(f"  {device_id}: [{violation.invariant.value}] {violation.detail}")
        print("Dry run: nothing written.")
        return 0

    cache = ListingCache(InMemoryCacheBackend(), config.listing.cache_ttl_seconds)
    orchestrator = InventoryOrchestrator(get_session_factory(), config, cache)
    try:
        run = orchestrator.reconcile(actor_id, kind=args.kind, device_id=args.device)
    except InventoryError as e:
        print(f"ERROR: [{e.code}] {e}", file=sys.stderr)
        return 1

    if run.reports:
        print(f"Repaired {len(run.reports)} device(s):")
        for report in run.reports:
            print(
                f"  {report.kind.value} {report.device_id}: "
                f"{report.status_before} -> {report.status_after.value} "
                f"({', '.join(report.actions) or 'status only'})"
            )
    elif not run.failures:
        print("All ledgers already consistent.")

    if run.failures:
        print(f"{len(run.failures)} device(s) could not be repaired:", file=sys.stderr)
        for failure in run.failures:
            print(
                f"  {failure.kind.value} {failure.device_id}: [{failure.code}] {failure.message}",
                file=sys.stderr,
            )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
