#!/usr/bin/env python3
"""Run the maintenance sweeps over authentication state in the TTL store.

Redis expiry is the primary cleanup mechanism; these sweeps only remove
entries that are logically stale but still visible (expired challenge
records, revocation entries without a TTL, session keys at TTL 0).

Usage:
    # Everything, against the configured REDIS_URL:
    python scripts/sweep_auth_state.py

    # Only the revocation registry, reporting without deleting:
    python scripts/sweep_auth_state.py --only revocations --dry-run

Environment Variables:
    REDIS_URL: Redis connection string
    ALLOW_REDIS_FALLBACK_DEV: Allow running against an in-memory store (useful only for smoke tests)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Iterable

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

SWEEPS = ("otp", "revocations", "sessions")


async def run_sweeps(runtime, targets: Iterable[str], *, dry_run: bool = False) -> dict:
    """Run the selected sweeps and return removed counts keyed by sweep name.

    With ``dry_run`` nothing is deleted: each sweep reports how many entries it
    would remove, and the revocation registry size is added as
    ``revocations_outstanding``.
    """
    results: dict = {}
    for target in targets:
        if target not in SWEEPS:
            raise ValueError(f"unknown sweep: {target}")
        if target == "otp":
            results["otp"] = await runtime.otp.sweep_expired(dry_run=dry_run)
        elif target == "revocations":
            results["revocations"] = await runtime.revocations.sweep_stale(dry_run=dry_run)
            if dry_run:
                results["revocations_outstanding"] = await runtime.revocations.count()
        else:
            results["sessions"] = await runtime.teardown.sweep_expired(dry_run=dry_run)
    return results


async def _main(targets: list[str], dry_run: bool) -> dict:
    # Import here to avoid loading config before env vars are set
    from hyreauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await run_sweeps(runtime, targets, dry_run=dry_run)
    finally:
        close = getattr(runtime.cache, "close", None)
        if close is not None:
            await close()


def main():
    parser = argparse.ArgumentParser(
        description="Sweep stale authentication state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--only",
        choices=SWEEPS,
        action="append",
        help="Run only the named sweep (repeatable); default runs all",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what is outstanding without deleting anything",
    )

    args = parser.parse_args()
    targets = args.only or list(SWEEPS)

    try:
        results = asyncio.run(_main(targets, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] " if args.dry_run else ""
    for name, count in results.items():
        print(f"{prefix}{name}: {count}")


if __name__ == "__main__":
    main()
