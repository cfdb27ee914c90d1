"""Subscription expiry sweep worker.

Usage:
    python -m teammove.workers.expiry_sweep --once
    python -m teammove.workers.expiry_sweep --loop

Downgrades lapsed packs and unpaid recurring plans to the free plan.
Grace period comes from PAST_DUE_GRACE_DAYS.
"""
from __future__ import annotations

import argparse
import os
import time

from teammove.core.config import settings
from teammove.core.logging import configure_logging, log_event
from teammove.features.billing.expiry_job import run_expiry_sweep
from teammove.features.billing.wiring import build_billing
from teammove.models.subscription import utc_now


DEFAULT_LOOP_SECONDS = int(os.getenv("TEAMMOVE_EXPIRY_SWEEP_LOOP_SECONDS", "3600") or 3600)


def _sweep_once(limit: int) -> dict:
    billing = build_billing(settings, provider=None)
    return run_expiry_sweep(
        billing.lifecycle,
        now=utc_now(),
        grace_days=settings.PAST_DUE_GRACE_DAYS,
        limit=limit,
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Subscription expiry sweep")
    parser.add_argument("--once", action="store_true", help="Sweep once and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=100, help="Batch size per iteration")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between sweeps (when --loop)",
    )
    args = parser.parse_args()
    configure_logging(settings.ENV)

    if args.once:
        stats = _sweep_once(args.limit)
        print(f"[expiry-sweep] Downgraded: {stats['downgraded']} of {stats['candidates']} candidates")
        return

    # Default to loop mode when not explicitly once
    print(f"[expiry-sweep] Starting loop (sleep={args.sleep}s, batch={args.limit}). CTRL+C to stop.")
    try:
        while True:
            try:
                stats = _sweep_once(args.limit)
                if stats["downgraded"]:
                    print(f"[expiry-sweep] Downgraded {stats['downgraded']} subscriptions")
            except Exception as e:
                log_event("error", "billing.expiry.sweep_failed", extra={"error": e}, exc_info=True)
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[expiry-sweep] Stopped")


if __name__ == "__main__":
    main()
