#!/usr/bin/env python3
"""
Sweep runner: evaluate every expiring policy in a seed file.

Usage:
    python run_sweep.py --seed configs/demo_seed.json
    python run_sweep.py --seed configs/demo_seed.json --adapters live \
        --as-of 2025-07-01 --workers 8 --audit-csv audit.csv

The seed JSON holds policies (with their oracle conditions) and claims; see
``parametric_oracle.store.load_seed``.  Ctrl-C stops new evaluations while
those already running finish.
"""

from __future__ import annotations

import argparse
import signal
import statistics
import threading
from datetime import datetime, timezone

from main import build_engine
from parametric_oracle.audit_writers import write_audit_csv, write_audit_json
from parametric_oracle.config import EngineConfig
from parametric_oracle.models import ClaimStatus
from parametric_oracle.sweep import PolicySweep, SweepReport


# ============================================================================
# Summary statistics
# ============================================================================

def print_summary(report: SweepReport, n_due: int) -> None:
    decisions = list(report.evaluated.values())
    payouts = [d.payout_amount for d in decisions if d.approved]
    by_status: dict[str, int] = {}
    for d in decisions:
        by_status[d.claim_status.value] = by_status.get(d.claim_status.value, 0) + 1

    print("\n===== Summary =====")
    print(f"Policies due:                    {n_due}")
    print(f"Evaluated:                       {len(decisions)}")
    for status in ClaimStatus:
        if status.value in by_status:
            print(f"  {status.value:<30} {by_status[status.value]}")
    print(f"Failed:                          {len(report.failed)}")
    print(f"Skipped (cancelled):             {len(report.skipped)}")
    print(f"Expired:                         {len(report.expired)}")
    if payouts:
        print(f"  Min payout:    {min(payouts):.2f}")
        print(f"  Median payout: {statistics.median(payouts):.2f}")
        print(f"  Max payout:    {max(payouts):.2f}")
        print(f"  Total payout:  {sum(payouts):.2f}")
    print("===================\n")


# ============================================================================
# Main pipeline
# ============================================================================

def _parse_as_of(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def run(seed_path: str, adapters: str = "synthetic", workers: int | None = None,
        as_of: str | None = None, horizon_days: int | None = None,
        audit_csv: str | None = None, audit_json: str | None = None) -> SweepReport:
    config = EngineConfig.from_env()
    engine = build_engine(seed_path=seed_path, adapters=adapters, config=config)
    sweep = PolicySweep(engine.orchestrator, engine.store, workers=workers)

    moment = _parse_as_of(as_of)
    horizon = config.sweep_horizon_days if horizon_days is None else horizon_days
    n_due = len(sweep.due_policies(moment, horizon))

    print(f"=== Policy sweep ({adapters} adapters) ===")
    print(f"As of: {moment.isoformat()}  horizon: {horizon} days")
    print(f"Workers: {sweep.workers}\n")

    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())
    try:
        report = sweep.run(as_of=moment, cancel_event=cancel, horizon_days=horizon)
    finally:
        signal.signal(signal.SIGINT, previous)

    retried = engine.dispatcher.retry_due()
    if retried:
        print(f"Payout retries: {retried}")
    pending = engine.dispatcher.pending_reconciliation()
    if pending:
        print(f"Awaiting reconciliation: {', '.join(pending)}")

    print_summary(report, n_due)

    records = engine.store.list_audit()
    if audit_csv:
        write_audit_csv(records, audit_csv)
    if audit_json:
        write_audit_json(records, audit_json)

    print("Done.")
    return report


# ============================================================================
# CLI entry point
# ============================================================================

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Evaluate expiring parametric policies and dispatch payouts."
    )
    parser.add_argument("--seed", required=True,
                        help="Path to the policies/claims seed JSON file.")
    parser.add_argument("--adapters", choices=("synthetic", "live"), default="synthetic",
                        help="Data source line-up (default: synthetic).")
    parser.add_argument("--workers", type=int, default=None,
                        help="Concurrent policy evaluations (default: ORACLE_SWEEP_WORKERS).")
    parser.add_argument("--as-of", default=None,
                        help="Sweep reference time, ISO 8601 (default: now).")
    parser.add_argument("--horizon-days", type=int, default=None,
                        help="Also include policies ending this many days after --as-of.")
    parser.add_argument("--audit-csv", default=None, help="Write the audit trail as CSV.")
    parser.add_argument("--audit-json", default=None, help="Write the audit trail as JSON.")
    args = parser.parse_args()
    run(args.seed, adapters=args.adapters, workers=args.workers, as_of=args.as_of,
        horizon_days=args.horizon_days, audit_csv=args.audit_csv,
        audit_json=args.audit_json)


if __name__ == "__main__":
    main()
