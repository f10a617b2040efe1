"""
Audit exports: JSON and CSV dumps of evaluation records for dispute review.
"""

from __future__ import annotations

import csv
import json
from typing import Iterable

from parametric_oracle.models import AuditRecord


def _record_dict(r: AuditRecord) -> dict:
    return {
        "id": r.id,
        "claim_id": r.claim_id,
        "policy_id": r.policy_id,
        "outcome": r.outcome,
        "recorded_at": r.recorded_at.isoformat(),
        "decision": r.decision,
        "readings": list(r.readings),
        "errors": list(r.errors),
    }


# ============================================================================
# JSON
# ============================================================================

def write_audit_json(records: Iterable[AuditRecord], path: str) -> None:
    """Write the full audit trail, readings and condition evidence included."""
    rows = [_record_dict(r) for r in records]
    with open(path, "w") as f:
        json.dump({"records": rows}, f, indent=2, default=str)
    print(f"Wrote audit JSON: {path}  ({len(rows)} records)")


# ============================================================================
# CSV
# ============================================================================

def write_audit_csv(records: Iterable[AuditRecord], path: str) -> None:
    """Write one flat row per audit record."""
    fieldnames = [
        "id", "claim_id", "policy_id", "outcome", "recorded_at",
        "approved", "payout_percentage", "payout_amount", "confidence",
        "requires_manual_review", "sources", "errors",
    ]
    n = 0
    with open(path, "w", newline="") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        for r in records:
            d = r.decision or {}
            w.writerow({
                "id": r.id,
                "claim_id": r.claim_id,
                "policy_id": r.policy_id,
                "outcome": r.outcome,
                "recorded_at": r.recorded_at.isoformat(),
                "approved": d.get("approved", ""),
                "payout_percentage": d.get("payout_percentage", ""),
                "payout_amount": d.get("payout_amount", ""),
                "confidence": d.get("confidence", ""),
                "requires_manual_review": d.get("requires_manual_review", ""),
                "sources": ";".join(sorted({rd["source"] for rd in r.readings})),
                "errors": " | ".join(r.errors),
            })
            n += 1
    print(f"Wrote audit CSV: {path}  ({n} rows)")
