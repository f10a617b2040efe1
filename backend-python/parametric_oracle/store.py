"""
In-memory claim/policy state store.

Reference implementation of the persistence collaborator: create/read/update
by id, filtered listing, a unique payout record per claim and an append-only
audit log.  Each policy and claim row carries a ``version`` that is bumped on
every write; passing ``expected_version`` turns an update into an optimistic
compare-and-set.  Rows are handed out as deep copies, so callers can only
change state through the update methods.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from parametric_oracle.errors import (
    AlreadyPaidError,
    InvalidState,
    InvalidTransition,
    NotFoundError,
)
from parametric_oracle.models import (
    AuditRecord,
    Claim,
    ClaimStatus,
    OracleCondition,
    PayoutRecord,
    Policy,
    PolicyStatus,
    can_transition_claim,
    can_transition_policy,
)

logger = logging.getLogger(__name__)

# Claim attributes that ``update_claim_fields`` may touch.  Status is only
# changed through ``update_claim_status``.
_MUTABLE_CLAIM_FIELDS = frozenset({
    "evidence", "processed_at", "decision", "transaction_ref", "payout_state",
    "admin_notes", "rejection_reason", "requested_amount",
})


class InMemoryStore:

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._policies: dict[str, Policy] = {}
        self._conditions: dict[str, list[OracleCondition]] = {}
        self._claims: dict[str, Claim] = {}
        self._payouts: dict[str, PayoutRecord] = {}
        self._audit: list[AuditRecord] = []

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def add_policy(self, policy: Policy,
                   conditions: Iterable[OracleCondition] = ()) -> Policy:
        with self._lock:
            if policy.id in self._policies:
                raise InvalidState(f"Policy '{policy.id}' already exists")
            self._policies[policy.id] = copy.deepcopy(policy)
            self._conditions[policy.id] = []
            for cond in conditions:
                self.add_condition(cond)
            return copy.deepcopy(policy)

    def add_condition(self, condition: OracleCondition) -> OracleCondition:
        with self._lock:
            if condition.policy_id not in self._policies:
                raise NotFoundError(f"Policy '{condition.policy_id}' not found")
            self._conditions[condition.policy_id].append(copy.deepcopy(condition))
            return copy.deepcopy(condition)

    def get_policy(self, policy_id: str) -> Policy:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFoundError(f"Policy '{policy_id}' not found")
            return copy.deepcopy(policy)

    def get_policy_with_conditions(
        self, policy_id: str
    ) -> tuple[Policy, list[OracleCondition]]:
        """Return the policy and its ACTIVE conditions."""
        with self._lock:
            policy = self.get_policy(policy_id)
            conditions = [
                copy.deepcopy(c) for c in self._conditions.get(policy_id, [])
                if c.is_active
            ]
            return policy, conditions

    def list_policies(
        self,
        status: Optional[PolicyStatus] = None,
        ends_before: Optional[datetime] = None,
        holder_id: Optional[str] = None,
    ) -> list[Policy]:
        with self._lock:
            out = []
            for p in self._policies.values():
                if status is not None and p.status != PolicyStatus(status):
                    continue
                if ends_before is not None and not p.end < ends_before:
                    continue
                if holder_id is not None and p.holder_id != holder_id:
                    continue
                out.append(copy.deepcopy(p))
            return sorted(out, key=lambda p: (p.end, p.id))

    def update_policy_status(
        self,
        policy_id: str,
        status: PolicyStatus,
        expected_version: Optional[int] = None,
    ) -> Policy:
        status = PolicyStatus(status)
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                raise NotFoundError(f"Policy '{policy_id}' not found")
            self._check_version("Policy", policy_id, policy.version, expected_version)
            if not can_transition_policy(policy.status, status):
                raise InvalidTransition("Policy", policy.status.value,
                                        status.value, entity_id=policy_id)
            policy.status = status
            policy.version += 1
            logger.info("policy %s -> %s", policy_id, status.value)
            return copy.deepcopy(policy)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def create_claim(self, claim: Claim) -> Claim:
        with self._lock:
            if claim.id in self._claims:
                raise InvalidState(f"Claim '{claim.id}' already exists")
            policy = self._policies.get(claim.policy_id)
            if policy is None:
                raise NotFoundError(f"Policy '{claim.policy_id}' not found")
            if policy.status != PolicyStatus.ACTIVE:
                raise InvalidState(
                    f"Policy '{policy.id}' is {policy.status.value}; "
                    f"claims need an active policy",
                    policy_id=policy.id,
                )
            if claim.status != ClaimStatus.PENDING:
                raise InvalidState("New claims must start as pending")
            self._claims[claim.id] = copy.deepcopy(claim)
            return copy.deepcopy(claim)

    def get_claim(self, claim_id: str) -> Claim:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                raise NotFoundError(f"Claim '{claim_id}' not found")
            return copy.deepcopy(claim)

    def list_claims(
        self,
        status: Optional[ClaimStatus] = None,
        policy_id: Optional[str] = None,
        holder_id: Optional[str] = None,
    ) -> list[Claim]:
        """Claims matching every given filter, newest submission first."""
        with self._lock:
            out = []
            for c in self._claims.values():
                if status is not None and c.status != ClaimStatus(status):
                    continue
                if policy_id is not None and c.policy_id != policy_id:
                    continue
                if holder_id is not None and c.holder_id != holder_id:
                    continue
                out.append(copy.deepcopy(c))
            return sorted(out, key=lambda c: (c.submitted_at, c.id), reverse=True)

    def update_claim_status(
        self,
        claim_id: str,
        status: ClaimStatus,
        fields: Optional[dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Claim:
        status = ClaimStatus(status)
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                raise NotFoundError(f"Claim '{claim_id}' not found")
            self._check_version("Claim", claim_id, claim.version, expected_version)
            if not can_transition_claim(claim.status, status):
                raise InvalidTransition("Claim", claim.status.value,
                                        status.value, entity_id=claim_id)
            self._apply_fields(claim, fields or {})
            claim.status = status
            claim.version += 1
            logger.info("claim %s -> %s", claim_id, status.value)
            return copy.deepcopy(claim)

    def update_claim_fields(
        self,
        claim_id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Claim:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                raise NotFoundError(f"Claim '{claim_id}' not found")
            self._check_version("Claim", claim_id, claim.version, expected_version)
            self._apply_fields(claim, fields)
            claim.version += 1
            return copy.deepcopy(claim)

    @staticmethod
    def _apply_fields(claim: Claim, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _MUTABLE_CLAIM_FIELDS
        if unknown:
            raise ValueError(f"Cannot update claim fields: {sorted(unknown)}")
        for name, value in fields.items():
            setattr(claim, name, copy.deepcopy(value))

    @staticmethod
    def _check_version(entity: str, entity_id: str, current: int,
                       expected: Optional[int]) -> None:
        if expected is not None and expected != current:
            raise InvalidState(
                f"{entity} '{entity_id}' was modified concurrently "
                f"(version {current}, expected {expected})",
                entity_id=entity_id,
            )

    # ------------------------------------------------------------------
    # Payout records
    # ------------------------------------------------------------------

    def insert_payout_record(self, record: PayoutRecord) -> PayoutRecord:
        with self._lock:
            if record.claim_id in self._payouts:
                raise AlreadyPaidError(
                    f"Claim '{record.claim_id}' already has a payout record",
                    claim_id=record.claim_id,
                )
            self._payouts[record.claim_id] = record
            return record

    def get_payout_record(self, claim_id: str) -> Optional[PayoutRecord]:
        with self._lock:
            return self._payouts.get(claim_id)

    def list_payout_records(self) -> list[PayoutRecord]:
        with self._lock:
            return sorted(self._payouts.values(), key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(self, record: AuditRecord) -> None:
        with self._lock:
            self._audit.append(record)

    def list_audit(self, claim_id: Optional[str] = None,
                   policy_id: Optional[str] = None) -> list[AuditRecord]:
        with self._lock:
            return [
                r for r in self._audit
                if (claim_id is None or r.claim_id == claim_id)
                and (policy_id is None or r.policy_id == policy_id)
            ]


# ============================================================================
# JSON seed loading
# ============================================================================

def _parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def load_seed(path: str | Path, store: Optional[InMemoryStore] = None) -> InMemoryStore:
    """Populate a store from a JSON seed file.

    Expected shape::

        {"policies": [{"id", "holder_id", "policy_type", "premium_amount",
                       "coverage_amount", "start", "end", "holder_address",
                       "coverage_details", "conditions": [...]}, ...],
         "claims":   [{"id", "policy_id", "holder_id", "claim_type",
                       "requested_amount", "evidence"}, ...]}
    """
    store = store or InMemoryStore()
    with open(path) as f:
        data = json.load(f)

    for raw in data.get("policies", []):
        raw = dict(raw)
        conditions = raw.pop("conditions", [])
        raw["start"] = _parse_dt(raw["start"])
        raw["end"] = _parse_dt(raw["end"])
        policy = store.add_policy(Policy(**raw))
        for i, c in enumerate(conditions):
            c = dict(c)
            c.setdefault("id", f"{policy.id}_cond_{i}")
            c["policy_id"] = policy.id
            store.add_condition(OracleCondition(**c))

    for raw in data.get("claims", []):
        raw = dict(raw)
        if "submitted_at" in raw:
            raw["submitted_at"] = _parse_dt(raw["submitted_at"])
        store.create_claim(Claim(**raw))

    logger.info("loaded seed %s: %d policies, %d claims", path,
                len(data.get("policies", [])), len(data.get("claims", [])))
    return store
