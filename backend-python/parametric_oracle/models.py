"""
Domain records for the parametric claim oracle.

Policies, their oracle trigger conditions, claims, readings returned by data
source adapters, evaluation decisions and payout records.  Status fields are
plain ``str`` enums so records serialise to JSON without custom encoders.

Lifecycles
----------
Policy:  active -> {expired, claimed, cancelled}            (all terminal)
Claim:   pending -> {investigating, approved, rejected}
         investigating -> {approved, rejected}
         approved -> paid                                   (dispatcher only)
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ============================================================================
# Enums
# ============================================================================

class PolicyStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PolicyType(str, Enum):
    FLIGHT = "flight"
    WEATHER = "weather"
    BAGGAGE = "baggage"
    HEALTH = "health"
    VENUE = "venue"
    TRAVEL = "travel"
    BIRTHDAY = "birthday"


class ConditionType(str, Enum):
    WEATHER = "weather"
    FLIGHT = "flight"
    TRAVEL_DISRUPTION = "travel_disruption"
    BAGGAGE = "baggage"
    VENUE = "venue"
    HEALTH = "health"
    PRICE = "price"


class PayoutState(str, Enum):
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    AMBIGUOUS = "ambiguous"
    ESCALATED = "escalated"


# ============================================================================
# Transition tables
# ============================================================================

POLICY_TRANSITIONS: dict[PolicyStatus, frozenset[PolicyStatus]] = {
    PolicyStatus.ACTIVE: frozenset({
        PolicyStatus.EXPIRED, PolicyStatus.CLAIMED, PolicyStatus.CANCELLED,
    }),
    PolicyStatus.EXPIRED: frozenset(),
    PolicyStatus.CLAIMED: frozenset(),
    PolicyStatus.CANCELLED: frozenset(),
}

CLAIM_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.PENDING: frozenset({
        ClaimStatus.INVESTIGATING, ClaimStatus.APPROVED, ClaimStatus.REJECTED,
    }),
    ClaimStatus.INVESTIGATING: frozenset({
        ClaimStatus.APPROVED, ClaimStatus.REJECTED,
    }),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PAID}),
    ClaimStatus.REJECTED: frozenset(),
    ClaimStatus.PAID: frozenset(),
}

TERMINAL_CLAIM_STATUSES = frozenset({ClaimStatus.REJECTED, ClaimStatus.PAID})


def can_transition_policy(current: PolicyStatus, target: PolicyStatus) -> bool:
    return PolicyStatus(target) in POLICY_TRANSITIONS[PolicyStatus(current)]


def can_transition_claim(current: ClaimStatus, target: ClaimStatus) -> bool:
    return ClaimStatus(target) in CLAIM_TRANSITIONS[ClaimStatus(current)]


# ============================================================================
# Claim types
# ============================================================================

# Claim type -> condition types the claim may be paid under.
# ``None`` means every active condition on the policy is considered.
CLAIM_TYPE_CONDITIONS: dict[str, Optional[frozenset[ConditionType]]] = {
    "weather_cancellation": frozenset({ConditionType.WEATHER}),
    "flight_delay": frozenset({ConditionType.FLIGHT, ConditionType.TRAVEL_DISRUPTION}),
    "flight_cancellation": frozenset({ConditionType.FLIGHT, ConditionType.TRAVEL_DISRUPTION}),
    "baggage_loss": frozenset({ConditionType.BAGGAGE}),
    "venue_closure": frozenset({ConditionType.VENUE}),
    "medical_emergency": frozenset({ConditionType.HEALTH}),
    "price_threshold": frozenset({ConditionType.PRICE}),
    "parametric_trigger": None,
}

MANUAL_REVIEW_CLAIM_TYPES = frozenset({"medical_emergency"})

SYSTEM_CLAIM_TYPE = "parametric_trigger"


# ============================================================================
# Records
# ============================================================================

@dataclass
class Policy:
    id: str
    holder_id: str
    policy_type: PolicyType
    premium_amount: float
    coverage_amount: float
    start: datetime
    end: datetime
    status: PolicyStatus = PolicyStatus.ACTIVE
    holder_address: str = ""
    coverage_details: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def __post_init__(self) -> None:
        self.policy_type = PolicyType(self.policy_type)
        self.status = PolicyStatus(self.status)
        if self.coverage_amount < 0 or self.premium_amount < 0:
            raise ValueError("premium_amount and coverage_amount must be >= 0")
        if self.end < self.start:
            raise ValueError("policy end must not precede its start")

    def covers(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class OracleCondition:
    id: str
    policy_id: str
    condition_type: ConditionType
    trigger_params: dict[str, Any] = field(default_factory=dict)
    payout_percentage: int = 100
    is_active: bool = True
    oracle_source: Optional[str] = None

    def __post_init__(self) -> None:
        self.condition_type = ConditionType(self.condition_type)
        if not 0 <= self.payout_percentage <= 100:
            raise ValueError(
                f"payout_percentage must be within [0, 100], "
                f"got {self.payout_percentage}"
            )


@dataclass(frozen=True)
class Reading:
    """One immutable, timestamped observation from a data source adapter."""
    kind: str
    source: str
    values: dict[str, Any]
    confidence: float = 1.0
    observed_at: datetime = field(default_factory=utcnow)
    partial: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "source": self.source,
            "values": dict(self.values),
            "confidence": self.confidence,
            "observed_at": self.observed_at.isoformat(),
            "partial": self.partial,
        }


@dataclass(frozen=True)
class ConditionResult:
    condition_id: str
    condition_type: ConditionType
    met: bool
    confidence: float
    payout_percentage: int
    evidence: dict[str, Any] = field(default_factory=dict)
    requires_manual_review: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["condition_type"] = self.condition_type.value
        return out


@dataclass(frozen=True)
class Decision:
    claim_id: str
    policy_id: str
    approved: bool
    payout_percentage: int
    payout_amount: float
    confidence: float
    claim_status: ClaimStatus
    requires_manual_review: bool = False
    conditions: tuple[ConditionResult, ...] = ()
    evidence: dict[str, Any] = field(default_factory=dict)
    decided_by: str = "oracle"
    evaluated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "policy_id": self.policy_id,
            "approved": self.approved,
            "payout_percentage": self.payout_percentage,
            "payout_amount": self.payout_amount,
            "confidence": round(self.confidence, 4),
            "claim_status": self.claim_status.value,
            "requires_manual_review": self.requires_manual_review,
            "conditions": [c.to_dict() for c in self.conditions],
            "evidence": dict(self.evidence),
            "decided_by": self.decided_by,
            "evaluated_at": self.evaluated_at.isoformat(),
        }


@dataclass
class Claim:
    id: str
    policy_id: str
    holder_id: str
    claim_type: str
    requested_amount: float
    status: ClaimStatus = ClaimStatus.PENDING
    evidence: dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    decision: Optional[Decision] = None
    transaction_ref: Optional[str] = None
    payout_state: Optional[PayoutState] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    version: int = 0

    def __post_init__(self) -> None:
        self.status = ClaimStatus(self.status)
        if self.payout_state is not None:
            self.payout_state = PayoutState(self.payout_state)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CLAIM_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "policy_id": self.policy_id,
            "holder_id": self.holder_id,
            "claim_type": self.claim_type,
            "requested_amount": self.requested_amount,
            "status": self.status.value,
            "evidence": dict(self.evidence),
            "submitted_at": self.submitted_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "transaction_ref": self.transaction_ref,
            "payout_state": self.payout_state.value if self.payout_state else None,
            "admin_notes": self.admin_notes,
            "rejection_reason": self.rejection_reason,
        }


@dataclass(frozen=True)
class PayoutRecord:
    id: str
    claim_id: str
    amount: float
    transaction_ref: str
    to_address: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AuditRecord:
    """Append-only trace of one evaluation, kept for dispute resolution."""
    id: str
    claim_id: str
    policy_id: str
    outcome: str
    decision: Optional[dict[str, Any]]
    readings: tuple[dict[str, Any], ...] = ()
    errors: tuple[str, ...] = ()
    recorded_at: datetime = field(default_factory=utcnow)
