"""
Parametric Claim Oracle: API entry points.

Endpoint functions (each returns a JSON-ready dict):
    1. create_policy()          register a policy with its oracle conditions
    2. submit_claim()           holder files a claim (identity-gated)
    3. evaluate_claim()         run the oracle on one claim -> {claim, evaluation}
    4. batch_evaluate()         evaluate every pending claim
    5. list_claims()            paged claim listing for the admin view
    6. admin_update_claim()     manual approve / reject / investigate

Failures come back as ``{"status": "error", "code": ..., "error": ...}``
instead of raising, so a thin HTTP layer can forward them unchanged.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List

from parametric_oracle.adapters import build_adapter_set
from parametric_oracle.collaborators import (
    IdentityVerifier,
    MockTransferClient,
    StaticIdentityVerifier,
    TransferClient,
)
from parametric_oracle.config import EngineConfig, configure_logging
from parametric_oracle.errors import OracleError
from parametric_oracle.models import (
    ClaimStatus,
    OracleCondition,
    Policy,
    new_id,
)
from parametric_oracle.orchestrator import Orchestrator
from parametric_oracle.payouts import PayoutDispatcher
from parametric_oracle.store import InMemoryStore, load_seed


@dataclass
class Engine:
    store: InMemoryStore
    dispatcher: PayoutDispatcher
    orchestrator: Orchestrator
    config: EngineConfig


def build_engine(
    seed_path: Optional[str] = None,
    adapters: str = "synthetic",
    config: Optional[EngineConfig] = None,
    transfer_client: Optional[TransferClient] = None,
    identity: Optional[IdentityVerifier] = None,
    store: Optional[InMemoryStore] = None,
) -> Engine:
    """
    Wire store, adapters, dispatcher and orchestrator together.

    Parameters
    ----------
    seed_path : str, optional
        JSON seed with policies/conditions/claims (see ``store.load_seed``).
    adapters : str
        "synthetic" | "live" adapter line-up.
    config : EngineConfig, optional
        Defaults to ``EngineConfig.from_env()``.
    """
    config = config or EngineConfig.from_env()
    configure_logging()
    store = store or InMemoryStore()
    if seed_path:
        load_seed(seed_path, store)
    dispatcher = PayoutDispatcher(store, transfer_client or MockTransferClient(),
                                  config=config)
    orchestrator = Orchestrator(
        store,
        build_adapter_set(adapters),
        dispatcher,
        identity=identity or StaticIdentityVerifier(allow_all=True),
        config=config,
    )
    return Engine(store=store, dispatcher=dispatcher,
                  orchestrator=orchestrator, config=config)


def _error(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, OracleError):
        out = {"status": "error", "code": exc.code, "error": exc.message}
        if exc.details:
            out["details"] = exc.details
        return out
    return {"status": "error", "code": "INVALID_INPUT", "error": str(exc)}


# ── Endpoint 1: Policy creation ─────────────────────────────────────

def create_policy(
    engine: Engine,
    holder_id: str,
    policy_type: str,
    premium_amount: float,
    coverage_amount: float,
    start: datetime,
    end: datetime,
    holder_address: str = "",
    coverage_details: Optional[dict] = None,
    conditions: Optional[List[dict]] = None,
) -> Dict[str, Any]:
    """
    Register an active policy and its oracle conditions.

    ``conditions`` items: ``{"condition_type", "trigger_params",
    "payout_percentage", "is_active"}``.
    """
    try:
        policy = Policy(
            id=new_id("policy"),
            holder_id=holder_id,
            policy_type=policy_type,
            premium_amount=float(premium_amount),
            coverage_amount=float(coverage_amount),
            start=start,
            end=end,
            holder_address=holder_address,
            coverage_details=dict(coverage_details or {}),
        )
        conds = [
            OracleCondition(id=f"{policy.id}_cond_{i}", policy_id=policy.id, **c)
            for i, c in enumerate(conditions or [])
        ]
        engine.store.add_policy(policy, conds)
    except (OracleError, ValueError, TypeError) as exc:
        return _error(exc)

    return {
        "status": "ok",
        "policy_id": policy.id,
        "policy_type": policy.policy_type.value,
        "coverage_amount": policy.coverage_amount,
        "conditions": [c.id for c in conds],
    }


# ── Endpoint 2: Claim submission ────────────────────────────────────

def submit_claim(
    engine: Engine,
    policy_id: str,
    holder_id: str,
    claim_type: str,
    requested_amount: Optional[float] = None,
    evidence: Optional[dict] = None,
) -> Dict[str, Any]:
    try:
        claim = engine.orchestrator.submit_claim(
            policy_id, holder_id, claim_type,
            requested_amount=requested_amount, evidence=evidence,
        )
    except (OracleError, ValueError) as exc:
        return _error(exc)
    return {"status": "ok", "claim": claim.to_dict()}


# ── Endpoint 3: Oracle evaluation of one claim ──────────────────────

def evaluate_claim(engine: Engine, claim_id: str) -> Dict[str, Any]:
    """
    Evaluate one claim and return the updated claim plus the decision.

    Re-evaluating a paid or rejected claim returns the stored decision
    without calling any data source again.
    """
    try:
        decision = engine.orchestrator.evaluate_claim(claim_id)
        claim = engine.store.get_claim(claim_id)
    except OracleError as exc:
        return _error(exc)
    return {
        "status": "ok",
        "claim": claim.to_dict(),
        "evaluation": decision.to_dict(),
    }


# ── Endpoint 4: Batch evaluation ────────────────────────────────────

def batch_evaluate(engine: Engine) -> Dict[str, Any]:
    """Evaluate every pending claim; per-claim failures are reported inline."""
    results = []
    for claim in engine.store.list_claims(status=ClaimStatus.PENDING):
        out = evaluate_claim(engine, claim.id)
        if out["status"] == "ok":
            ev = out["evaluation"]
            results.append({
                "claim_id": claim.id,
                "status": out["claim"]["status"],
                "approved": ev["approved"],
                "payout_amount": ev["payout_amount"],
                "confidence": ev["confidence"],
            })
        else:
            results.append({"claim_id": claim.id, "status": "error",
                            "code": out["code"], "error": out["error"]})
    return {
        "status": "ok",
        "processed": len(results),
        "approved": sum(1 for r in results if r.get("approved")),
        "results": results,
    }


# ── Endpoint 5: Admin claim listing ─────────────────────────────────

def list_claims(
    engine: Engine,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    try:
        claims = engine.store.list_claims(status=ClaimStatus(status) if status else None)
    except ValueError as exc:
        return _error(exc)
    page = claims[offset:offset + limit]
    return {
        "status": "ok",
        "total": len(claims),
        "limit": limit,
        "offset": offset,
        "claims": [c.to_dict() for c in page],
    }


# ── Endpoint 6: Admin status update ─────────────────────────────────

def admin_update_claim(
    engine: Engine,
    claim_id: str,
    status: str,
    payout_percentage: int = 100,
    admin_notes: Optional[str] = None,
    rejection_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Manually move a claim to investigating / approved / rejected.

    Approval dispatches the payout immediately; ``paid`` cannot be set by hand.
    """
    try:
        claim = engine.orchestrator.update_claim_status(
            claim_id,
            ClaimStatus(status),
            payout_percentage=payout_percentage,
            admin_notes=admin_notes,
            rejection_reason=rejection_reason,
        )
    except (OracleError, ValueError) as exc:
        return _error(exc)
    return {"status": "ok", "claim": claim.to_dict()}
