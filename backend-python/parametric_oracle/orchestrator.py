"""
Policy evaluation orchestrator.

    evaluate_claim(claim_id)
      1. lock the policy
      2. terminal claim   -> return the stored decision (no adapter calls)
         non-pending      -> InvalidState
         inactive policy  -> InvalidState
      3. pick the active conditions the claim type may be paid under
      4. fan out: one fetch per (adapter kind, source), all concurrent
      5. evaluate every condition on the joined readings
      6. aggregate with the max-payout tie-break, map to a claim status
      7. append an audit record, store the decision on the claim
      8. approved + auto_dispatch -> payout dispatcher

Adapter failures never abort the evaluation; they become missing readings,
which lower confidence and land the claim in ``investigating`` rather than
``rejected``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

from parametric_oracle import conditions as rules
from parametric_oracle.adapters import (
    CONDITION_ADAPTER_KIND,
    AdapterQuery,
    DataSourceAdapter,
    build_query,
    fetch_with_retry,
)
from parametric_oracle.collaborators import IdentityVerifier, StaticIdentityVerifier
from parametric_oracle.config import EngineConfig
from parametric_oracle.errors import (
    AdapterError,
    InvalidState,
    NoActiveConditions,
    NotFoundError,
    SourceConflict,
    TransferAmbiguous,
    TransferFailed,
    VerificationRequired,
)
from parametric_oracle.models import (
    CLAIM_TYPE_CONDITIONS,
    MANUAL_REVIEW_CLAIM_TYPES,
    SYSTEM_CLAIM_TYPE,
    AuditRecord,
    Claim,
    ClaimStatus,
    ConditionResult,
    ConditionType,
    Decision,
    OracleCondition,
    Policy,
    PolicyStatus,
    Reading,
    new_id,
    utcnow,
)
from parametric_oracle.payouts import PayoutDispatcher, policy_key
from parametric_oracle.store import InMemoryStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Evaluates claims against oracle conditions and drives claim state.

    Parameters
    ----------
    store : InMemoryStore
        Persistence collaborator.
    adapters : sequence of DataSourceAdapter
        Every source the engine may call; grouped by the kinds they serve.
    dispatcher : PayoutDispatcher
        Pays approved claims.  Must share ``locks`` with the orchestrator.
    identity : IdentityVerifier, optional
        Gate for holder-submitted claims (default: everyone verified).
    config : EngineConfig, optional
    """

    def __init__(
        self,
        store: InMemoryStore,
        adapters: Sequence[DataSourceAdapter],
        dispatcher: PayoutDispatcher,
        identity: Optional[IdentityVerifier] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.store = store
        self.adapters = list(adapters)
        self.dispatcher = dispatcher
        self.locks = dispatcher.locks
        self.identity = identity or StaticIdentityVerifier(allow_all=True)
        self.config = config or dispatcher.config
        self.clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Claim submission
    # ------------------------------------------------------------------

    def submit_claim(
        self,
        policy_id: str,
        holder_id: str,
        claim_type: str,
        requested_amount: Optional[float] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> Claim:
        """Create a pending claim for a verified holder on an active policy."""
        if not self.identity.is_verified(holder_id):
            raise VerificationRequired(f"Holder '{holder_id}' is not identity-verified",
                                       holder_id=holder_id)
        with self.locks.hold(policy_key(policy_id)):
            policy = self.store.get_policy(policy_id)
            if policy.holder_id != holder_id:
                raise InvalidState(f"Policy '{policy_id}' does not belong to '{holder_id}'",
                                   policy_id=policy_id)
            if policy.status != PolicyStatus.ACTIVE:
                raise InvalidState(f"Policy '{policy_id}' is {policy.status.value}",
                                   policy_id=policy_id)
            if claim_type not in CLAIM_TYPE_CONDITIONS:
                logger.info("claim type '%s' has no oracle mapping; it will need "
                            "manual review", claim_type)
            amount = policy.coverage_amount if requested_amount is None else requested_amount
            if not 0 < amount <= policy.coverage_amount:
                raise ValueError(
                    f"requested_amount must be within (0, {policy.coverage_amount}]"
                )
            claim = self.store.create_claim(Claim(
                id=new_id("claim"),
                policy_id=policy_id,
                holder_id=holder_id,
                claim_type=claim_type,
                requested_amount=float(amount),
                evidence=dict(evidence or {}),
                submitted_at=self.clock(),
            ))
        logger.info("claim %s submitted on policy %s (%s)", claim.id, policy_id, claim_type)
        return claim

    # ------------------------------------------------------------------
    # Evaluation entry points
    # ------------------------------------------------------------------

    def evaluate_claim(self, claim_id: str) -> Decision:
        claim = self.store.get_claim(claim_id)
        with self.locks.hold(policy_key(claim.policy_id)):
            return self._evaluate_locked(claim_id)

    def evaluate_policy(self, policy_id: str) -> Decision:
        """Evaluate a policy's open claim, creating a system claim if needed.

        The latest claim decides: terminal or already decided -> its stored
        decision; pending -> evaluate it; none -> open a ``parametric_trigger``
        claim for the full coverage and evaluate that.
        """
        with self.locks.hold(policy_key(policy_id)):
            policy = self.store.get_policy(policy_id)
            claims = self.store.list_claims(policy_id=policy_id)
            latest = claims[0] if claims else None
            if latest is not None and latest.status != ClaimStatus.PENDING:
                if latest.decision is not None:
                    return latest.decision
                raise InvalidState(
                    f"Claim '{latest.id}' is {latest.status.value} without a decision",
                    claim_id=latest.id,
                )
            if latest is None:
                if policy.status != PolicyStatus.ACTIVE:
                    raise InvalidState(f"Policy '{policy_id}' is {policy.status.value}",
                                       policy_id=policy_id)
                latest = self.store.create_claim(Claim(
                    id=new_id("claim"),
                    policy_id=policy_id,
                    holder_id=policy.holder_id,
                    claim_type=SYSTEM_CLAIM_TYPE,
                    requested_amount=policy.coverage_amount,
                    submitted_at=self.clock(),
                ))
            return self._evaluate_locked(latest.id)

    # ------------------------------------------------------------------

    def _evaluate_locked(self, claim_id: str) -> Decision:
        claim = self.store.get_claim(claim_id)
        if claim.is_terminal and claim.decision is not None:
            logger.debug("claim %s already %s; returning stored decision",
                         claim_id, claim.status.value)
            return claim.decision
        if claim.status != ClaimStatus.PENDING:
            raise InvalidState(f"Claim '{claim_id}' is {claim.status.value}, not pending",
                               claim_id=claim_id)
        policy, active = self.store.get_policy_with_conditions(claim.policy_id)
        if policy.status != PolicyStatus.ACTIVE:
            raise InvalidState(f"Policy '{policy.id}' is {policy.status.value}",
                               policy_id=policy.id)

        if claim.claim_type in MANUAL_REVIEW_CLAIM_TYPES:
            decision = self._manual_review_decision(
                claim, policy, "Medical claims are never approved automatically")
            return self._record(claim, decision, readings=[], errors=[])

        selected = self._select_conditions(claim, active)
        if selected is None:
            decision = self._manual_review_decision(
                claim, policy, f"Claim type '{claim.claim_type}' requires manual review")
            return self._record(claim, decision, readings=[], errors=[])
        if not selected:
            self.store.append_audit(AuditRecord(
                id=new_id("audit"), claim_id=claim.id, policy_id=policy.id,
                outcome="no_active_conditions", decision=None,
                recorded_at=self.clock(),
            ))
            raise NoActiveConditions(
                f"Policy '{policy.id}' has no active conditions for "
                f"claim type '{claim.claim_type}'",
                claim_id=claim.id, policy_id=policy.id,
            )

        readings, errors = self._gather(policy, selected)
        results = [self._evaluate_condition(c, readings.get(CONDITION_ADAPTER_KIND[c.condition_type], []),
                                            errors)
                   for c in selected]
        decision = self._decide(claim, policy, results, errors)
        all_readings = [r for rs in readings.values() for r in rs]
        decision = self._record(claim, decision, all_readings, errors)

        if decision.approved and self.config.auto_dispatch:
            self._auto_dispatch(claim.id, decision)
        return decision

    @staticmethod
    def _select_conditions(claim: Claim, active: Iterable[OracleCondition]
                           ) -> Optional[list[OracleCondition]]:
        """Active conditions relevant to the claim type (None: unmapped type)."""
        if claim.claim_type not in CLAIM_TYPE_CONDITIONS:
            return None
        allowed = CLAIM_TYPE_CONDITIONS[claim.claim_type]
        return [c for c in active if allowed is None or c.condition_type in allowed]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _gather(self, policy: Policy, selected: Sequence[OracleCondition]
                ) -> tuple[dict[str, list[Reading]], list[str]]:
        """One fetch per distinct adapter kind and source, run concurrently."""
        queries: dict[str, AdapterQuery] = {}
        errors: list[str] = []
        for cond in selected:
            kind = CONDITION_ADAPTER_KIND[cond.condition_type]
            if kind is None or kind in queries:
                continue
            try:
                queries[kind] = build_query(kind, policy, cond.trigger_params)
            except AdapterError as exc:
                errors.append(f"{kind}: {exc.message}")

        jobs = [(kind, adapter, query)
                for kind, query in queries.items()
                for adapter in self.adapters if adapter.supports(kind)]
        for kind in queries:
            if not any(k == kind for k, _, _ in jobs):
                errors.append(f"{kind}: no adapter configured")

        readings: dict[str, list[Reading]] = {kind: [] for kind in queries}
        if not jobs:
            return readings, errors

        kwargs = {
            "timeout": self.config.adapter_timeout_s,
            "retries": self.config.adapter_retries,
            "backoff_base": self.config.backoff_base_s,
        }
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        workers = min(self.config.fanout_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix="oracle-fanout") as pool:
            futures = [(kind, adapter,
                        pool.submit(fetch_with_retry, adapter, query, **kwargs))
                       for kind, adapter, query in jobs]
            for kind, adapter, future in futures:
                try:
                    readings[kind].append(future.result())
                except AdapterError as exc:
                    logger.warning("adapter %s failed for policy %s: %s",
                                   adapter.source, policy.id, exc.message)
                    errors.append(f"{adapter.source}: {exc.message}")
        return readings, errors

    def _evaluate_condition(self, condition: OracleCondition,
                            readings: Sequence[Reading],
                            errors: list[str]) -> ConditionResult:
        """Run the condition's rule; a conflict or unusable data becomes an
        errored result instead of an exception."""
        try:
            return rules.evaluate(condition, readings)
        except SourceConflict as exc:
            message, code = exc.message, "source_conflict"
            evidence = {"message": message, "sources": exc.details.get("sources")}
        except (TypeError, ValueError, KeyError, IndexError) as exc:
            logger.warning("condition %s could not be evaluated: %r", condition.id, exc)
            message, code = f"unusable data or parameters: {exc}", "malformed_data"
            evidence = {"message": message, "sources": [r.source for r in readings]}
        errors.append(f"{condition.id}: {message}")
        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=False,
            confidence=0.0,
            payout_percentage=0,
            evidence=evidence,
            error=code,
        )

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def _decide(self, claim: Claim, policy: Policy,
                results: Sequence[ConditionResult], errors: Sequence[str]) -> Decision:
        agg = rules.aggregate(results)
        floor = self.config.confidence_floor

        # an errored condition is unknown, not unmet
        if agg.requires_manual_review or agg.has_errors:
            status = ClaimStatus.INVESTIGATING
        elif agg.met and agg.confidence >= floor:
            status = ClaimStatus.APPROVED
        elif agg.met or agg.confidence < floor:
            status = ClaimStatus.INVESTIGATING
        else:
            status = ClaimStatus.REJECTED

        approved = status == ClaimStatus.APPROVED
        pct = agg.payout_percentage if approved else 0
        evidence: dict[str, Any] = {
            "threshold_crossed": agg.met,
            "confidence_floor": floor,
        }
        if agg.winner is not None:
            evidence["winning_condition"] = agg.winner.condition_id
        if errors:
            evidence["errors"] = list(errors)

        return Decision(
            claim_id=claim.id,
            policy_id=policy.id,
            approved=approved,
            payout_percentage=pct,
            payout_amount=round(policy.coverage_amount * pct / 100.0, 2),
            confidence=agg.confidence,
            claim_status=status,
            requires_manual_review=agg.requires_manual_review,
            conditions=tuple(results),
            evidence=evidence,
            evaluated_at=self.clock(),
        )

    def _manual_review_decision(self, claim: Claim, policy: Policy,
                                message: str) -> Decision:
        health = rules.get_rule(ConditionType.HEALTH)
        result = health(OracleCondition(id=f"{claim.id}_manual", policy_id=policy.id,
                                        condition_type=ConditionType.HEALTH), [])
        return Decision(
            claim_id=claim.id,
            policy_id=policy.id,
            approved=False,
            payout_percentage=0,
            payout_amount=0.0,
            confidence=0.0,
            claim_status=ClaimStatus.INVESTIGATING,
            requires_manual_review=True,
            conditions=(result,),
            evidence={"message": message},
            evaluated_at=self.clock(),
        )

    def _record(self, claim: Claim, decision: Decision,
                readings: Sequence[Reading], errors: Sequence[str]) -> Decision:
        """Audit the evaluation and move the claim to the decided status."""
        self.store.append_audit(AuditRecord(
            id=new_id("audit"),
            claim_id=claim.id,
            policy_id=decision.policy_id,
            outcome=decision.claim_status.value,
            decision=decision.to_dict(),
            readings=tuple(r.to_dict() for r in readings),
            errors=tuple(errors),
            recorded_at=self.clock(),
        ))
        fields: dict[str, Any] = {"decision": decision}
        if decision.claim_status in (ClaimStatus.APPROVED, ClaimStatus.REJECTED):
            fields["processed_at"] = decision.evaluated_at
        self.store.update_claim_status(claim.id, decision.claim_status, fields,
                                       expected_version=claim.version)
        logger.info(
            "claim %s evaluated: %s (payout %d%%, confidence %.2f)",
            claim.id, decision.claim_status.value,
            decision.payout_percentage, decision.confidence,
        )
        return decision

    def _auto_dispatch(self, claim_id: str, decision: Decision) -> None:
        try:
            self.dispatcher.dispatch_payout(claim_id, decision)
        except TransferFailed:
            logger.warning("claim %s stays approved; payout queued for retry", claim_id)
        except TransferAmbiguous:
            logger.error("claim %s stays approved; payout awaits reconciliation", claim_id)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    def update_claim_status(
        self,
        claim_id: str,
        status: ClaimStatus,
        payout_percentage: int = 100,
        admin_notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> Claim:
        """Manual status change.  Approving dispatches the payout; ``paid``
        can only be reached through the dispatcher."""
        status = ClaimStatus(status)
        if status == ClaimStatus.PAID:
            raise InvalidState("Claims reach 'paid' only through payout dispatch",
                               claim_id=claim_id)
        if not 0 <= payout_percentage <= 100:
            raise ValueError("payout_percentage must be within [0, 100]")

        claim = self.store.get_claim(claim_id)
        with self.locks.hold(policy_key(claim.policy_id)):
            claim = self.store.get_claim(claim_id)
            policy = self.store.get_policy(claim.policy_id)
            fields: dict[str, Any] = {"admin_notes": admin_notes}
            if rejection_reason:
                fields["rejection_reason"] = rejection_reason
            decision = None
            if status in (ClaimStatus.APPROVED, ClaimStatus.REJECTED):
                approved = status == ClaimStatus.APPROVED
                pct = payout_percentage if approved else 0
                decision = Decision(
                    claim_id=claim_id,
                    policy_id=policy.id,
                    approved=approved,
                    payout_percentage=pct,
                    payout_amount=round(policy.coverage_amount * pct / 100.0, 2),
                    confidence=1.0,
                    claim_status=status,
                    evidence={"admin_notes": admin_notes,
                              "rejection_reason": rejection_reason},
                    decided_by="admin",
                    evaluated_at=self.clock(),
                )
                fields["decision"] = decision
                fields["processed_at"] = decision.evaluated_at
            updated = self.store.update_claim_status(claim_id, status, fields,
                                                     expected_version=claim.version)
            self.store.append_audit(AuditRecord(
                id=new_id("audit"), claim_id=claim_id, policy_id=policy.id,
                outcome=f"admin_{status.value}",
                decision=decision.to_dict() if decision else None,
                recorded_at=self.clock(),
            ))
            if decision is not None and decision.approved:
                self._auto_dispatch(claim_id, decision)
                updated = self.store.get_claim(claim_id)
        return updated

    def update_policy_status(self, policy_id: str, status: PolicyStatus) -> Policy:
        with self.locks.hold(policy_key(policy_id)):
            return self.store.update_policy_status(policy_id, status)

    def expire_if_lapsed(self, policy_id: str, as_of: datetime) -> bool:
        """Expire an active policy whose window ended and whose claims are all
        rejected (or absent)."""
        with self.locks.hold(policy_key(policy_id)):
            try:
                policy = self.store.get_policy(policy_id)
            except NotFoundError:
                return False
            if policy.status != PolicyStatus.ACTIVE or policy.end >= as_of:
                return False
            claims = self.store.list_claims(policy_id=policy_id)
            if any(c.status != ClaimStatus.REJECTED for c in claims):
                return False
            self.store.update_policy_status(policy_id, PolicyStatus.EXPIRED)
            return True
