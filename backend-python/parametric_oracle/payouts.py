"""
Payout dispatcher: at most one payout per claim.

``dispatch_payout`` takes the policy and claim locks, checks that the claim
is ``approved`` and has no payout yet, marks the attempt ``in_flight``,
calls the transfer client once and then records the payout and moves the
claim to ``paid`` (and the policy to ``claimed``).  The store's unique
payout-per-claim constraint backs the lock.

Failure handling
----------------
TransferFailed     claim stays ``approved``; retry queued with backoff,
                   escalated to manual handling after ``payout_max_attempts``
TransferAmbiguous  claim stays ``approved`` with ``payout_state=ambiguous``;
                   never retried until ``reconcile`` says what happened
interrupted call   ``payout_state`` is left ``in_flight``, which also blocks
                   dispatch until reconciled
"""

from __future__ import annotations

import heapq
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from parametric_oracle.collaborators import TransferClient
from parametric_oracle.config import EngineConfig
from parametric_oracle.errors import (
    AlreadyPaidError,
    DispatchError,
    InvalidState,
    ReconciliationRequired,
    TransferAmbiguous,
    TransferFailed,
)
from parametric_oracle.locks import KeyedLocks
from parametric_oracle.models import (
    ClaimStatus,
    Decision,
    PayoutRecord,
    PayoutState,
    PolicyStatus,
    new_id,
    utcnow,
)
from parametric_oracle.store import InMemoryStore

logger = logging.getLogger(__name__)

BLOCKING_PAYOUT_STATES = frozenset({
    PayoutState.IN_FLIGHT, PayoutState.AMBIGUOUS, PayoutState.ESCALATED,
})


def policy_key(policy_id: str) -> str:
    return f"policy:{policy_id}"


def claim_key(claim_id: str) -> str:
    return f"claim:{claim_id}"


# ============================================================================
# Retry queue
# ============================================================================

@dataclass(order=True)
class RetryEntry:
    due: datetime
    claim_id: str = field(compare=False)
    attempts: int = field(compare=False, default=1)


class PayoutRetryQueue:
    """Min-heap of failed payouts ordered by next attempt time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._heap: list[RetryEntry] = []

    def push(self, entry: RetryEntry) -> None:
        with self._lock:
            heapq.heappush(self._heap, entry)

    def pop_due(self, now: datetime) -> list[RetryEntry]:
        due = []
        with self._lock:
            while self._heap and self._heap[0].due <= now:
                due.append(heapq.heappop(self._heap))
        return due

    def __contains__(self, claim_id: str) -> bool:
        with self._lock:
            return any(e.claim_id == claim_id for e in self._heap)

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)


# ============================================================================
# Dispatcher
# ============================================================================

class PayoutDispatcher:

    def __init__(
        self,
        store: InMemoryStore,
        transfer_client: TransferClient,
        locks: Optional[KeyedLocks] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.transfer_client = transfer_client
        self.locks = locks or KeyedLocks()
        self.config = config or EngineConfig()
        self.clock = clock
        self.retry_queue = PayoutRetryQueue()
        self._attempts: dict[str, int] = {}

    # ------------------------------------------------------------------

    def dispatch_payout(self, claim_id: str,
                        decision: Optional[Decision] = None) -> PayoutRecord:
        """Pay an approved claim exactly once.

        Raises ``AlreadyPaidError`` if a payout exists, ``InvalidState`` if
        the claim is not approved, ``ReconciliationRequired`` if an earlier
        attempt has an unknown outcome, and ``TransferFailed`` /
        ``TransferAmbiguous`` from the transfer itself.
        """
        claim = self.store.get_claim(claim_id)
        with self.locks.hold(policy_key(claim.policy_id)), \
                self.locks.hold(claim_key(claim_id)):
            return self._dispatch_locked(claim_id, decision)

    def _dispatch_locked(self, claim_id: str,
                         decision: Optional[Decision]) -> PayoutRecord:
        claim = self.store.get_claim(claim_id)
        if claim.status == ClaimStatus.PAID or self.store.get_payout_record(claim_id):
            raise AlreadyPaidError(f"Claim '{claim_id}' has already been paid",
                                   claim_id=claim_id)
        if claim.payout_state in BLOCKING_PAYOUT_STATES:
            raise ReconciliationRequired(
                f"Claim '{claim_id}' has an unresolved payout attempt "
                f"({claim.payout_state.value}); reconcile before retrying",
                claim_id=claim_id,
            )
        if claim.status != ClaimStatus.APPROVED:
            raise InvalidState(
                f"Claim '{claim_id}' is {claim.status.value}; only approved "
                f"claims can be paid",
                claim_id=claim_id,
            )
        decision = decision or claim.decision
        if decision is None or not decision.approved or decision.claim_id != claim_id:
            raise InvalidState(f"Claim '{claim_id}' has no approved decision",
                               claim_id=claim_id)

        policy = self.store.get_policy(claim.policy_id)
        amount = decision.payout_amount
        self.store.update_claim_fields(
            claim_id, {"payout_state": PayoutState.IN_FLIGHT},
            expected_version=claim.version,
        )

        try:
            tx_ref = self.transfer_client.transfer(policy.holder_address, amount)
        except TransferAmbiguous:
            self.store.update_claim_fields(claim_id, {"payout_state": PayoutState.AMBIGUOUS})
            logger.error("payout for claim %s has an unknown outcome; "
                         "manual reconciliation required", claim_id)
            raise
        except TransferFailed as exc:
            self.store.update_claim_fields(claim_id, {"payout_state": PayoutState.FAILED})
            self._schedule_retry(claim_id)
            logger.warning("payout for claim %s failed: %s", claim_id, exc.message)
            raise
        except Exception as exc:
            self.store.update_claim_fields(claim_id, {"payout_state": PayoutState.AMBIGUOUS})
            logger.exception("transfer client raised for claim %s", claim_id)
            raise TransferAmbiguous(f"Transfer outcome unknown: {exc}",
                                    claim_id=claim_id) from exc

        return self._complete(claim_id, policy.id, policy.holder_address, amount, tx_ref)

    def _complete(self, claim_id: str, policy_id: str, to_address: str,
                  amount: float, tx_ref: str) -> PayoutRecord:
        now = self.clock()
        record = self.store.insert_payout_record(PayoutRecord(
            id=new_id("payout"),
            claim_id=claim_id,
            amount=amount,
            transaction_ref=tx_ref,
            to_address=to_address,
            created_at=now,
        ))
        self.store.update_claim_status(claim_id, ClaimStatus.PAID, {
            "transaction_ref": tx_ref,
            "payout_state": None,
            "processed_at": now,
        })
        policy = self.store.get_policy(policy_id)
        if policy.status == PolicyStatus.ACTIVE:
            self.store.update_policy_status(policy_id, PolicyStatus.CLAIMED)
        self._attempts.pop(claim_id, None)
        logger.info("claim %s paid %.2f (%s)", claim_id, amount, tx_ref)
        return record

    # ------------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------------

    def _schedule_retry(self, claim_id: str) -> None:
        attempts = self._attempts.get(claim_id, 0) + 1
        self._attempts[claim_id] = attempts
        if attempts >= self.config.payout_max_attempts:
            self.store.update_claim_fields(claim_id, {"payout_state": PayoutState.ESCALATED})
            logger.error("claim %s payout failed %d times; escalated to manual handling",
                         claim_id, attempts)
            return
        delay = self.config.payout_retry_base_s * (2 ** (attempts - 1))
        self.retry_queue.push(RetryEntry(
            due=self.clock() + timedelta(seconds=delay),
            claim_id=claim_id,
            attempts=attempts,
        ))

    def retry_due(self, now: Optional[datetime] = None) -> dict[str, str]:
        """Retry every queued payout whose backoff has elapsed.

        Returns ``{claim_id: outcome}`` with outcomes ``paid``, ``failed``,
        ``ambiguous``, ``already_paid`` or ``skipped``.
        """
        outcomes: dict[str, str] = {}
        for entry in self.retry_queue.pop_due(now or self.clock()):
            try:
                self.dispatch_payout(entry.claim_id)
                outcomes[entry.claim_id] = "paid"
            except AlreadyPaidError:
                outcomes[entry.claim_id] = "already_paid"
            except TransferFailed:
                outcomes[entry.claim_id] = "failed"
            except TransferAmbiguous:
                outcomes[entry.claim_id] = "ambiguous"
            except (DispatchError, InvalidState) as exc:
                logger.warning("retry for claim %s skipped: %s", entry.claim_id, exc)
                outcomes[entry.claim_id] = "skipped"
        return outcomes

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def pending_reconciliation(self) -> list[str]:
        return [
            c.id for c in self.store.list_claims(status=ClaimStatus.APPROVED)
            if c.payout_state in BLOCKING_PAYOUT_STATES
        ]

    def reconcile(self, claim_id: str,
                  transaction_ref: Optional[str] = None) -> Optional[PayoutRecord]:
        """Resolve an unknown or escalated payout.

        With ``transaction_ref`` the transfer is confirmed as executed and the
        payout is recorded.  Without it the transfer is confirmed as NOT
        executed; the claim becomes eligible for dispatch again.
        """
        claim = self.store.get_claim(claim_id)
        with self.locks.hold(policy_key(claim.policy_id)), \
                self.locks.hold(claim_key(claim_id)):
            claim = self.store.get_claim(claim_id)
            if claim.status != ClaimStatus.APPROVED or \
                    claim.payout_state not in BLOCKING_PAYOUT_STATES:
                raise InvalidState(f"Claim '{claim_id}' has nothing to reconcile",
                                   claim_id=claim_id)
            if transaction_ref:
                policy = self.store.get_policy(claim.policy_id)
                return self._complete(claim_id, policy.id, policy.holder_address,
                                      claim.decision.payout_amount, transaction_ref)
            self.store.update_claim_fields(claim_id, {"payout_state": PayoutState.FAILED})
            self._attempts.pop(claim_id, None)
            logger.info("claim %s reconciled as not paid; dispatch allowed again", claim_id)
            return None
