"""
Batch sweep over expiring policies.

Evaluates every active policy whose window ends before ``as_of + horizon``
with at most ``workers`` evaluations in flight.  Setting ``cancel_event``
stops new submissions; evaluations already running finish normally.
Policies that lapsed with only rejected claims are expired afterwards.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from parametric_oracle.errors import OracleError
from parametric_oracle.models import Decision, Policy, PolicyStatus, utcnow
from parametric_oracle.orchestrator import Orchestrator
from parametric_oracle.store import InMemoryStore

logger = logging.getLogger(__name__)

# failure code for exceptions outside the OracleError taxonomy
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class SweepReport:
    evaluated: dict[str, Decision] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    cancelled: bool = False

    def summary(self) -> dict[str, int]:
        approved = sum(1 for d in self.evaluated.values() if d.approved)
        return {
            "evaluated": len(self.evaluated),
            "approved": approved,
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "expired": len(self.expired),
        }


class PolicySweep:

    def __init__(self, orchestrator: Orchestrator, store: InMemoryStore,
                 workers: Optional[int] = None):
        self.orchestrator = orchestrator
        self.store = store
        self.workers = workers or orchestrator.config.sweep_workers
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        self._peak = 0
        self._running = 0
        self._count_lock = threading.Lock()

    @property
    def peak_concurrency(self) -> int:
        """Largest number of evaluations seen running at once in the last run."""
        return self._peak

    def due_policies(self, as_of: datetime, horizon_days: int = 0) -> list[Policy]:
        return self.store.list_policies(
            status=PolicyStatus.ACTIVE,
            ends_before=as_of + timedelta(days=horizon_days),
        )

    def _evaluate(self, policy_id: str) -> Decision:
        with self._count_lock:
            self._running += 1
            self._peak = max(self._peak, self._running)
        try:
            return self.orchestrator.evaluate_policy(policy_id)
        finally:
            with self._count_lock:
                self._running -= 1

    def run(
        self,
        as_of: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
        horizon_days: Optional[int] = None,
    ) -> SweepReport:
        as_of = as_of or utcnow()
        cancel_event = cancel_event or threading.Event()
        if horizon_days is None:
            horizon_days = self.orchestrator.config.sweep_horizon_days

        policies = self.due_policies(as_of, horizon_days)
        logger.info("sweep as of %s: %d due policies, %d workers",
                    as_of.isoformat(), len(policies), self.workers)

        report = SweepReport()
        self._peak = 0
        slots = threading.BoundedSemaphore(self.workers)
        futures: dict[str, Future] = {}

        with ThreadPoolExecutor(max_workers=self.workers,
                                thread_name_prefix="oracle-sweep") as pool:
            for i, policy in enumerate(policies):
                if not _acquire_slot(slots, cancel_event):
                    report.cancelled = True
                    report.skipped.extend(p.id for p in policies[i:])
                    logger.warning("sweep cancelled; %d policies not started",
                                   len(policies) - i)
                    break
                fut = pool.submit(self._evaluate, policy.id)
                fut.add_done_callback(lambda _f: slots.release())
                futures[policy.id] = fut

        for policy_id, fut in futures.items():
            try:
                report.evaluated[policy_id] = fut.result()
            except OracleError as exc:
                logger.warning("policy %s: %s", policy_id, exc.message)
                report.failed[policy_id] = exc.code
            except Exception:
                logger.exception("policy %s: evaluation crashed", policy_id)
                report.failed[policy_id] = INTERNAL_ERROR

        if not report.cancelled:
            for policy in policies:
                if policy.id in report.failed:
                    continue
                if self.orchestrator.expire_if_lapsed(policy.id, as_of):
                    report.expired.append(policy.id)

        logger.info("sweep done: %s", report.summary())
        return report


def _acquire_slot(slots: threading.BoundedSemaphore,
                  cancel_event: threading.Event) -> bool:
    """Block until a worker slot frees up; False once the sweep is cancelled."""
    while not cancel_event.is_set():
        if slots.acquire(timeout=0.05):
            if cancel_event.is_set():
                slots.release()
                return False
            return True
    return False
