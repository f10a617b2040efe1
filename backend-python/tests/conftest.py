"""Shared fixtures: a fixed clock, policy factories and engine wiring."""

from datetime import datetime, timedelta, timezone

import pytest

from parametric_oracle.adapters import FixtureAdapter
from parametric_oracle.collaborators import MockTransferClient
from parametric_oracle.config import EngineConfig
from parametric_oracle.models import OracleCondition, Policy, Reading
from parametric_oracle.orchestrator import Orchestrator
from parametric_oracle.payouts import PayoutDispatcher
from parametric_oracle.store import InMemoryStore

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def weather(source="wx_a", confidence=1.0, **values):
    return Reading(kind="weather", source=source, values=values,
                   confidence=confidence, observed_at=NOW)


def flight(status, delay_minutes=0, source="flights"):
    return Reading(kind="flight_status", source=source,
                   values={"status": status, "delay_minutes": delay_minutes},
                   observed_at=NOW)


def status_reading(kind, status, source="status", **extra):
    return Reading(kind=kind, source=source, values={"status": status, **extra},
                   observed_at=NOW)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def add_policy(store):
    """Factory: add an active policy with the given conditions to ``store``."""

    def _add(conditions=(), policy_id="pol_1", holder_id="holder_1",
             policy_type="travel", coverage_amount=1000.0, start=None, end=None,
             coverage_details=None):
        policy = Policy(
            id=policy_id,
            holder_id=holder_id,
            policy_type=policy_type,
            premium_amount=50.0,
            coverage_amount=coverage_amount,
            start=start or NOW - timedelta(days=2),
            end=end or NOW + timedelta(days=5),
            holder_address="0xabc",
            coverage_details=coverage_details or {
                "lat": 48.85, "lon": 2.35, "flight_number": "AF1234",
                "baggage_reference": "CDG-1", "venue_id": "venue_1",
                "event_date": "2025-06-15",
            },
        )
        conds = [
            OracleCondition(id=f"{policy_id}_c{i}", policy_id=policy_id, **c)
            for i, c in enumerate(conditions)
        ]
        return store.add_policy(policy, conds)

    return _add


@pytest.fixture
def transfers():
    return MockTransferClient()


@pytest.fixture
def make_engine(store, transfers):
    """Factory: (orchestrator, dispatcher) over ``store`` with the given adapters."""

    def _make(adapters, config=None, identity=None, clock=lambda: NOW):
        config = config or EngineConfig(adapter_timeout_s=1.0, backoff_base_s=0.0)
        dispatcher = PayoutDispatcher(store, transfers, config=config, clock=clock)
        orch = Orchestrator(store, adapters, dispatcher, identity=identity,
                            config=config, clock=clock, sleep=lambda s: None)
        return orch, dispatcher

    return _make


def fixture_adapter(kind, *steps, source=None, delay=0.0):
    return FixtureAdapter(kind, list(steps), source=source or f"{kind}_fixture",
                          delay=delay)
