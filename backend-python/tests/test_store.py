"""Tests for the state store, status transitions, seed loading and config."""

import json

import pytest

from conftest import NOW
from parametric_oracle.audit_writers import write_audit_csv, write_audit_json
from parametric_oracle.config import EngineConfig
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
    PayoutRecord,
    PolicyStatus,
)
from parametric_oracle.store import load_seed


def new_claim(claim_id="c1", policy_id="pol_1"):
    return Claim(id=claim_id, policy_id=policy_id, holder_id="holder_1",
                 claim_type="flight_delay", requested_amount=100.0, submitted_at=NOW)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def test_claim_lifecycle(store, add_policy):
    add_policy()
    store.create_claim(new_claim())
    store.update_claim_status("c1", ClaimStatus.INVESTIGATING)
    store.update_claim_status("c1", ClaimStatus.APPROVED)
    assert store.update_claim_status("c1", ClaimStatus.PAID).status == ClaimStatus.PAID


@pytest.mark.parametrize("path", [
    [ClaimStatus.PAID],                                     # skips approved
    [ClaimStatus.REJECTED, ClaimStatus.APPROVED],           # out of terminal
    [ClaimStatus.APPROVED, ClaimStatus.PENDING],            # backwards
    [ClaimStatus.INVESTIGATING, ClaimStatus.PENDING],
])
def test_illegal_claim_transitions(store, add_policy, path):
    add_policy()
    store.create_claim(new_claim())
    with pytest.raises(InvalidTransition):
        for status in path:
            store.update_claim_status("c1", status)


def test_policy_terminal_states(store, add_policy):
    add_policy()
    store.update_policy_status("pol_1", PolicyStatus.EXPIRED)
    with pytest.raises(InvalidTransition):
        store.update_policy_status("pol_1", PolicyStatus.ACTIVE)
    with pytest.raises(InvalidTransition):
        store.update_policy_status("pol_1", PolicyStatus.CLAIMED)


def test_claims_need_active_policy(store, add_policy):
    add_policy()
    store.update_policy_status("pol_1", PolicyStatus.CANCELLED)
    with pytest.raises(InvalidState):
        store.create_claim(new_claim())


def test_claims_start_pending(store, add_policy):
    add_policy()
    claim = new_claim()
    claim.status = ClaimStatus.APPROVED
    with pytest.raises(InvalidState):
        store.create_claim(claim)


# ---------------------------------------------------------------------------
# Versions and copies
# ---------------------------------------------------------------------------

def test_optimistic_version_check(store, add_policy):
    add_policy()
    claim = store.create_claim(new_claim())
    store.update_claim_fields("c1", {"admin_notes": "first"}, expected_version=claim.version)
    with pytest.raises(InvalidState):
        store.update_claim_fields("c1", {"admin_notes": "stale"},
                                  expected_version=claim.version)
    assert store.get_claim("c1").admin_notes == "first"


def test_rows_are_copies(store, add_policy):
    add_policy()
    claim = store.create_claim(new_claim())
    claim.evidence["tampered"] = True
    assert "tampered" not in store.get_claim("c1").evidence


def test_status_not_updatable_as_field(store, add_policy):
    add_policy()
    store.create_claim(new_claim())
    with pytest.raises(ValueError):
        store.update_claim_fields("c1", {"status": ClaimStatus.PAID})


def test_inactive_conditions_are_hidden(store, add_policy):
    add_policy([{"condition_type": "weather"},
                {"condition_type": "flight", "is_active": False}])
    _, conditions = store.get_policy_with_conditions("pol_1")
    assert [c.condition_type.value for c in conditions] == ["weather"]


def test_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_claim("nope")
    with pytest.raises(NotFoundError):
        store.get_policy_with_conditions("nope")


def test_payout_record_unique_per_claim(store):
    rec = PayoutRecord(id="r1", claim_id="c1", amount=10.0, transaction_ref="0x1",
                       to_address="0xabc", created_at=NOW)
    store.insert_payout_record(rec)
    with pytest.raises(AlreadyPaidError):
        store.insert_payout_record(PayoutRecord(id="r2", claim_id="c1", amount=10.0,
                                                transaction_ref="0x2", to_address="0xabc",
                                                created_at=NOW))


def test_list_claims_filters_newest_first(store, add_policy):
    add_policy()
    older = new_claim("old")
    newer = new_claim("new")
    newer.submitted_at = NOW.replace(hour=13)
    store.create_claim(older)
    store.create_claim(newer)
    store.update_claim_status("old", ClaimStatus.REJECTED)
    assert [c.id for c in store.list_claims()] == ["new", "old"]
    assert [c.id for c in store.list_claims(status="rejected")] == ["old"]
    assert store.list_claims(holder_id="someone") == []


# ---------------------------------------------------------------------------
# Seed loading
# ---------------------------------------------------------------------------

def test_load_seed(tmp_path):
    seed = {
        "policies": [{
            "id": "p1", "holder_id": "h1", "policy_type": "flight",
            "premium_amount": 10, "coverage_amount": 200,
            "start": "2025-06-01T00:00:00Z", "end": "2025-06-02T00:00:00Z",
            "coverage_details": {"flight_number": "AF1"},
            "conditions": [{"condition_type": "flight", "payout_percentage": 80}],
        }],
        "claims": [{"id": "c1", "policy_id": "p1", "holder_id": "h1",
                    "claim_type": "flight_delay", "requested_amount": 200,
                    "submitted_at": "2025-06-01T12:00:00Z"}],
    }
    path = tmp_path / "seed.json"
    path.write_text(json.dumps(seed))

    store = load_seed(path)
    policy, conditions = store.get_policy_with_conditions("p1")
    assert policy.start.tzinfo is not None
    assert conditions[0].id == "p1_cond_0"
    assert conditions[0].payout_percentage == 80
    assert store.get_claim("c1").status == ClaimStatus.PENDING


def test_demo_seed_loads():
    from pathlib import Path
    path = Path(__file__).resolve().parent.parent / "configs" / "demo_seed.json"
    store = load_seed(path)
    assert len(store.list_policies()) == 4
    assert len(store.list_claims()) == 1


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def test_config_from_env():
    cfg = EngineConfig.from_env({"ORACLE_CONFIDENCE_FLOOR": "0.7",
                                 "ORACLE_SWEEP_WORKERS": "9",
                                 "ORACLE_AUTO_DISPATCH": "false"})
    assert cfg.confidence_floor == 0.7
    assert cfg.sweep_workers == 9
    assert cfg.auto_dispatch is False
    assert cfg.adapter_retries == 2


def test_config_validation():
    with pytest.raises(ValueError):
        EngineConfig(confidence_floor=1.5)
    with pytest.raises(ValueError):
        EngineConfig.from_env({"ORACLE_SWEEP_WORKERS": "0"})


# ---------------------------------------------------------------------------
# Audit export
# ---------------------------------------------------------------------------

def test_audit_writers(tmp_path):
    records = [
        AuditRecord(id="a1", claim_id="c1", policy_id="p1", outcome="approved",
                    decision={"approved": True, "payout_percentage": 100,
                              "payout_amount": 300.0, "confidence": 0.9,
                              "requires_manual_review": False},
                    readings=({"source": "flights", "values": {"status": "cancelled"}},),
                    recorded_at=NOW),
        AuditRecord(id="a2", claim_id="c2", policy_id="p1",
                    outcome="no_active_conditions", decision=None,
                    errors=("weather: no adapter configured",), recorded_at=NOW),
    ]
    json_path = tmp_path / "audit.json"
    csv_path = tmp_path / "audit.csv"
    write_audit_json(records, str(json_path))
    write_audit_csv(records, str(csv_path))

    data = json.loads(json_path.read_text())
    assert [r["outcome"] for r in data["records"]] == ["approved", "no_active_conditions"]
    lines = csv_path.read_text().splitlines()
    assert len(lines) == 3
    assert "flights" in lines[1]
    assert "no adapter configured" in lines[2]
