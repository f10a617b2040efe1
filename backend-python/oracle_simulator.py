"""
Oracle Event Simulator for parametric claims.

Purpose
-------
Generate fake oracle readings for demos / videos without calling any
external API, then push them through the full claim pipeline.

- simulate_reading(): a Reading placed on the chosen side of a condition's
  trigger thresholds.
- simulate_claim_and_payout(): builds a throwaway policy + claim, evaluates
  it against the simulated readings and returns the decision and payout
  payload, matching main.evaluate_claim().

Usage
-----
    from oracle_simulator import simulate_claim_and_payout

    out = simulate_claim_and_payout(
        condition_type="weather",
        trigger_params={"precipitation_threshold": 10, "max_wind_speed": 50},
        coverage_amount=500.0,
        force_trigger=True,
    )
    print(out)
"""

import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

from parametric_oracle.adapters import (
    CONDITION_ADAPTER_KIND,
    FixtureAdapter,
)
from parametric_oracle.collaborators import MockTransferClient
from parametric_oracle.conditions import FlightRule, WeatherRule
from parametric_oracle.config import EngineConfig
from parametric_oracle.models import (
    ConditionType,
    OracleCondition,
    Policy,
    Reading,
)
from parametric_oracle.orchestrator import Orchestrator
from parametric_oracle.payouts import PayoutDispatcher
from parametric_oracle.store import InMemoryStore

# condition type -> (policy type, claim type, coverage details for the query)
DEMO_SETUP = {
    ConditionType.WEATHER: ("weather", "weather_cancellation",
                            {"lat": 48.85, "lon": 2.35}),
    ConditionType.FLIGHT: ("flight", "flight_cancellation",
                           {"flight_number": "AF1234"}),
    ConditionType.TRAVEL_DISRUPTION: ("travel", "flight_delay",
                                      {"flight_number": "AF1234"}),
    ConditionType.BAGGAGE: ("baggage", "baggage_loss",
                            {"baggage_reference": "CDG-000123"}),
    ConditionType.VENUE: ("venue", "venue_closure",
                          {"venue_id": "venue_demo"}),
    ConditionType.HEALTH: ("health", "medical_emergency", {}),
    ConditionType.PRICE: ("travel", "price_threshold",
                          {"symbol": "CELO/USD"}),
}

SIMULATED_SOURCE = "SIMULATED_EVENT"


def _offset(threshold: float, jitter_frac: float, rng: random.Random) -> float:
    jitter = abs(float(threshold)) * float(jitter_frac)
    if jitter == 0:
        jitter = 1.0
    return rng.uniform(0.25, 1.00) * jitter


def simulate_reading(
    condition_type: str,
    trigger_params: Optional[Dict[str, Any]] = None,
    force_trigger: bool = True,
    jitter_frac: float = 0.10,
    source: str = SIMULATED_SOURCE,
    seed: Optional[int] = None,
) -> Reading:
    """
    Create a fake Reading (NO API calls).

    Parameters
    ----------
    force_trigger : bool
        If True, the reading crosses the first configured threshold (or
        carries a triggering status).  If False, every threshold stays on
        the safe side.
    jitter_frac : float
        How far from a threshold to place a value, as a fraction of
        |threshold|.  Zero thresholds use an absolute jitter of 1.
    """
    ctype = ConditionType(condition_type)
    kind = CONDITION_ADAPTER_KIND[ctype]
    if kind is None:
        raise ValueError(f"'{ctype.value}' conditions have no data source to simulate")
    triggers = dict(trigger_params or {})
    rng = random.Random(seed)

    if ctype == ConditionType.WEATHER:
        values = {"temperature": 18.0, "precipitation": 0.0, "wind_speed": 10.0,
                  "humidity": 55.0, "visibility": 10.0}
        configured = [(p, check) for p, check in WeatherRule.THRESHOLDS.items()
                      if triggers.get(p) is not None]
        if not configured:
            raise ValueError("weather simulation needs at least one threshold")
        crossed_field = None
        for i, (param, (field_name, op)) in enumerate(configured):
            if field_name == crossed_field:
                continue
            threshold = float(triggers[param])
            offset = _offset(threshold, jitter_frac, rng)
            cross = force_trigger and i == 0
            if cross:
                crossed_field = field_name
            if op == "gt":
                value = threshold + offset if cross else threshold - offset
            else:
                value = threshold - offset if cross else threshold + offset
            values[field_name] = round(value, 4)
        # a safe-side max_temperature must not undercut a safe-side min_temperature
        if "min_temperature" in triggers and "max_temperature" in triggers and not force_trigger:
            lo, hi = float(triggers["min_temperature"]), float(triggers["max_temperature"])
            values["temperature"] = round((lo + hi) / 2.0, 4)

    elif ctype in (ConditionType.FLIGHT, ConditionType.TRAVEL_DISRUPTION):
        default = 120 if ctype == ConditionType.FLIGHT else 240
        threshold = FlightRule(default_threshold=default)._threshold(triggers)
        if force_trigger:
            delay = int(threshold + _offset(threshold, jitter_frac, rng))
            values = {"status": "delayed", "delay_minutes": delay}
        else:
            values = {"status": "on_time", "delay_minutes": 0}

    elif ctype == ConditionType.PRICE:
        above, below = triggers.get("price_above"), triggers.get("price_below")
        if above is None and below is None:
            raise ValueError("price simulation needs price_above or price_below")
        if force_trigger:
            threshold = float(above if above is not None else below)
            offset = _offset(threshold, jitter_frac, rng)
            price = threshold + offset if above is not None else threshold - offset
        elif above is not None and below is not None:
            price = (float(above) + float(below)) / 2.0
        elif above is not None:
            price = float(above) - _offset(float(above), jitter_frac, rng)
        else:
            price = float(below) + _offset(float(below), jitter_frac, rng)
        values = {"symbol": triggers.get("symbol", "CELO/USD"),
                  "price": round(price, 6), "status": "trading"}

    elif ctype == ConditionType.BAGGAGE:
        values = {"status": "lost", "delay_hours": 0.0} if force_trigger \
            else {"status": "found", "delay_hours": 0.0}

    else:
        values = {"status": "closed" if force_trigger else "open"}

    return Reading(kind=kind, source=source, values=values)


def simulate_claim_and_payout(
    condition_type: str,
    trigger_params: Optional[Dict[str, Any]] = None,
    coverage_amount: float = 1_000.0,
    payout_percentage: int = 100,
    force_trigger: bool = True,
    jitter_frac: float = 0.10,
    seed: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run one simulated claim end to end (policy -> claim -> evaluate -> pay).

    Weather readings come from two simulated sources so the evaluation has
    enough confidence to decide on its own.
    """
    ctype = ConditionType(condition_type)
    policy_type, claim_type, details = DEMO_SETUP[ctype]
    now = datetime.now(timezone.utc)

    store = InMemoryStore()
    policy = store.add_policy(
        Policy(
            id="sim_policy",
            holder_id="sim_holder",
            policy_type=policy_type,
            premium_amount=round(coverage_amount * 0.05, 2),
            coverage_amount=coverage_amount,
            start=now - timedelta(days=1),
            end=now + timedelta(days=1),
            holder_address="0xSIMULATED",
            coverage_details=dict(details, event_date=now.date().isoformat()),
        ),
        [OracleCondition(id="sim_condition", policy_id="sim_policy",
                         condition_type=ctype,
                         trigger_params=dict(trigger_params or {}),
                         payout_percentage=payout_percentage)],
    )

    adapters = []
    reading = None
    kind = CONDITION_ADAPTER_KIND[ctype]
    if kind is not None:
        reading = simulate_reading(ctype, trigger_params, force_trigger=force_trigger,
                                   jitter_frac=jitter_frac, seed=seed)
        adapters.append(FixtureAdapter(kind, reading, source=SIMULATED_SOURCE))
        if ctype == ConditionType.WEATHER:
            second = Reading(kind=kind, source=SIMULATED_SOURCE + "_2",
                             values=dict(reading.values))
            adapters.append(FixtureAdapter(kind, second, source=second.source))

    config = EngineConfig()
    transfers = MockTransferClient()
    dispatcher = PayoutDispatcher(store, transfers, config=config)
    orchestrator = Orchestrator(store, adapters, dispatcher, config=config)

    claim = orchestrator.submit_claim(policy.id, policy.holder_id, claim_type)
    decision = orchestrator.evaluate_claim(claim.id)
    claim = store.get_claim(claim.id)
    record = store.get_payout_record(claim.id)

    return {
        "status": "ok",
        "condition_type": ctype.value,
        "simulated_values": dict(reading.values) if reading else {},
        "claim": claim.to_dict(),
        "evaluation": decision.to_dict(),
        "payout_due": decision.payout_amount,
        "transaction_ref": record.transaction_ref if record else None,
        "source": SIMULATED_SOURCE,
    }


if __name__ == "__main__":
    print("=" * 70)
    print("ORACLE SIMULATOR DEMO")
    print("=" * 70)

    demos = [
        ("weather", {"precipitation_threshold": 10.0, "max_wind_speed": 50.0}),
        ("flight", {"min_delay_minutes": 120}),
        ("baggage", {"min_delay_hours": 24}),
        ("venue", {}),
        ("price", {"price_below": 0.6}),
        ("health", {}),
    ]
    for ctype, params in demos:
        for force in (True, False):
            out = simulate_claim_and_payout(ctype, params, coverage_amount=500.0,
                                            force_trigger=force, seed=7)
            ev = out["evaluation"]
            print(f"\n--- {ctype.upper()} (force_trigger={force}) ---")
            print(f"  Values: {out['simulated_values']}")
            print(f"  Claim status: {out['claim']['status']}")
            print(f"  Approved: {ev['approved']}  confidence: {ev['confidence']:.2f}")
            print(f"  Payout due: {out['payout_due']:.2f}")
