"""
Oracle Checker: one-shot weather check against Open-Meteo.

Purpose
-------
Integration surface for an off-chain keeper that wants a single weather
verdict without going through stored policies and claims:

- check_actual_weather(): calls Open-Meteo (with timeout + retries) and
  returns the normalised weather Reading as a dict.

- evaluate_payout(): NO API calls. Takes a reading + trigger thresholds
  (+ coverage) and returns a clean payout / no payout payload.

- check_event_and_payout(): convenience wrapper doing both.

Usage
-----
    from oracle_checker import check_event_and_payout

    decision = check_event_and_payout(
        lat=48.85, lon=2.35, date_str="2024-06-01",
        trigger_params={"precipitation_threshold": 10, "max_wind_speed": 50},
        coverage_amount=500.0,
    )
    print(decision)
"""

from typing import Dict, Any

from parametric_oracle.adapters import (
    WEATHER,
    AdapterQuery,
    OpenMeteoWeatherAdapter,
    fetch_with_retry,
)
from parametric_oracle.conditions import evaluate
from parametric_oracle.errors import AdapterError
from parametric_oracle.models import ConditionType, OracleCondition, Reading


def check_actual_weather(
    lat: float,
    lon: float,
    date_str: str,
    timeout: float = 5.0,
    retries: int = 2,
) -> Dict[str, Any]:
    """
    Fetch the observed (or forecast) daily weather at (lat, lon).

    This is the ONLY function here that calls the external API.
    Returns the reading dict, or ``{"error": ..., "code": ...}``.
    """
    query = AdapterQuery(kind=WEATHER, params={"lat": lat, "lon": lon, "date": date_str})
    try:
        reading = fetch_with_retry(OpenMeteoWeatherAdapter(), query,
                                   timeout=timeout, retries=retries)
    except AdapterError as exc:
        return {"error": exc.message, "code": exc.code, "source": "open_meteo"}
    return reading.to_dict()


def evaluate_payout(
    reading: Dict[str, Any],
    trigger_params: Dict[str, float],
    coverage_amount: float,
    payout_percentage: int = 100,
) -> Dict[str, Any]:
    """
    Evaluate payout / no payout for one weather reading (NO API calls).

    Thresholds are OR-combined: any one crossed triggers the payout.
    """
    if "error" in reading:
        return {
            "status": "error",
            "code": reading.get("code"),
            "error": reading["error"],
            "triggered": False,
            "coverage_amount": float(coverage_amount),
            "payout_due": 0.0,
        }

    condition = OracleCondition(
        id="adhoc_weather",
        policy_id="adhoc",
        condition_type=ConditionType.WEATHER,
        trigger_params=dict(trigger_params),
        payout_percentage=payout_percentage,
    )
    result = evaluate(condition, [Reading(
        kind=WEATHER,
        source=reading["source"],
        values=reading["values"],
        confidence=reading.get("confidence", 1.0),
        partial=reading.get("partial", False),
    )])
    payout_due = round(coverage_amount * result.payout_percentage / 100.0, 2)

    return {
        "status": "ok",
        "date": reading["values"].get("date"),
        "triggered": result.met,
        "crossed": result.evidence["crossed"],
        "weather": result.evidence["weather_data"],
        "trigger_params": dict(trigger_params),
        "confidence": round(result.confidence, 4),
        "coverage_amount": float(coverage_amount),
        "payout_percentage": result.payout_percentage,
        "payout_due": payout_due,
    }


def check_event_and_payout(
    lat: float,
    lon: float,
    date_str: str,
    trigger_params: Dict[str, float],
    coverage_amount: float,
    payout_percentage: int = 100,
    timeout: float = 5.0,
) -> Dict[str, Any]:
    """
    Convenience one-liner:
      - fetch the weather from Open-Meteo
      - evaluate thresholds and payout
      - return a single payload dict
    """
    reading = check_actual_weather(lat=lat, lon=lon, date_str=date_str, timeout=timeout)
    decision = evaluate_payout(
        reading=reading,
        trigger_params=trigger_params,
        coverage_amount=coverage_amount,
        payout_percentage=payout_percentage,
    )
    decision.update({
        "lat": float(lat),
        "lon": float(lon),
        "source": reading.get("source"),
    })
    return decision


if __name__ == "__main__":
    print("=" * 70)
    print("ORACLE CHECKER DEMO")
    print("Fetch observed weather AND compute payout/no payout")
    print("=" * 70)

    demo_sites = {
        "Paris": (48.85, 2.35),
        "Chicago": (41.86, -87.65),
    }
    triggers = {"precipitation_threshold": 10.0, "max_wind_speed": 50.0}

    for name, (lat, lon) in demo_sites.items():
        print(f"\n--- {name.upper()} ---")
        out = check_event_and_payout(
            lat=lat, lon=lon, date_str="2024-06-01",
            trigger_params=triggers, coverage_amount=500.0,
        )
        if out["status"] != "ok":
            print(f"  Error: {out.get('error')}")
            continue

        print(f"  Date: {out['date']}")
        print(f"  Weather: {out['weather']}")
        print(f"  Crossed: {out['crossed'] or 'none'}")
        print(f"  Confidence: {out['confidence']:.2f}")
        print(f"  Payout due: {out['payout_due']:.2f}")
