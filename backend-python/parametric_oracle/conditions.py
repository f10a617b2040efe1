"""
Condition evaluator: oracle trigger rules per condition type.

Each rule is a callable with signature::

    rule(condition: OracleCondition, readings: list[Reading]) -> ConditionResult

Rules are deterministic and stateless; they never fetch data and never
generate randomness.  Readings come from the adapters the orchestrator ran.

Built-in rules
--------------
weather            OR of thresholds over readings averaged across sources
flight             cancelled, or delayed past a threshold (severity tiers);
                   single authoritative status required
travel_disruption  flight rule with a 240 minute default threshold
baggage            lost, or delayed past ``min_delay_hours``
venue              venue closed or event cancelled
price              quote above or below a threshold; feeds must agree
health             never automatic; always flagged for manual review

``aggregate`` combines the results of all conditions on one policy with the
max-payout tie-break: the payout is the largest percentage among conditions
that are met, never a sum.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from parametric_oracle.errors import SourceConflict
from parametric_oracle.models import ConditionResult, ConditionType, OracleCondition, Reading


def _scaled(percentage: float, condition: OracleCondition) -> int:
    """Scale a tier percentage by the condition's own payout percentage."""
    return int(round(percentage * condition.payout_percentage / 100.0))


def _no_data(condition: OracleCondition, message: str) -> ConditionResult:
    return ConditionResult(
        condition_id=condition.id,
        condition_type=condition.condition_type,
        met=False,
        confidence=0.0,
        payout_percentage=0,
        evidence={"message": message},
        error="no_data",
    )


# ============================================================================
# Weather
# ============================================================================

class WeatherRule:
    """Any configured threshold crossed => met (OR, not AND).

    Trigger params (all optional, at least one expected):
      - ``precipitation_threshold``  precipitation > value
      - ``max_wind_speed``           wind_speed > value
      - ``min_temperature``          temperature < value
      - ``max_temperature``          temperature > value
      - ``min_visibility``           visibility < value

    Readings are averaged field by field across sources.  Confidence is
    ``min(sources / 2, 1) * 0.9`` times the mean reading confidence, so a
    single full source gives 0.45 and two give 0.9.
    """

    # param -> (reading field, comparison)
    THRESHOLDS: dict[str, tuple[str, str]] = {
        "precipitation_threshold": ("precipitation", "gt"),
        "max_wind_speed": ("wind_speed", "gt"),
        "min_temperature": ("temperature", "lt"),
        "max_temperature": ("temperature", "gt"),
        "min_visibility": ("visibility", "lt"),
    }
    FIELDS = ("temperature", "precipitation", "wind_speed", "humidity", "visibility")

    @classmethod
    def average(cls, readings: Sequence[Reading]) -> dict[str, float]:
        averaged: dict[str, float] = {}
        for name in cls.FIELDS:
            vals = [float(r.values[name]) for r in readings
                    if r.values.get(name) is not None]
            if vals:
                averaged[name] = round(float(np.mean(vals)), 4)
        return averaged

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        if not readings:
            return _no_data(condition, "No weather data available")

        weather = self.average(readings)
        triggers = condition.trigger_params
        crossed: list[str] = []
        unchecked: list[str] = []

        for param, (field_name, op) in self.THRESHOLDS.items():
            threshold = triggers.get(param)
            if threshold is None:
                continue
            value = weather.get(field_name)
            if value is None:
                unchecked.append(param)
                continue
            if (op == "gt" and value > threshold) or (op == "lt" and value < threshold):
                crossed.append(param)

        met = bool(crossed)
        mean_conf = float(np.mean([r.confidence for r in readings]))
        confidence = min(len(readings) / 2.0, 1.0) * 0.9 * mean_conf

        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=met,
            confidence=round(confidence, 4),
            payout_percentage=condition.payout_percentage if met else 0,
            evidence={
                "weather_data": weather,
                "trigger_conditions": dict(triggers),
                "crossed": crossed,
                "unchecked": unchecked,
                "sources": [r.source for r in readings],
                "sources_count": len(readings),
            },
        )


# ============================================================================
# Flight / travel disruption
# ============================================================================

def _single_authoritative(readings: Sequence[Reading], *keys: str) -> Reading:
    """All readings must agree on ``keys``; the first one is used.

    Shared by the status feeds (flight, baggage, venue).
    """
    first = readings[0]
    for other in readings[1:]:
        for key in keys:
            if other.values.get(key) != first.values.get(key):
                raise SourceConflict(
                    f"{first.source} and {other.source} disagree on '{key}'",
                    sources=[r.source for r in readings],
                    key=key,
                )
    return first


class FlightRule:
    """Cancelled => full condition payout; delayed >= threshold => tier payout.

    Trigger params:
      - ``min_delay_minutes`` (alias ``max_delay_minutes``) delay threshold
      - ``delay_tiers`` list of ``[min_minutes, percentage]``; the highest
        tier reached sets the percentage, scaled by the condition payout.

    Disagreeing sources raise ``SourceConflict`` instead of picking one.
    """

    KNOWN_STATUSES = ("on_time", "delayed", "cancelled", "diverted")
    DEFAULT_TIERS: tuple[tuple[int, int], ...] = ((240, 75), (0, 50))

    def __init__(self, default_threshold: int = 120):
        self.default_threshold = default_threshold

    def _threshold(self, triggers: dict) -> float:
        for key in ("min_delay_minutes", "max_delay_minutes"):
            if triggers.get(key) is not None:
                return float(triggers[key])
        return float(self.default_threshold)

    def _tiers(self, triggers: dict) -> list[tuple[float, int]]:
        """``delay_tiers`` as ``(min_minutes, percentage)``, highest first.

        An empty or missing list falls back to ``DEFAULT_TIERS``; a malformed
        entry raises ``ValueError``.
        """
        raw = triggers.get("delay_tiers") or self.DEFAULT_TIERS
        tiers = []
        for tier in raw:
            try:
                min_minutes, pct = tier
                tiers.append((float(min_minutes), int(pct)))
            except (TypeError, ValueError):
                raise ValueError(f"malformed delay tier {tier!r}") from None
        return sorted(tiers, reverse=True)

    def _tier(self, delay: float, triggers: dict) -> int:
        tiers = self._tiers(triggers)
        for min_minutes, pct in tiers:
            if delay >= min_minutes:
                return pct
        return tiers[-1][1]

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        if not readings:
            return _no_data(condition, "No authoritative flight status available")

        reading = _single_authoritative(readings, "status", "delay_minutes")
        status = reading.values.get("status")
        delay = float(reading.values.get("delay_minutes") or 0)
        triggers = condition.trigger_params
        threshold = self._threshold(triggers)

        met = False
        payout = 0
        if status == "cancelled":
            met, payout = True, condition.payout_percentage
        elif status == "delayed" and delay >= threshold:
            met, payout = True, _scaled(self._tier(delay, triggers), condition)

        known = status in self.KNOWN_STATUSES
        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=met,
            confidence=(0.9 if known else 0.2) * reading.confidence,
            payout_percentage=payout,
            evidence={
                "travel_data": dict(reading.values),
                "threshold_minutes": threshold,
                "source": reading.source,
            },
        )


# ============================================================================
# Baggage
# ============================================================================

class BaggageRule:
    """Lost => full condition payout; delayed >= ``min_delay_hours`` => 50%."""

    KNOWN_STATUSES = ("found", "lost", "delayed")
    DELAYED_PERCENTAGE = 50

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        if not readings:
            return _no_data(condition, "No baggage status available")

        reading = _single_authoritative(readings, "status", "delay_hours")
        status = reading.values.get("status")
        delay_hours = float(reading.values.get("delay_hours") or 0)
        threshold = float(condition.trigger_params.get("min_delay_hours", 24))

        met = False
        payout = 0
        if status == "lost":
            met, payout = True, condition.payout_percentage
        elif status == "delayed" and delay_hours >= threshold:
            met, payout = True, _scaled(self.DELAYED_PERCENTAGE, condition)

        known = status in self.KNOWN_STATUSES
        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=met,
            confidence=(0.9 if known else 0.2) * reading.confidence,
            payout_percentage=payout,
            evidence={
                "baggage_data": dict(reading.values),
                "threshold_hours": threshold,
                "source": reading.source,
            },
        )


# ============================================================================
# Venue
# ============================================================================

class VenueRule:
    """Venue closed or event cancelled => met."""

    KNOWN_STATUSES = ("open", "closed", "cancelled", "restricted")
    TRIGGER_STATUSES = ("closed", "cancelled")

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        if not readings:
            return _no_data(condition, "No venue status available")

        reading = _single_authoritative(readings, "status")
        status = reading.values.get("status")
        met = status in self.TRIGGER_STATUSES

        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=met,
            confidence=0.85 if status in self.KNOWN_STATUSES else 0.3,
            payout_percentage=condition.payout_percentage if met else 0,
            evidence={"venue_status": dict(reading.values), "source": reading.source},
        )


# ============================================================================
# Price
# ============================================================================

class PriceRule:
    """Price above ``price_above`` or below ``price_below`` => met (OR).

    Quotes are averaged across feeds once they agree: a spread wider than
    ``max_deviation`` (relative to the median, default 2%) raises
    ``SourceConflict``.  Confidence is 0.9 times the mean reading confidence
    while every feed is trading, 0.2 once any reports a halt.
    """

    MAX_DEVIATION = 0.02

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        triggers = condition.trigger_params
        above = triggers.get("price_above")
        below = triggers.get("price_below")
        if above is None and below is None:
            return ConditionResult(
                condition_id=condition.id,
                condition_type=condition.condition_type,
                met=False,
                confidence=0.0,
                payout_percentage=0,
                evidence={"message": "Price condition sets neither price_above "
                                     "nor price_below"},
                error="no_thresholds",
            )

        quoted = [r for r in readings if r.values.get("price") is not None]
        if not quoted:
            return _no_data(condition, "No price quote available")

        prices = [float(r.values["price"]) for r in quoted]
        median = float(np.median(prices))
        max_deviation = float(triggers.get("max_deviation", self.MAX_DEVIATION))
        if median > 0 and (max(prices) - min(prices)) / median > max_deviation:
            raise SourceConflict(
                f"price feeds spread more than {max_deviation:.1%}",
                sources=[r.source for r in quoted],
                key="price",
            )

        price = round(float(np.mean(prices)), 6)
        crossed: list[str] = []
        if above is not None and price > float(above):
            crossed.append("price_above")
        if below is not None and price < float(below):
            crossed.append("price_below")

        met = bool(crossed)
        trading = all(r.values.get("status", "trading") == "trading" for r in quoted)
        mean_conf = float(np.mean([r.confidence for r in quoted]))
        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=met,
            confidence=round((0.9 if trading else 0.2) * mean_conf, 4),
            payout_percentage=condition.payout_percentage if met else 0,
            evidence={
                "price": price,
                "symbol": quoted[0].values.get("symbol"),
                "crossed": crossed,
                "sources": [r.source for r in quoted],
            },
        )


# ============================================================================
# Health
# ============================================================================

class HealthRule:
    """Health claims are never decided automatically."""

    def __call__(self, condition: OracleCondition,
                 readings: Sequence[Reading]) -> ConditionResult:
        return ConditionResult(
            condition_id=condition.id,
            condition_type=condition.condition_type,
            met=False,
            confidence=0.0,
            payout_percentage=0,
            evidence={
                "message": "Health emergency claims require manual verification "
                           "and medical documentation",
                "requires_manual_review": True,
            },
            requires_manual_review=True,
        )


# ============================================================================
# Registry: resolve a rule by condition type.
# ============================================================================

CONDITION_REGISTRY: dict[ConditionType, object] = {
    ConditionType.WEATHER: WeatherRule(),
    ConditionType.FLIGHT: FlightRule(default_threshold=120),
    ConditionType.TRAVEL_DISRUPTION: FlightRule(default_threshold=240),
    ConditionType.BAGGAGE: BaggageRule(),
    ConditionType.VENUE: VenueRule(),
    ConditionType.HEALTH: HealthRule(),
    ConditionType.PRICE: PriceRule(),
}


def get_rule(condition_type):
    """Look up a rule by condition type.  Raises KeyError if unknown."""
    try:
        return CONDITION_REGISTRY[ConditionType(condition_type)]
    except (KeyError, ValueError):
        raise KeyError(
            f"Unknown condition type '{condition_type}'. "
            f"Available: {sorted(t.value for t in CONDITION_REGISTRY)}"
        ) from None


def evaluate(condition: OracleCondition, readings: Sequence[Reading]) -> ConditionResult:
    """Evaluate one condition.  May raise ``SourceConflict``."""
    return get_rule(condition.condition_type)(condition, list(readings))


# ============================================================================
# Aggregation across the conditions of one policy
# ============================================================================

@dataclass(frozen=True)
class Aggregate:
    met: bool
    payout_percentage: int
    confidence: float
    requires_manual_review: bool
    has_errors: bool
    winner: Optional[ConditionResult]


def aggregate(results: Sequence[ConditionResult]) -> Aggregate:
    """Max-payout tie-break over the met conditions.

    When something is met, the confidence is the winning condition's (ties on
    payout go to the more confident result).  When nothing is met, it is the
    lowest confidence seen, so one weak source is enough to withhold an
    automatic rejection.
    """
    met = [r for r in results if r.met]
    winner = None
    if met:
        winner = max(met, key=lambda r: (r.payout_percentage, r.confidence))
        confidence = winner.confidence
    else:
        confidence = min((r.confidence for r in results), default=0.0)
    return Aggregate(
        met=bool(met),
        payout_percentage=winner.payout_percentage if winner else 0,
        confidence=confidence,
        requires_manual_review=any(r.requires_manual_review for r in results),
        has_errors=any(r.error for r in results),
        winner=winner,
    )
