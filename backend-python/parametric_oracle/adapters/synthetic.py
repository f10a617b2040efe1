"""
Deterministic synthetic data provider for demos and local runs.

Stands in for the flight, baggage, venue, price and weather feeds that have
no real integration.  Values come from a seeded LCG (linear congruential generator)
keyed on the query, so the same query always yields the same reading and
nothing depends on ``random`` module state.
"""

from __future__ import annotations

import hashlib

from parametric_oracle.adapters.base import (
    ADAPTER_KINDS,
    BAGGAGE_STATUS,
    FLIGHT_STATUS,
    PRICE,
    VENUE_STATUS,
    WEATHER,
    AdapterQuery,
    DataSourceAdapter,
)
from parametric_oracle.errors import InvalidQuery
from parametric_oracle.models import Reading

FLIGHT_STATUSES = ("on_time", "delayed", "cancelled", "diverted")
BAGGAGE_STATUSES = ("found", "lost", "delayed")
VENUE_STATUSES = ("open", "closed", "cancelled", "restricted")
# reference prices the synthetic feed drifts around (+/- 5%)
BASE_PRICES = {"BTC/USD": 45000.0, "ETH/USD": 2800.0, "CELO/USD": 0.65, "USDC/USD": 1.0}
PRICE_VOLATILITY = 0.05


class SyntheticAdapter(DataSourceAdapter):
    """Generate reproducible readings.

    Parameters
    ----------
    kinds : tuple of str
        Adapter kinds to serve (default: all).
    source : str
        Identifier reported on readings (default ``"synthetic"``).
    seed : int
        Mixed into the per-query state so two synthetic sources disagree
        the way two real providers would (default 42).
    """

    def __init__(self, kinds: tuple[str, ...] = ADAPTER_KINDS,
                 source: str = "synthetic", seed: int = 42):
        unknown = set(kinds) - set(ADAPTER_KINDS)
        if unknown:
            raise ValueError(f"Unknown adapter kinds: {sorted(unknown)}")
        self.kinds = tuple(kinds)
        self.source = source
        self.seed = seed

    # deterministic PRNG, no module-level state
    @staticmethod
    def _lcg(state: int) -> tuple[int, float]:
        """Return (next_state, uniform_0_1)."""
        # Numerical Recipes LCG constants
        state = (state * 1664525 + 1013904223) & 0xFFFFFFFF
        return state, state / 0xFFFFFFFF

    def _initial_state(self, query: AdapterQuery) -> int:
        raw = f"{self.seed}|{query.key()}".encode()
        return int.from_bytes(hashlib.sha256(raw).digest()[:4], "big")

    # ------------------------------------------------------------------

    def fetch(self, query: AdapterQuery, timeout: float) -> Reading:
        if not self.supports(query.kind):
            raise InvalidQuery(f"{self.source} cannot serve '{query.kind}'")
        state = self._initial_state(query)
        draws = []
        for _ in range(6):
            state, u = self._lcg(state)
            draws.append(u)

        if query.kind == WEATHER:
            values = {
                "temperature": round(-10.0 + draws[0] * 45.0, 1),
                "precipitation": round(draws[1] * 30.0, 1),
                "wind_speed": round(draws[2] * 80.0, 1),
                "humidity": round(draws[3] * 100.0, 1),
                "visibility": round(5.0 + draws[4] * 10.0, 1),
            }
        elif query.kind == FLIGHT_STATUS:
            status = FLIGHT_STATUSES[int(draws[0] * len(FLIGHT_STATUSES)) % len(FLIGHT_STATUSES)]
            values = {
                "flight_number": query.params.get("flight_number"),
                "status": status,
                "delay_minutes": int(30 + draws[1] * 480) if status == "delayed" else 0,
            }
        elif query.kind == BAGGAGE_STATUS:
            status = BAGGAGE_STATUSES[int(draws[0] * len(BAGGAGE_STATUSES)) % len(BAGGAGE_STATUSES)]
            values = {
                "baggage_reference": query.params.get("baggage_reference"),
                "status": status,
                "delay_hours": round(draws[1] * 48.0, 1) if status == "delayed" else 0.0,
            }
        elif query.kind == VENUE_STATUS:
            status = VENUE_STATUSES[int(draws[0] * len(VENUE_STATUSES)) % len(VENUE_STATUSES)]
            values = {"venue_id": query.params.get("venue_id"), "status": status}
        elif query.kind == PRICE:
            symbol = query.params.get("symbol")
            base = BASE_PRICES.get(symbol, 100.0)
            change = (draws[0] - 0.5) * 2 * PRICE_VOLATILITY
            values = {"symbol": symbol, "price": round(base * (1 + change), 6),
                      "status": "trading"}
        else:
            raise InvalidQuery(f"{self.source} has no generator for '{query.kind}'")

        return Reading(kind=query.kind, source=self.source, values=values)
