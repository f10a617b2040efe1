"""
Adapter contract, query building and the bounded retry wrapper.

An adapter is read-only: ``fetch(query, timeout)`` either returns a
``Reading`` or raises an ``AdapterError``.  Adapters never retry on their
own; ``fetch_with_retry`` owns timeouts, retries and jittered backoff so
every provider is called under the same rules.
"""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Optional

from parametric_oracle.errors import (
    AdapterError,
    AdapterTimeout,
    AdapterUnavailable,
    InvalidQuery,
    PartialData,
)
from parametric_oracle.models import ConditionType, Policy, Reading

logger = logging.getLogger(__name__)

WEATHER = "weather"
FLIGHT_STATUS = "flight_status"
BAGGAGE_STATUS = "baggage_status"
VENUE_STATUS = "venue_status"
PRICE = "price"

ADAPTER_KINDS = (WEATHER, FLIGHT_STATUS, BAGGAGE_STATUS, VENUE_STATUS, PRICE)

# Condition type -> adapter kind.  Health has no data source.
CONDITION_ADAPTER_KIND: dict[ConditionType, Optional[str]] = {
    ConditionType.WEATHER: WEATHER,
    ConditionType.FLIGHT: FLIGHT_STATUS,
    ConditionType.TRAVEL_DISRUPTION: FLIGHT_STATUS,
    ConditionType.BAGGAGE: BAGGAGE_STATUS,
    ConditionType.VENUE: VENUE_STATUS,
    ConditionType.HEALTH: None,
    ConditionType.PRICE: PRICE,
}


@dataclass(frozen=True)
class AdapterQuery:
    kind: str
    params: dict[str, Any] = field(default_factory=dict)

    def key(self) -> tuple:
        return (self.kind, tuple(sorted((k, str(v)) for k, v in self.params.items())))


class DataSourceAdapter:
    """Base class; subclasses set ``kinds`` and ``source`` and implement fetch."""

    kinds: tuple[str, ...] = ()
    source: str = "unknown"

    def supports(self, kind: str) -> bool:
        return kind in self.kinds

    def fetch(self, query: AdapterQuery, timeout: float) -> Reading:
        raise NotImplementedError


# ============================================================================
# Query building
# ============================================================================

def _as_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def build_query(kind: str, policy: Policy,
                trigger_params: Optional[dict[str, Any]] = None) -> AdapterQuery:
    """Build the query for ``kind`` from the policy's coverage details.

    Condition trigger parameters may override coverage details (the original
    app keeps flight numbers on the condition).  Raises ``InvalidQuery`` when
    a required identifier is missing.
    """
    details = dict(policy.coverage_details)
    details.update({k: v for k, v in (trigger_params or {}).items()
                    if k in ("flight_number", "flight_date", "venue_id",
                             "venue_name", "baggage_reference", "lat", "lon",
                             "location", "event_date", "symbol")})
    event_date = _as_date(details.get("event_date", policy.start))

    if kind == WEATHER:
        if "lat" in details and "lon" in details:
            params = {"lat": float(details["lat"]), "lon": float(details["lon"])}
        elif details.get("location"):
            params = {"location": details["location"]}
        else:
            raise InvalidQuery("weather query needs lat/lon or a location",
                               policy_id=policy.id)
        params["date"] = event_date
    elif kind == FLIGHT_STATUS:
        if not details.get("flight_number"):
            raise InvalidQuery("flight status query needs a flight_number",
                               policy_id=policy.id)
        params = {
            "flight_number": details["flight_number"],
            "date": _as_date(details.get("flight_date", event_date)),
        }
    elif kind == BAGGAGE_STATUS:
        if not details.get("baggage_reference"):
            raise InvalidQuery("baggage status query needs a baggage_reference",
                               policy_id=policy.id)
        params = {"baggage_reference": details["baggage_reference"]}
    elif kind == VENUE_STATUS:
        venue = details.get("venue_id") or details.get("venue_name") or details.get("location")
        if not venue:
            raise InvalidQuery("venue status query needs a venue_id",
                               policy_id=policy.id)
        params = {"venue_id": venue, "date": event_date}
    elif kind == PRICE:
        if not details.get("symbol"):
            raise InvalidQuery("price query needs a symbol", policy_id=policy.id)
        params = {"symbol": str(details["symbol"]).upper()}
    else:
        raise InvalidQuery(f"Unknown adapter kind '{kind}'")
    return AdapterQuery(kind=kind, params=params)


# ============================================================================
# Timeout + retry
# ============================================================================

# Shared by every adapter call.  A call that overruns its timeout keeps its
# worker until the adapter returns, so adapters must bound their own I/O with
# the ``timeout`` they are given (``requests`` does).  The pool caps how many
# such stragglers can pile up; calls queued behind them time out as well.
MAX_INFLIGHT_CALLS = 64
_CALL_POOL = ThreadPoolExecutor(max_workers=MAX_INFLIGHT_CALLS,
                                thread_name_prefix="adapter-call")


def _call_with_timeout(fn: Callable[[], Reading], timeout: float) -> Reading:
    future = _CALL_POOL.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise AdapterTimeout(f"no response within {timeout}s") from None


def fetch_with_retry(
    adapter: DataSourceAdapter,
    query: AdapterQuery,
    timeout: float = 5.0,
    retries: int = 2,
    backoff_base: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> Reading:
    """Call ``adapter`` at most ``retries + 1`` times.

    Timeouts and unavailability are retried after ``backoff_base * 2**n``
    plus jitter; ``InvalidQuery`` is raised at once; a ``PartialData`` error
    yields its partial reading.  Exhausted retries raise ``AdapterUnavailable``.
    """
    rng = rng or random.Random()
    last_error: Optional[Exception] = None

    for attempt in range(retries + 1):
        try:
            return _call_with_timeout(lambda: adapter.fetch(query, timeout=timeout), timeout)
        except PartialData as exc:
            logger.info("%s returned partial data for %s: %s",
                        adapter.source, query.kind, exc.message)
            return exc.reading
        except InvalidQuery:
            raise
        except AdapterError as exc:
            last_error = exc
        except Exception as exc:
            logger.exception("adapter %s raised unexpectedly", adapter.source)
            last_error = exc

        if attempt < retries:
            wait = backoff_base * (2 ** attempt) + rng.uniform(0, backoff_base)
            logger.debug("%s attempt %d failed (%s); retrying in %.2fs",
                         adapter.source, attempt + 1, last_error, wait)
            sleep(wait)

    raise AdapterUnavailable(
        f"{adapter.source} unavailable after {retries + 1} attempts: {last_error}",
        source=adapter.source, kind=query.kind,
    )
