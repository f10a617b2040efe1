"""Tests for data source adapters, query building and the retry wrapper."""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone

import pytest
import requests

from conftest import NOW, weather
from parametric_oracle.adapters import (
    AdapterQuery,
    FixtureAdapter,
    OpenMeteoWeatherAdapter,
    SyntheticAdapter,
    build_adapter_set,
    build_query,
    fetch_with_retry,
    get_adapter,
)
from parametric_oracle.adapters import base as adapter_base
from parametric_oracle.adapters.open_meteo import ARCHIVE_API, FORECAST_API
from parametric_oracle.errors import (
    AdapterTimeout,
    AdapterUnavailable,
    InvalidQuery,
    PartialData,
)
from parametric_oracle.models import Policy, Reading


def make_policy(**details):
    return Policy(id="p", holder_id="h", policy_type="travel", premium_amount=1,
                  coverage_amount=100, start=NOW, end=NOW, coverage_details=details)


WX_QUERY = AdapterQuery(kind="weather", params={"lat": 48.85, "lon": 2.35,
                                                "date": "2024-06-01"})


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------

def test_build_weather_query_uses_event_date():
    q = build_query("weather", make_policy(lat=1, lon=2, event_date="2025-06-20"))
    assert q.params == {"lat": 1.0, "lon": 2.0, "date": "2025-06-20"}


def test_build_weather_query_defaults_to_policy_start():
    q = build_query("weather", make_policy(location="Paris"))
    assert q.params == {"location": "Paris", "date": "2025-06-15"}


def test_trigger_params_override_coverage_details():
    q = build_query("flight_status", make_policy(flight_number="AF1"),
                    {"flight_number": "LH2", "flight_date": "2025-07-01"})
    assert q.params == {"flight_number": "LH2", "date": "2025-07-01"}


def test_build_price_query_normalises_symbol():
    assert build_query("price", make_policy(symbol="celo/usd")).params == {
        "symbol": "CELO/USD"}
    q = build_query("price", make_policy(symbol="BTC/USD"), {"symbol": "eth/usd"})
    assert q.params == {"symbol": "ETH/USD"}


@pytest.mark.parametrize("kind", ["weather", "flight_status", "baggage_status",
                                  "venue_status", "price", "stock_price"])
def test_missing_identifiers_raise_invalid_query(kind):
    with pytest.raises(InvalidQuery):
        build_query(kind, make_policy())


# ---------------------------------------------------------------------------
# Retry wrapper
# ---------------------------------------------------------------------------

def test_retry_then_success_with_backoff():
    ok = weather(precipitation=1)
    adapter = FixtureAdapter("weather", [AdapterUnavailable("down"),
                                         AdapterTimeout("slow"), ok])
    waits = []
    out = fetch_with_retry(adapter, WX_QUERY, retries=2, backoff_base=0.5,
                           sleep=waits.append, rng=random.Random(1))
    assert out is ok
    assert adapter.calls == 3
    assert len(waits) == 2
    assert 0.5 <= waits[0] <= 1.0
    assert 1.0 <= waits[1] <= 1.5


def test_retries_exhausted_raise_unavailable():
    adapter = FixtureAdapter("weather", AdapterUnavailable("down"))
    with pytest.raises(AdapterUnavailable):
        fetch_with_retry(adapter, WX_QUERY, retries=2, sleep=lambda s: None)
    assert adapter.calls == 3


def test_invalid_query_is_not_retried():
    adapter = FixtureAdapter("weather", InvalidQuery("bad"))
    with pytest.raises(InvalidQuery):
        fetch_with_retry(adapter, WX_QUERY, sleep=lambda s: None)
    assert adapter.calls == 1


def test_partial_data_returns_lower_confidence_reading():
    partial = weather(confidence=0.66, precipitation=3)
    adapter = FixtureAdapter("weather", PartialData("wind missing", partial))
    assert fetch_with_retry(adapter, WX_QUERY, sleep=lambda s: None) is partial


def test_slow_adapter_times_out():
    adapter = FixtureAdapter("weather", weather(precipitation=1), delay=0.5)
    with pytest.raises(AdapterUnavailable) as exc:
        fetch_with_retry(adapter, WX_QUERY, timeout=0.05, retries=1,
                         sleep=lambda s: None)
    assert "no response within" in exc.value.message
    assert adapter.calls == 2


def test_timed_out_calls_are_bounded_by_the_shared_pool(monkeypatch):
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="bounded-call")
    monkeypatch.setattr(adapter_base, "_CALL_POOL", pool)
    adapter = FixtureAdapter("weather", weather(precipitation=1), delay=0.3)

    for _ in range(5):
        with pytest.raises(AdapterUnavailable):
            fetch_with_retry(adapter, WX_QUERY, timeout=0.02, retries=0,
                             sleep=lambda s: None)

    stragglers = [t for t in threading.enumerate() if t.name.startswith("bounded-call")]
    assert len(stragglers) <= 2
    # calls queued behind the stragglers were cancelled before they ran
    assert adapter.calls < 5
    pool.shutdown(wait=True)


def test_unexpected_exception_is_retried():
    ok = weather(precipitation=1)
    adapter = FixtureAdapter("weather", [KeyError("daily"), ok])
    assert fetch_with_retry(adapter, WX_QUERY, sleep=lambda s: None) is ok


# ---------------------------------------------------------------------------
# Open-Meteo (requests.get monkeypatched)
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def daily_payload(temp=21.5, precip=12.3, wind=40.1, day="2024-06-01"):
    return {
        "latitude": 48.86, "longitude": 2.34,
        "daily": {
            "time": [day],
            "temperature_2m_mean": [temp],
            "precipitation_sum": [precip],
            "wind_speed_10m_max": [wind],
        },
    }


@pytest.fixture
def calls(monkeypatch):
    """Record requests.get calls and answer from a queue of responses."""
    state = {"calls": [], "responses": []}

    def fake_get(url, params=None, timeout=None):
        state["calls"].append((url, params, timeout))
        resp = state["responses"].pop(0) if len(state["responses"]) > 1 \
            else state["responses"][0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    monkeypatch.setattr(requests, "get", fake_get)
    return state


def test_open_meteo_full_reading(calls):
    calls["responses"] = [FakeResponse(payload=daily_payload())]
    adapter = OpenMeteoWeatherAdapter(today=date(2025, 1, 1))
    r = adapter.fetch(WX_QUERY, timeout=3)
    assert r.source == "open_meteo"
    assert r.confidence == 1.0
    assert r.partial is False
    assert r.values["precipitation"] == 12.3
    assert r.values["wind_speed"] == 40.1
    url, params, timeout = calls["calls"][0]
    assert url == ARCHIVE_API
    assert params["start_date"] == params["end_date"] == "2024-06-01"
    assert timeout == 3


def test_open_meteo_recent_dates_use_forecast(calls):
    calls["responses"] = [FakeResponse(payload=daily_payload())]
    OpenMeteoWeatherAdapter(today=date(2024, 6, 2)).fetch(WX_QUERY, timeout=3)
    assert calls["calls"][0][0] == FORECAST_API


def test_open_meteo_partial_data(calls):
    calls["responses"] = [FakeResponse(payload=daily_payload(wind=None))]
    adapter = OpenMeteoWeatherAdapter(today=date(2025, 1, 1))
    with pytest.raises(PartialData) as exc:
        adapter.fetch(WX_QUERY, timeout=3)
    reading = exc.value.reading
    assert reading.partial is True
    assert reading.confidence == pytest.approx(2 / 3, abs=1e-4)
    assert "wind_speed" not in reading.values


def test_open_meteo_all_null_is_unavailable(calls):
    calls["responses"] = [FakeResponse(payload=daily_payload(None, None, None))]
    with pytest.raises(AdapterUnavailable):
        OpenMeteoWeatherAdapter(today=date(2025, 1, 1)).fetch(WX_QUERY, timeout=3)


@pytest.mark.parametrize("response,error", [
    (FakeResponse(503), AdapterUnavailable),
    (FakeResponse(429), AdapterUnavailable),
    (FakeResponse(400, text="bad date"), InvalidQuery),
    (FakeResponse(200, payload=None), AdapterUnavailable),
    (requests.exceptions.ConnectTimeout("t"), AdapterTimeout),
    (requests.exceptions.ConnectionError("refused"), AdapterUnavailable),
])
def test_open_meteo_http_failures(calls, response, error):
    calls["responses"] = [response]
    with pytest.raises(error):
        OpenMeteoWeatherAdapter(today=date(2025, 1, 1)).fetch(WX_QUERY, timeout=3)


def test_open_meteo_geocodes_location(calls):
    calls["responses"] = [
        FakeResponse(payload={"results": [{"latitude": 45.76, "longitude": 4.84}]}),
        FakeResponse(payload=daily_payload()),
    ]
    q = AdapterQuery(kind="weather", params={"location": "Lyon", "date": "2024-06-01"})
    OpenMeteoWeatherAdapter(today=date(2025, 1, 1)).fetch(q, timeout=3)
    assert calls["calls"][1][1]["latitude"] == 45.76


def test_open_meteo_retried_through_wrapper(calls):
    calls["responses"] = [FakeResponse(503), FakeResponse(payload=daily_payload())]
    r = fetch_with_retry(OpenMeteoWeatherAdapter(today=date(2025, 1, 1)), WX_QUERY,
                         sleep=lambda s: None)
    assert r.values["temperature"] == 21.5
    assert len(calls["calls"]) == 2


# ---------------------------------------------------------------------------
# Synthetic adapter and registry
# ---------------------------------------------------------------------------

def test_synthetic_is_deterministic_per_query():
    a = SyntheticAdapter()
    first = a.fetch(WX_QUERY, timeout=1)
    second = a.fetch(WX_QUERY, timeout=1)
    assert first.values == second.values


def test_synthetic_seeds_disagree():
    a = SyntheticAdapter(seed=42).fetch(WX_QUERY, timeout=1)
    b = SyntheticAdapter(seed=7).fetch(WX_QUERY, timeout=1)
    assert a.values != b.values


def test_synthetic_flight_status_shape():
    q = AdapterQuery(kind="flight_status", params={"flight_number": "AF1", "date": "2025-06-01"})
    r = SyntheticAdapter().fetch(q, timeout=1)
    assert r.values["status"] in ("on_time", "delayed", "cancelled", "diverted")
    if r.values["status"] != "delayed":
        assert r.values["delay_minutes"] == 0


def test_synthetic_price_drifts_around_reference():
    q = AdapterQuery(kind="price", params={"symbol": "CELO/USD"})
    first = SyntheticAdapter().fetch(q, timeout=1)
    assert first.values["status"] == "trading"
    assert 0.65 * 0.95 <= first.values["price"] <= 0.65 * 1.05
    assert SyntheticAdapter().fetch(q, timeout=1).values == first.values


def test_synthetic_rejects_unserved_kind():
    with pytest.raises(InvalidQuery):
        SyntheticAdapter(kinds=("weather",)).fetch(
            AdapterQuery(kind="venue_status", params={"venue_id": "v"}), timeout=1)


def test_synthetic_kind_without_generator_is_invalid_query():
    adapter = SyntheticAdapter()
    adapter.kinds = adapter.kinds + ("tide_level",)
    with pytest.raises(InvalidQuery, match="no generator"):
        adapter.fetch(AdapterQuery(kind="tide_level", params={}), timeout=1)


def test_registry():
    assert isinstance(get_adapter("synthetic", seed=1), SyntheticAdapter)
    with pytest.raises(KeyError):
        get_adapter("chainlink")


def test_adapter_sets():
    synthetic = build_adapter_set("synthetic")
    assert [a.source for a in synthetic] == ["synthetic_weather", "backup_weather",
                                             "synthetic_status"]
    live = build_adapter_set("live")
    assert isinstance(live[0], OpenMeteoWeatherAdapter)
    with pytest.raises(KeyError):
        build_adapter_set("prod")


def test_reading_confidence_bounds():
    with pytest.raises(ValueError):
        Reading(kind="weather", source="x", values={}, confidence=1.5,
                observed_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
