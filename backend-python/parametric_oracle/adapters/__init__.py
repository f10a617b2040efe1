"""
Pluggable data source adapters.

Each adapter serves one or more kinds (``weather``, ``flight_status``,
``baggage_status``, ``venue_status``, ``price``) and returns a ``Reading``.
The orchestrator groups adapters by kind and fans out over every source of
a kind; the condition evaluator never calls adapters itself.
"""

from parametric_oracle.adapters.base import (
    ADAPTER_KINDS,
    BAGGAGE_STATUS,
    CONDITION_ADAPTER_KIND,
    FLIGHT_STATUS,
    PRICE,
    VENUE_STATUS,
    WEATHER,
    AdapterQuery,
    DataSourceAdapter,
    build_query,
    fetch_with_retry,
)
from parametric_oracle.adapters.fixture import FixtureAdapter
from parametric_oracle.adapters.open_meteo import OpenMeteoWeatherAdapter
from parametric_oracle.adapters.synthetic import SyntheticAdapter

ADAPTER_REGISTRY: dict[str, type] = {
    "open_meteo": OpenMeteoWeatherAdapter,
    "synthetic": SyntheticAdapter,
    "fixture": FixtureAdapter,
}


def get_adapter(name: str, **kwargs) -> DataSourceAdapter:
    """Instantiate an adapter by name."""
    if name not in ADAPTER_REGISTRY:
        raise KeyError(
            f"Unknown adapter '{name}'. Available: {sorted(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[name](**kwargs)


def build_adapter_set(mode: str = "synthetic") -> list[DataSourceAdapter]:
    """Standard adapter line-ups.

    ``synthetic``: two disagreeing synthetic weather sources plus synthetic
    flight, baggage, venue and price feeds.  ``live``: Open-Meteo as primary
    weather source with a synthetic backup; other kinds stay synthetic.
    """
    others = get_adapter("synthetic",
                         kinds=(FLIGHT_STATUS, BAGGAGE_STATUS, VENUE_STATUS, PRICE),
                         source="synthetic_status")
    backup = get_adapter("synthetic", kinds=(WEATHER,), source="backup_weather", seed=7)
    if mode == "synthetic":
        primary = get_adapter("synthetic", kinds=(WEATHER,), source="synthetic_weather")
    elif mode == "live":
        primary = get_adapter("open_meteo")
    else:
        raise KeyError(f"Unknown adapter set '{mode}'. Available: ['live', 'synthetic']")
    return [primary, backup, others]


__all__ = [
    "ADAPTER_KINDS", "ADAPTER_REGISTRY", "BAGGAGE_STATUS", "CONDITION_ADAPTER_KIND",
    "FLIGHT_STATUS", "PRICE", "VENUE_STATUS", "WEATHER", "AdapterQuery", "DataSourceAdapter",
    "FixtureAdapter", "OpenMeteoWeatherAdapter", "SyntheticAdapter",
    "build_adapter_set", "build_query", "fetch_with_retry", "get_adapter",
]
