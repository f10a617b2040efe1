"""
Open-Meteo weather adapter.

Fetches daily temperature, precipitation and wind for one date at one
location and normalises it to a ``weather`` Reading::

    {"temperature": C, "precipitation": mm, "wind_speed": km/h}

Dates more than ``ARCHIVE_LAG_DAYS`` in the past are served from the
historical archive, everything else from the forecast API.  A location name
without coordinates is resolved through the Open-Meteo geocoding API first.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from parametric_oracle.adapters.base import WEATHER, AdapterQuery, DataSourceAdapter
from parametric_oracle.adapters.http import get_json
from parametric_oracle.errors import AdapterUnavailable, InvalidQuery, PartialData
from parametric_oracle.models import Reading

FORECAST_API = "https://api.open-meteo.com/v1/forecast"
ARCHIVE_API = "https://archive-api.open-meteo.com/v1/archive"
GEOCODING_API = "https://geocoding-api.open-meteo.com/v1/search"

ARCHIVE_LAG_DAYS = 5

# Open-Meteo daily variable -> Reading field
DAILY_VARIABLES = {
    "temperature_2m_mean": "temperature",
    "precipitation_sum": "precipitation",
    "wind_speed_10m_max": "wind_speed",
}


class OpenMeteoWeatherAdapter(DataSourceAdapter):
    """Weather readings from Open-Meteo.

    Parameters
    ----------
    source : str
        Identifier reported on every Reading (default ``"open_meteo"``).
    today : date, optional
        Reference date for choosing archive vs forecast (defaults to today).
    """

    kinds = (WEATHER,)

    def __init__(self, source: str = "open_meteo", today: Optional[date] = None):
        self.source = source
        self._today = today

    # ------------------------------------------------------------------

    def fetch(self, query: AdapterQuery, timeout: float) -> Reading:
        if query.kind != WEATHER:
            raise InvalidQuery(f"{self.source} cannot serve '{query.kind}'")
        day = query.params.get("date")
        if not day:
            raise InvalidQuery("weather query is missing a date")

        if "lat" in query.params and "lon" in query.params:
            lat, lon = float(query.params["lat"]), float(query.params["lon"])
        else:
            lat, lon = self._geocode(query.params.get("location", ""), timeout)

        params = {
            "latitude": lat,
            "longitude": lon,
            "daily": ",".join(DAILY_VARIABLES),
            "start_date": day,
            "end_date": day,
            "timezone": "UTC",
        }
        data = get_json(self._url_for(day), params, timeout=timeout)
        return self._normalise(data, day, lat, lon)

    # ------------------------------------------------------------------

    def _url_for(self, day: str) -> str:
        today = self._today or date.today()
        cutoff = today - timedelta(days=ARCHIVE_LAG_DAYS)
        return ARCHIVE_API if date.fromisoformat(day) < cutoff else FORECAST_API

    @staticmethod
    def _geocode(location: str, timeout: float) -> tuple[float, float]:
        if not location:
            raise InvalidQuery("weather query needs lat/lon or a location")
        data = get_json(GEOCODING_API, {"name": location, "count": 1}, timeout=timeout)
        results = data.get("results") or []
        if not results:
            raise InvalidQuery(f"Unknown location '{location}'")
        return float(results[0]["latitude"]), float(results[0]["longitude"])

    def _normalise(self, data: dict, day: str, lat: float, lon: float) -> Reading:
        """Open-Meteo daily payload -> Reading (PartialData if fields are null)."""
        daily = data.get("daily", {})
        times = daily.get("time", [])
        if day not in times:
            raise AdapterUnavailable(f"{self.source} returned no data for {day}")
        idx = times.index(day)

        values: dict[str, float] = {}
        for api_name, field_name in DAILY_VARIABLES.items():
            series = daily.get(api_name) or []
            if idx < len(series) and series[idx] is not None:
                values[field_name] = float(series[idx])

        if not values:
            raise AdapterUnavailable(f"{self.source} returned only nulls for {day}")

        meta = {"date": day, "lat": data.get("latitude", lat),
                "lon": data.get("longitude", lon)}
        share = len(values) / len(DAILY_VARIABLES)
        reading = Reading(
            kind=WEATHER,
            source=self.source,
            values={**values, **meta},
            confidence=round(share, 4),
            partial=share < 1.0,
        )
        if reading.partial:
            missing = sorted(set(DAILY_VARIABLES.values()) - set(values))
            raise PartialData(f"missing {missing}", reading, missing=missing)
        return reading
