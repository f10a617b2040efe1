"""Single-attempt JSON GET that maps HTTP failures onto adapter errors."""

from __future__ import annotations

import requests

from parametric_oracle.errors import AdapterTimeout, AdapterUnavailable, InvalidQuery

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def get_json(url: str, params: dict, timeout: float = 5.0) -> dict:
    """GET ``url`` once.

    Retries are not done here; ``fetch_with_retry`` decides.  Rate limiting
    and 5xx map to ``AdapterUnavailable``, other non-200 codes to
    ``InvalidQuery``.
    """
    try:
        r = requests.get(url, params=params, timeout=timeout)
    except requests.exceptions.Timeout as exc:
        raise AdapterTimeout(f"GET {url} timed out", url=url) from exc
    except requests.exceptions.RequestException as exc:
        raise AdapterUnavailable(f"GET {url} failed: {exc}", url=url) from exc

    if r.status_code == 200:
        try:
            return r.json()
        except ValueError as exc:
            raise AdapterUnavailable(f"GET {url} returned invalid JSON", url=url) from exc
    if r.status_code in RETRYABLE_STATUS:
        raise AdapterUnavailable(f"GET {url} returned HTTP {r.status_code}",
                                 url=url, status=r.status_code)
    raise InvalidQuery(f"GET {url} returned HTTP {r.status_code}: {r.text[:200]}",
                       url=url, status=r.status_code)
