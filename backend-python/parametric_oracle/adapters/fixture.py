"""Scripted adapter that replays injected readings or errors (tests, replays)."""

from __future__ import annotations

import threading
import time
from typing import Iterable, Union

from parametric_oracle.adapters.base import AdapterQuery, DataSourceAdapter
from parametric_oracle.errors import InvalidQuery
from parametric_oracle.models import Reading

Step = Union[Reading, Exception]


class FixtureAdapter(DataSourceAdapter):
    """Return ``steps`` in order; the last step repeats once they run out.

    ``delay`` sleeps before each answer, which lets tests exercise the
    timeout path.  ``calls`` counts every fetch.
    """

    def __init__(self, kind: str, steps: Union[Step, Iterable[Step]],
                 source: str = "fixture", delay: float = 0.0):
        self.kinds = (kind,)
        self.source = source
        self.delay = delay
        if isinstance(steps, (Reading, Exception)):
            steps = [steps]
        self._steps = list(steps)
        if not self._steps:
            raise ValueError("FixtureAdapter needs at least one step")
        self._lock = threading.Lock()
        self.calls = 0
        self.queries: list[AdapterQuery] = []

    def fetch(self, query: AdapterQuery, timeout: float) -> Reading:
        if not self.supports(query.kind):
            raise InvalidQuery(f"{self.source} cannot serve '{query.kind}'")
        with self._lock:
            idx = min(self.calls, len(self._steps) - 1)
            self.calls += 1
            self.queries.append(query)
        if self.delay:
            time.sleep(self.delay)
        step = self._steps[idx]
        if isinstance(step, Exception):
            raise step
        return step
