"""
Parametric claim oracle: evaluates insurance claims against external data
(weather, flight, baggage, venue) and pays approved claims at most once.
"""

from parametric_oracle.config import EngineConfig, configure_logging
from parametric_oracle.errors import OracleError
from parametric_oracle.orchestrator import Orchestrator
from parametric_oracle.payouts import PayoutDispatcher
from parametric_oracle.store import InMemoryStore, load_seed
from parametric_oracle.sweep import PolicySweep, SweepReport

__version__ = "0.1.0"

__all__ = [
    "EngineConfig", "InMemoryStore", "Orchestrator", "OracleError",
    "PayoutDispatcher", "PolicySweep", "SweepReport", "configure_logging",
    "load_seed",
]
