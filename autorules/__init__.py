"""
Automation rules engine: evaluates advertiser automation rules against
performance facts and queues governance-vetted actions.
"""

__version__ = "1.0.0"

from .engine import CycleRunner, run_cycle
from .errors import ConfigurationError, PerRuleError, PersistenceError
from .models import CycleSummary

__all__ = [
    "CycleRunner",
    "run_cycle",
    "CycleSummary",
    "ConfigurationError",
    "PerRuleError",
    "PersistenceError",
]
