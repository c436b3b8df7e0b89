"""
Gatekeeper - admission control for metered LLM providers.

Rate limiting (token bucket, sliding window, fixed window) and hierarchical
quotas with reservations, composed into a single admit/settle/cancel API.
"""

from gatekeeper.admission import AdmissionController, AdmissionTicket, FailureMode, TicketState
from gatekeeper.clock import Clock, ManualClock, SystemClock
from gatekeeper.exceptions import (
    ConfigurationError,
    GatekeeperError,
    QuotaExceeded,
    RateLimitExceeded,
    StateStoreUnavailable,
    TicketStateError,
)
from gatekeeper.quota import QuotaManager, QuotaPeriod, QuotaScope, QuotaType
from gatekeeper.ratelimit import Algorithm, LimitRule, RateLimitConfig, RateLimiter

__version__ = "0.1.0"

__all__ = [
    "AdmissionController",
    "AdmissionTicket",
    "Algorithm",
    "Clock",
    "ConfigurationError",
    "FailureMode",
    "GatekeeperError",
    "LimitRule",
    "ManualClock",
    "QuotaExceeded",
    "QuotaManager",
    "QuotaPeriod",
    "QuotaScope",
    "QuotaType",
    "RateLimitConfig",
    "RateLimitExceeded",
    "RateLimiter",
    "StateStoreUnavailable",
    "SystemClock",
    "TicketState",
    "TicketStateError",
]
