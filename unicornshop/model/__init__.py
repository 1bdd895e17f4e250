from .orm import (
    Base, Unicorn, Payment, StatsSnapshot,
    PENDING, SUCCEEDED, FAILED, CANCELED, TERMINAL,
)
from .store import (
    UnicornStore, FulfillOutcome, FulfillResult, create_schema,
)

__all__ = [
    "Base", "Unicorn", "Payment", "StatsSnapshot",
    "PENDING", "SUCCEEDED", "FAILED", "CANCELED", "TERMINAL",
    "UnicornStore", "FulfillOutcome", "FulfillResult", "create_schema",
]
