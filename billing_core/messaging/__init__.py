"""SMS unit accounting."""
from .segments import (
    InsufficientUnitsError,
    SmsAnalysis,
    SmsEncoding,
    analyse,
    bulk_units,
    count,
    ensure_units_available,
)

__all__ = [
    "InsufficientUnitsError",
    "SmsAnalysis",
    "SmsEncoding",
    "analyse",
    "bulk_units",
    "count",
    "ensure_units_available",
]
