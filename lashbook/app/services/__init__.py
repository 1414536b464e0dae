"""Service package exports.

Submodules are imported by name (``from lashbook.app.services import
booking_services``); nothing is re-exported at package level.
"""

__all__ = [
    "admin_services",
    "availability",
    "booking_services",
    "payments",
    "rate_limiter",
    "reconciliation",
    "shared_services",
]
