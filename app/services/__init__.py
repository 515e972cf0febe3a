# Services module
from app.services.computed_properties import (
    compute_assignments,
    upsert_segment,
    upsert_user_property,
)
from app.services.messaging import send_with_retries

__all__ = [
    # Computed Properties Services
    "compute_assignments",
    "upsert_segment",
    "upsert_user_property",
    # Messaging
    "send_with_retries",
]
