"""
Test factories for generating realistic test data.

Uses factory_boy for declarative test data generation.
"""

from .definitions import (
    TraitNodeFactory,
    PerformedNodeFactory,
    ManualNodeFactory,
    segment_definition,
    trait_definition,
    manual_definition,
)
from .user_event import UserEventFactory, IdentifyEventFactory, TrackEventFactory

__all__ = [
    # Definitions
    "TraitNodeFactory",
    "PerformedNodeFactory",
    "ManualNodeFactory",
    "segment_definition",
    "trait_definition",
    "manual_definition",
    # Events
    "UserEventFactory",
    "IdentifyEventFactory",
    "TrackEventFactory",
]
