"""
Knowledge Base System

Persisted reliability model and the recorder that feeds it from live
interaction outcomes.
"""

from .reliability_store import ReliabilityStore, ApplicationModel
from .observation_recorder import ObservationRecorder, ElementObservation, RouteObservation, RouteDrift

__all__ = [
    "ReliabilityStore",
    "ApplicationModel",
    "ObservationRecorder",
    "ElementObservation",
    "RouteObservation",
    "RouteDrift",
]
