"""Delivery agent control API client."""
from .client import (
    DeliveryAgentClient, SyncRequest, ConvergenceObservation, SyncState, HealthState,
    observation_from_application,
)

__all__ = [
    "DeliveryAgentClient", "SyncRequest", "ConvergenceObservation", "SyncState", "HealthState",
    "observation_from_application",
]
