"""Convergence polling against the delivery agent."""
from .poller import ConvergencePoller

__all__ = ["ConvergencePoller"]
