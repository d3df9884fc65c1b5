"""Promotion Controller — staged GitOps promotion with approval gates and convergence polling."""

__version__ = "1.0.0"
