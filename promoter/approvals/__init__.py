"""Approval checkpoints for gated promotion stages."""
from .approval_gate import ApprovalGate, ApprovalRequest, ApprovalStatus

__all__ = ["ApprovalGate", "ApprovalRequest", "ApprovalStatus"]
