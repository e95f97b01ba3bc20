"""
Ownership of device-local data.

Tracks which principal the local tables belong to and reconciles local
storage when a different principal signs in.
"""

from .marker import IdentityMarker, SyncCooldown
from .reconciler import (
    ConfirmationAnswer,
    ConfirmationRequest,
    IdentityReconciler,
    ReconcileOutcome,
    ReconcileResult,
)

__all__ = [
    "IdentityMarker",
    "SyncCooldown",
    "IdentityReconciler",
    "ReconcileOutcome",
    "ReconcileResult",
    "ConfirmationAnswer",
    "ConfirmationRequest",
]
