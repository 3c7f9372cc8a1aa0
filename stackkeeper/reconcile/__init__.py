"""
Reconciliation of stack lifecycle resources against desired policy.
"""

from .models import PassKind, ReconcileReport, RemoteSnapshot, StepResult, StepStatus
from .reconciler import Reconciler, take_snapshot

__all__ = [
    "PassKind",
    "ReconcileReport",
    "RemoteSnapshot",
    "StepResult",
    "StepStatus",
    "Reconciler",
    "take_snapshot",
]
