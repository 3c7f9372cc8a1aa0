"""
Data models for reconciliation passes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional

from ..ids import StackIdentity


class StepStatus(Enum):
    """Outcome of one reconcile step."""
    APPLIED = "applied"      # a write was issued
    UNCHANGED = "unchanged"  # remote already matched
    SKIPPED = "skipped"      # not applicable, set-once already applied, no credential, or cancelled
    FAILED = "failed"


class PassKind(Enum):
    """What triggered a reconciliation pass."""
    CREATED = "created"
    PERIODIC = "periodic"
    MANUAL = "manual"


@dataclass
class StepResult:
    step: str
    status: StepStatus
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in (StepStatus.APPLIED, StepStatus.UNCHANGED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class RemoteSnapshot:
    """
    Read-only view of what the management API reports for a stack.

    Parts that could not be read keep the error instead of a value; a step
    that needs the part re-raises it, so the failure is charged to that step.
    """
    identity: StackIdentity
    fetched_at: datetime
    tags: Optional[Dict[str, str]] = None
    schedules: Optional[List[Dict[str, Any]]] = None
    errors: Dict[str, Exception] = field(default_factory=dict)

    def require_tags(self) -> Dict[str, str]:
        if self.tags is None:
            raise self.errors["tags"]
        return self.tags

    def require_schedules(self) -> List[Dict[str, Any]]:
        if self.schedules is None:
            raise self.errors["schedules"]
        return self.schedules


@dataclass
class ReconcileReport:
    """Partial-success result of one pass over one stack."""
    identity: StackIdentity
    kind: PassKind
    started_at: str
    finished_at: Optional[str] = None
    steps: List[StepResult] = field(default_factory=list)

    def step(self, name: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.step == name:
                return result
        return None

    @property
    def succeeded(self) -> List[str]:
        return [r.step for r in self.steps if r.succeeded]

    @property
    def failed(self) -> List[str]:
        return [r.step for r in self.steps if r.status is StepStatus.FAILED]

    @property
    def skipped(self) -> List[str]:
        return [r.step for r in self.steps if r.status is StepStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.failed) and len(self.failed) < len(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stack": str(self.identity),
            "kind": self.kind.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "ok": self.ok,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "steps": [r.to_dict() for r in self.steps],
        }
