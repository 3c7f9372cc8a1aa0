"""
Reconciler: bring one stack's lifecycle resources in line with its policy.
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from ..api.client import ManagementClient
from ..config import Settings
from ..errors import AuthError, NotFound, StackkeeperError
from ..events import emit_event, EventTypes
from ..ids import StackIdentity
from ..policy import FIELD_UPDATE_POLICIES, UpdatePolicy, TTL_SCHEDULE, DEPLOYMENT_SETTINGS
from ..state import PolicyStore, StackRecord
from .models import PassKind, ReconcileReport, RemoteSnapshot, StepResult, StepStatus
from .steps import PassContext, STEPS

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    StepStatus.APPLIED: EventTypes.STEP_APPLIED,
    StepStatus.UNCHANGED: EventTypes.STEP_UNCHANGED,
    StepStatus.SKIPPED: EventTypes.STEP_SKIPPED,
    StepStatus.FAILED: EventTypes.STEP_FAILED,
}


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def take_snapshot(client: ManagementClient, identity: StackIdentity, now: datetime) -> RemoteSnapshot:
    """Read the remote state used for diffing. Failures are kept per part."""
    snapshot = RemoteSnapshot(identity=identity, fetched_at=now)

    try:
        snapshot.tags = client.get_stack_tags(identity)
    except StackkeeperError as e:
        snapshot.errors["tags"] = e

    try:
        snapshot.schedules = client.list_schedules(identity)
    except NotFound:
        snapshot.schedules = []
    except StackkeeperError as e:
        snapshot.errors["schedules"] = e

    return snapshot


class Reconciler:
    """
    Runs reconciliation passes.

    A pass walks the steps strictly in order. Every step is attempted even
    when an earlier one failed; the report lists what happened to each.
    """

    def __init__(
        self,
        client: ManagementClient,
        store: PolicyStore,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _load_record(self, identity: StackIdentity) -> StackRecord:
        try:
            return self.store.get(identity)
        except NotFound:
            policy = self.settings.default_policy()
            logger.info(f"No policy stored for {identity}, applying defaults")
            return self.store.upsert(identity, policy)

    def _set_once_done(self, step: str, record: StackRecord) -> bool:
        if step == TTL_SCHEDULE:
            return record.policy.ttl_expiration is not None
        return record.is_applied(step)

    def reconcile(
        self,
        identity: StackIdentity,
        kind: PassKind = PassKind.MANUAL,
        cancel: Optional[threading.Event] = None,
    ) -> ReconcileReport:
        """
        Run one pass for a stack.

        Args:
            identity: Stack to reconcile
            kind: What triggered the pass; CREATED resets set-once fields first
            cancel: Optional event checked between steps

        Returns:
            ReconcileReport with one StepResult per step

        Raises:
            ConfigError: The stored policy is invalid; nothing was written
        """
        now = self.clock()
        report = ReconcileReport(identity=identity, kind=kind, started_at=_iso(now))
        home = self.store.home

        if kind is PassKind.CREATED:
            self._reset_set_once(identity)

        record = self._load_record(identity)
        try:
            record.policy.validate()
        except StackkeeperError as e:
            logger.error(f"Aborting pass for {identity}: {e}")
            emit_event(identity, EventTypes.PASS_ABORTED, {"kind": kind.value, "error": str(e)}, home)
            raise

        emit_event(identity, EventTypes.PASS_START, {"kind": kind.value, "policy": record.policy.to_dict()}, home)

        snapshot = take_snapshot(self.client, identity, now)
        ctx = PassContext(
            identity=identity,
            record=record,
            snapshot=snapshot,
            client=self.client,
            store=self.store,
            settings=self.settings,
            now=now,
        )

        for name, step_fn in STEPS:
            if cancel is not None and cancel.is_set():
                result = StepResult(name, StepStatus.SKIPPED, "cancelled")
            elif (FIELD_UPDATE_POLICIES[name] is UpdatePolicy.SET_ONCE_ONLY
                  and self._set_once_done(name, ctx.record)):
                result = StepResult(name, StepStatus.SKIPPED, "set once; already applied")
            else:
                result = self._run_step(name, step_fn, ctx)

            report.steps.append(result)
            emit_event(identity, _STATUS_EVENTS[result.status],
                       {"step": name, "message": result.message}, home)

        report.finished_at = _iso(self.clock())
        emit_event(identity, EventTypes.PASS_DONE, report.to_dict(), home)

        if report.failed:
            logger.warning(f"Pass for {identity} finished with failed steps: {', '.join(report.failed)}")
        else:
            logger.info(f"Pass for {identity} finished: {len(report.succeeded)} ok, {len(report.skipped)} skipped")

        return report

    def _run_step(self, name: str, step_fn, ctx: PassContext) -> StepResult:
        try:
            return step_fn(ctx)
        except AuthError as e:
            logger.warning(f"Skipping {name} for {ctx.identity}: {e}")
            return StepResult(name, StepStatus.SKIPPED, f"no usable credential: {e}", {"auth_error": True})
        except StackkeeperError as e:
            logger.error(f"Step {name} failed for {ctx.identity}: {e}")
            return StepResult(name, StepStatus.FAILED, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in step {name} for {ctx.identity}")
            return StepResult(name, StepStatus.FAILED, f"unexpected error: {e}")

    def _reset_set_once(self, identity: StackIdentity) -> None:
        """A newly created stack gets a fresh deadline and a fresh settings sync."""
        try:
            self.store.set_expiration(identity, None)
        except NotFound:
            return
        self.store.clear_applied(identity, DEPLOYMENT_SETTINGS)
