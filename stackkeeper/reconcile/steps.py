"""
The five lifecycle steps. Each is an idempotent upsert keyed by resource type and stack.
"""

from dataclasses import dataclass
from datetime import datetime
import logging

from ..api.client import ManagementClient, ScheduleKind, TeamStackPermission, drift_schedule_state
from ..config import Settings
from ..deployment import derive_stack_settings, encrypted_env_names
from ..errors import NotFound
from ..ids import StackIdentity, is_review_stack
from ..policy import (
    LifecyclePolicy, DELETE_TAG, TTL_SCHEDULE, DEPLOYMENT_SETTINGS, DRIFT_SCHEDULE, TEAM_PERMISSION,
)
from ..redact import redact_env
from ..state import PolicyStore, StackRecord
from ..ttl import compute_expiration
from .models import RemoteSnapshot, StepResult, StepStatus

logger = logging.getLogger(__name__)

DELETE_TAG_NAME = "delete_stack"
DRIFT_SCHEDULE_CRON = "0 * * * *"


@dataclass
class PassContext:
    """Everything a step needs for one stack in one pass."""
    identity: StackIdentity
    record: StackRecord
    snapshot: RemoteSnapshot
    client: ManagementClient
    store: PolicyStore
    settings: Settings
    now: datetime

    @property
    def policy(self) -> LifecyclePolicy:
        return self.record.policy


def apply_delete_tag(ctx: PassContext) -> StepResult:
    """Set the purge tag unless the stack already carries one."""
    tags = ctx.snapshot.require_tags()
    if DELETE_TAG_NAME in tags:
        return StepResult(DELETE_TAG, StepStatus.UNCHANGED, "tag already present",
                          {"value": tags[DELETE_TAG_NAME]})

    value = ctx.policy.delete_tag
    ctx.client.set_stack_tag(ctx.identity, DELETE_TAG_NAME, value)
    logger.info(f"Tagged {ctx.identity} with {DELETE_TAG_NAME}={value}")
    return StepResult(DELETE_TAG, StepStatus.APPLIED, f"set {DELETE_TAG_NAME}={value}", {"value": value})


def apply_ttl_schedule(ctx: PassContext) -> StepResult:
    """
    Schedule the stack's expiration.

    The deadline is computed once. If a TTL schedule already exists remotely
    (e.g. the local record was lost), its timestamp is adopted rather than
    moved.
    """
    schedules = ctx.snapshot.require_schedules()
    existing = ctx.client.find_schedule(ctx.identity, ScheduleKind.TTL, schedules)
    existing_timestamp = (existing or {}).get("scheduleOnce") or (existing or {}).get("timestamp")

    if existing_timestamp:
        _record_expiration(ctx, existing_timestamp)
        return StepResult(TTL_SCHEDULE, StepStatus.UNCHANGED, "adopted existing TTL schedule",
                          {"timestamp": existing_timestamp})

    timestamp = compute_expiration(ctx.policy.ttl_minutes, ctx.now)
    ctx.client.upsert_ttl_schedule(ctx.identity, timestamp, delete_after_destroy=False, existing=existing)
    _record_expiration(ctx, timestamp)
    logger.info(f"Scheduled TTL for {ctx.identity} at {timestamp}")
    return StepResult(TTL_SCHEDULE, StepStatus.APPLIED, f"expires at {timestamp}", {"timestamp": timestamp})


def _record_expiration(ctx: PassContext, timestamp: str) -> None:
    # Only the deadline is written; other fields may have changed since the pass began
    stored = ctx.store.set_expiration(ctx.identity, timestamp)
    ctx.record.policy = ctx.policy.with_expiration(stored.policy.ttl_expiration)


def sync_deployment_settings(ctx: PassContext) -> StepResult:
    """Copy the template stack's deployment settings onto this stack."""
    if is_review_stack(ctx.identity, ctx.settings.review_stack_pattern):
        return StepResult(DEPLOYMENT_SETTINGS, StepStatus.SKIPPED, "review stack; settings left alone")

    token = ctx.client.access_token()
    template_identity = ctx.identity.with_stack(ctx.settings.template_stack)

    try:
        template = ctx.client.get_deployment_settings(template_identity)
    except NotFound:
        return StepResult(DEPLOYMENT_SETTINGS, StepStatus.SKIPPED,
                          f"template stack {template_identity} has no deployment settings")

    desired = derive_stack_settings(template, ctx.identity.stack, ctx.settings.template_stack, token)

    try:
        current = ctx.client.get_deployment_settings(ctx.identity)
    except NotFound:
        current = None

    details = {"branch": desired.branch, "env": redact_env(desired.env_vars)}
    dropped = [name for name in encrypted_env_names(template.env_vars) if name not in desired.env_vars]
    if dropped:
        details["dropped_env"] = dropped

    if current is not None and current.comparable() == desired.comparable():
        ctx.store.mark_applied(ctx.identity, DEPLOYMENT_SETTINGS)
        return StepResult(DEPLOYMENT_SETTINGS, StepStatus.UNCHANGED, "settings already match template", details)

    ctx.client.update_deployment_settings(ctx.identity, desired)
    ctx.store.mark_applied(ctx.identity, DEPLOYMENT_SETTINGS)
    logger.info(f"Synced deployment settings of {ctx.identity} from {template_identity}: {details}")
    return StepResult(DEPLOYMENT_SETTINGS, StepStatus.APPLIED, f"synced from {template_identity}", details)


def apply_drift_schedule(ctx: PassContext) -> StepResult:
    """Keep an hourly drift run with the policy's remediation flag."""
    auto_remediate = ctx.policy.drift_mode.auto_remediate
    desired = {"scheduleCron": DRIFT_SCHEDULE_CRON, "autoRemediate": auto_remediate}

    schedules = ctx.snapshot.require_schedules()
    existing = ctx.client.find_schedule(ctx.identity, ScheduleKind.DRIFT, schedules)
    if existing is not None and drift_schedule_state(existing) == desired:
        return StepResult(DRIFT_SCHEDULE, StepStatus.UNCHANGED, "drift schedule up to date", desired)

    ctx.client.upsert_drift_schedule(ctx.identity, DRIFT_SCHEDULE_CRON, auto_remediate, existing=existing)
    return StepResult(DRIFT_SCHEDULE, StepStatus.APPLIED,
                      f"hourly drift run, autoRemediate={str(auto_remediate).lower()}", desired)


def grant_team_permission(ctx: PassContext) -> StepResult:
    team = ctx.policy.team
    ctx.client.grant_team_permission(ctx.identity, team, TeamStackPermission.ADMIN)
    return StepResult(TEAM_PERMISSION, StepStatus.APPLIED, f"{team} has admin",
                      {"team": team, "permission": TeamStackPermission.ADMIN.name})


# Pass order. Each entry is independent of the others.
STEPS = [
    (DELETE_TAG, apply_delete_tag),
    (TTL_SCHEDULE, apply_ttl_schedule),
    (DEPLOYMENT_SETTINGS, sync_deployment_settings),
    (DRIFT_SCHEDULE, apply_drift_schedule),
    (TEAM_PERMISSION, grant_team_permission),
]
