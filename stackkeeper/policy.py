"""
Lifecycle policy model: what each managed stack should look like.
"""

from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Dict, Any, Optional

from .errors import ConfigError
from .ttl import DEFAULT_TTL_MINUTES

DEFAULT_TEAM = "DevTeam"
DEFAULT_DELETE_STACK = "True"
DRIFT_CORRECT = "Correct"


class DriftMode(Enum):
    """What the hourly drift run is allowed to do."""
    DETECT_ONLY = "DetectOnly"
    DETECT_AND_REMEDIATE = "DetectAndRemediate"

    @property
    def auto_remediate(self) -> bool:
        return self is DriftMode.DETECT_AND_REMEDIATE


class UpdatePolicy(Enum):
    """How a reconciled field behaves once a value exists."""
    ALWAYS_SYNC = "always_sync"                # written on every pass
    SET_ONCE_ONLY = "set_once_only"            # written once, the recorded value wins afterwards
    NEVER_AFTER_CREATE = "never_after_create"  # written only while absent remotely


# Field names double as the names of the reconcile steps that own them.
DELETE_TAG = "delete_tag"
TTL_SCHEDULE = "ttl_schedule"
DEPLOYMENT_SETTINGS = "deployment_settings"
DRIFT_SCHEDULE = "drift_schedule"
TEAM_PERMISSION = "team_permission"

FIELD_UPDATE_POLICIES: Dict[str, UpdatePolicy] = {
    DELETE_TAG: UpdatePolicy.NEVER_AFTER_CREATE,
    TTL_SCHEDULE: UpdatePolicy.SET_ONCE_ONLY,
    DEPLOYMENT_SETTINGS: UpdatePolicy.SET_ONCE_ONLY,
    DRIFT_SCHEDULE: UpdatePolicy.ALWAYS_SYNC,
    TEAM_PERMISSION: UpdatePolicy.ALWAYS_SYNC,
}


def drift_mode_from_config(drift_management: Optional[str]) -> DriftMode:
    """
    Map the driftManagement option to a drift mode.

    Absent or "Correct" means remediate; any other value means detect only.
    """
    if drift_management is None or drift_management == DRIFT_CORRECT:
        return DriftMode.DETECT_AND_REMEDIATE
    return DriftMode.DETECT_ONLY


def delete_tag_from_config(delete_stack: Optional[Any]) -> str:
    """
    Map the deleteStack option to the purge tag value.

    The value is written as given; only an absent or empty option falls
    back to "True".
    """
    if delete_stack is None or str(delete_stack).strip() == "":
        return DEFAULT_DELETE_STACK
    return str(delete_stack)


@dataclass
class LifecyclePolicy:
    """Desired lifecycle settings for one stack."""
    ttl_expiration: Optional[str] = None   # derived, set once by the reconciler
    ttl_minutes: int = DEFAULT_TTL_MINUTES
    drift_mode: DriftMode = DriftMode.DETECT_AND_REMEDIATE
    team: str = DEFAULT_TEAM
    delete_tag: str = DEFAULT_DELETE_STACK  # value of the delete_stack tag

    @property
    def delete_on_expire(self) -> bool:
        return self.delete_tag.lower() == "true"

    def validate(self) -> None:
        """Raise ConfigError if the policy cannot be applied."""
        if isinstance(self.ttl_minutes, bool) or not isinstance(self.ttl_minutes, int):
            raise ConfigError(f"ttl_minutes must be an integer, got {self.ttl_minutes!r}")
        if self.ttl_minutes <= 0:
            raise ConfigError(f"ttl_minutes must be positive, got {self.ttl_minutes}")
        if not self.team or not self.team.strip():
            raise ConfigError("team must not be empty")
        if not isinstance(self.drift_mode, DriftMode):
            raise ConfigError(f"Invalid drift mode: {self.drift_mode!r}")
        if not isinstance(self.delete_tag, str) or not self.delete_tag.strip():
            raise ConfigError(f"delete_tag must be a non-empty string, got {self.delete_tag!r}")

    def with_expiration(self, timestamp: Optional[str]) -> "LifecyclePolicy":
        return replace(self, ttl_expiration=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["drift_mode"] = self.drift_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecyclePolicy":
        try:
            drift_mode = DriftMode(data.get("drift_mode", DriftMode.DETECT_AND_REMEDIATE.value))
        except ValueError:
            raise ConfigError(f"Invalid drift mode: {data.get('drift_mode')!r}")

        if "delete_tag" in data:
            delete_tag = data["delete_tag"]
        elif "delete_on_expire" in data:
            # records written before the tag value was stored verbatim
            delete_tag = "True" if data["delete_on_expire"] else "False"
        else:
            delete_tag = DEFAULT_DELETE_STACK

        return cls(
            ttl_expiration=data.get("ttl_expiration"),
            ttl_minutes=data.get("ttl_minutes", DEFAULT_TTL_MINUTES),
            drift_mode=drift_mode,
            team=data.get("team", DEFAULT_TEAM),
            delete_tag=delete_tag,
        )


def update_policy(
    policy: LifecyclePolicy,
    ttl_minutes: Optional[int] = None,
    drift_management: Optional[str] = None,
    team: Optional[str] = None,
    delete_stack: Optional[str] = None,
    reset_ttl: bool = False,
) -> LifecyclePolicy:
    """
    Apply an explicit policy change and validate the result.

    Options left as None keep their current value. ``reset_ttl`` clears the
    recorded expiration so the next pass schedules a fresh one.

    Raises:
        ConfigError: If the updated policy is invalid
    """
    changes: Dict[str, Any] = {}
    if ttl_minutes is not None:
        changes["ttl_minutes"] = ttl_minutes
    if drift_management is not None:
        changes["drift_mode"] = drift_mode_from_config(drift_management)
    if team is not None:
        changes["team"] = team
    if delete_stack is not None:
        changes["delete_tag"] = delete_tag_from_config(delete_stack)
    if reset_ttl:
        changes["ttl_expiration"] = None

    updated = replace(policy, **changes)
    updated.validate()
    return updated
