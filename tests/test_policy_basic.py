"""
Basic tests for identities, TTL timestamps and lifecycle policies.
"""

import pytest
from datetime import datetime, timezone

from stackkeeper.errors import ConfigError
from stackkeeper.ids import (
    StackIdentity, parse_identity, is_valid_identity, is_review_stack, validate_name,
)
from stackkeeper.policy import (
    DriftMode, LifecyclePolicy, UpdatePolicy, FIELD_UPDATE_POLICIES,
    DELETE_TAG, TTL_SCHEDULE, DEPLOYMENT_SETTINGS, DRIFT_SCHEDULE, TEAM_PERMISSION,
    drift_mode_from_config, delete_tag_from_config, update_policy,
)
from stackkeeper.ttl import compute_expiration, is_expired, parse_expiration


class TestIdentity:
    """Test stack identity parsing."""

    def test_parse_identity(self):
        """Test a well-formed identity parses into its three parts."""
        identity = parse_identity("acme/widgets/dev")

        assert identity == StackIdentity("acme", "widgets", "dev")
        assert str(identity) == "acme/widgets/dev"
        assert identity.key == "acme/widgets/dev"

    def test_parse_identity_invalid(self):
        """Test identities without exactly three non-empty parts."""
        with pytest.raises(ConfigError, match="Expected 'org/project/stack'"):
            parse_identity("acme/widgets")

        with pytest.raises(ConfigError, match="must not be empty"):
            parse_identity("acme//dev")

        assert not is_valid_identity("a/b/c/d")
        assert is_valid_identity("a/b/c")

    @pytest.mark.parametrize("text", [
        "acme/widgets/..",
        "acme/../dev",
        "./widgets/dev",
        "acme/widgets/..\\..\\escaped",
        "acme/widgets/dev stack",
        "acme/widgets/dev%2F..",
    ])
    def test_parse_identity_rejects_unsafe_names(self, text):
        """Test names that could leave the state directory are refused."""
        with pytest.raises(ConfigError, match="Invalid"):
            parse_identity(text)

    def test_identity_constructor_validates(self):
        """Test direct construction applies the same name rules."""
        with pytest.raises(ConfigError, match="Invalid stack"):
            StackIdentity("acme", "widgets", "../../../../escaped")

        with pytest.raises(ConfigError, match="Invalid organization"):
            StackIdentity("", "widgets", "dev")

        with pytest.raises(ConfigError, match="Invalid project"):
            StackIdentity("acme", 42, "dev")

    def test_validate_name_accepts_dots_inside(self):
        """Test dots, dashes and underscores are fine inside a name."""
        assert validate_name("feature.v2_final-1") == "feature.v2_final-1"
        assert validate_name("...") == "..."

    def test_with_stack(self):
        """Test sibling identities share organization and project."""
        identity = StackIdentity("acme", "widgets", "feature-x")
        assert identity.with_stack("dev") == StackIdentity("acme", "widgets", "dev")

        with pytest.raises(ConfigError):
            identity.with_stack("../dev")

    def test_review_stack_detection(self):
        """Test review stacks are recognized by the rendered name pattern."""
        assert is_review_stack(StackIdentity("acme", "widgets", "pr-acme-widgets-123"))
        assert not is_review_stack(StackIdentity("acme", "widgets", "feature-x"))
        assert not is_review_stack(StackIdentity("acme", "widgets", "pr-other-widgets-1"))

    def test_review_stack_custom_pattern(self):
        """Test a configured pattern replaces the default one."""
        identity = StackIdentity("acme", "widgets", "preview-widgets-7")
        assert is_review_stack(identity, "preview-{project}")
        assert not is_review_stack(identity)


class TestTTL:
    """Test TTL timestamp computation."""

    def test_default_ttl(self):
        """Test the default eight-hour TTL."""
        now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
        assert compute_expiration(480, now) == "2024-01-01T08:00:00Z"

    def test_sub_minute_precision_truncated(self):
        """Seconds are dropped, never rounded up."""
        now = datetime(2024, 1, 1, 0, 0, 59, 999000, tzinfo=timezone.utc)
        assert compute_expiration(480, now) == "2024-01-01T08:00:00Z"

    def test_naive_now_treated_as_utc(self):
        """Test a naive clock reading is taken as UTC."""
        assert compute_expiration(30, datetime(2024, 3, 10, 23, 45)) == "2024-03-11T00:15:00Z"

    def test_other_timezone_converted(self):
        """Test an offset clock reading is converted to UTC."""
        from datetime import timedelta
        now = datetime(2024, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert compute_expiration(60, now) == "2024-01-01T01:00:00Z"

    def test_is_expired(self):
        """Test expiry checks, including missing and unparseable deadlines."""
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

        assert is_expired("2024-01-01T08:00:00Z", now)
        assert not is_expired("2024-01-01T13:00:00Z", now)
        assert not is_expired(None, now)
        assert not is_expired("not-a-date", now)

    def test_parse_expiration(self):
        """Test the Z suffix parses as UTC."""
        parsed = parse_expiration("2024-01-01T08:00:00Z")
        assert parsed == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


class TestPolicy:
    """Test lifecycle policy model."""

    def test_drift_mode_from_config(self):
        """Test only an absent value or exactly "Correct" remediates."""
        assert drift_mode_from_config(None) is DriftMode.DETECT_AND_REMEDIATE
        assert drift_mode_from_config("Correct") is DriftMode.DETECT_AND_REMEDIATE
        assert drift_mode_from_config("Detect") is DriftMode.DETECT_ONLY
        assert drift_mode_from_config("correct") is DriftMode.DETECT_ONLY

        assert DriftMode.DETECT_AND_REMEDIATE.auto_remediate
        assert not DriftMode.DETECT_ONLY.auto_remediate

    def test_delete_tag_from_config(self):
        """Test the deleteStack option is passed through as the tag value."""
        assert delete_tag_from_config(None) == "True"
        assert delete_tag_from_config("") == "True"
        assert delete_tag_from_config("True") == "True"
        assert delete_tag_from_config("true") == "true"
        assert delete_tag_from_config("False") == "False"
        assert delete_tag_from_config("Archive") == "Archive"

    def test_delete_on_expire(self):
        """Test only a true-valued tag means the stack is removed on expiry."""
        assert LifecyclePolicy().delete_on_expire
        assert LifecyclePolicy(delete_tag="true").delete_on_expire
        assert not LifecyclePolicy(delete_tag="False").delete_on_expire
        assert not LifecyclePolicy(delete_tag="Archive").delete_on_expire

    def test_defaults(self):
        """Test a bare policy carries the documented defaults."""
        policy = LifecyclePolicy()

        assert policy.ttl_minutes == 480
        assert policy.team == "DevTeam"
        assert policy.drift_mode is DriftMode.DETECT_AND_REMEDIATE
        assert policy.delete_tag == "True"
        assert policy.ttl_expiration is None

    def test_update_policies(self):
        """Test every step has an update policy."""
        assert FIELD_UPDATE_POLICIES[DELETE_TAG] is UpdatePolicy.NEVER_AFTER_CREATE
        assert FIELD_UPDATE_POLICIES[TTL_SCHEDULE] is UpdatePolicy.SET_ONCE_ONLY
        assert FIELD_UPDATE_POLICIES[DEPLOYMENT_SETTINGS] is UpdatePolicy.SET_ONCE_ONLY
        assert FIELD_UPDATE_POLICIES[DRIFT_SCHEDULE] is UpdatePolicy.ALWAYS_SYNC
        assert FIELD_UPDATE_POLICIES[TEAM_PERMISSION] is UpdatePolicy.ALWAYS_SYNC

    def test_validate(self):
        """Test invalid field values are rejected."""
        with pytest.raises(ConfigError, match="positive"):
            LifecyclePolicy(ttl_minutes=0).validate()

        with pytest.raises(ConfigError, match="team"):
            LifecyclePolicy(team="  ").validate()

        with pytest.raises(ConfigError, match="integer"):
            LifecyclePolicy(ttl_minutes="480").validate()

        with pytest.raises(ConfigError, match="delete_tag"):
            LifecyclePolicy(delete_tag=" ").validate()

    def test_dict_round_trip(self):
        """Test a policy survives serialization unchanged."""
        policy = LifecyclePolicy(
            ttl_expiration="2024-01-01T08:00:00Z",
            ttl_minutes=60,
            drift_mode=DriftMode.DETECT_ONLY,
            team="Platform",
            delete_tag="Archive",
        )

        data = policy.to_dict()
        assert data["drift_mode"] == "DetectOnly"
        assert data["delete_tag"] == "Archive"
        assert LifecyclePolicy.from_dict(data) == policy

    def test_from_dict_legacy_delete_flag(self):
        """Test records holding the old boolean flag still load."""
        assert LifecyclePolicy.from_dict({"delete_on_expire": False}).delete_tag == "False"
        assert LifecyclePolicy.from_dict({"delete_on_expire": True}).delete_tag == "True"
        assert LifecyclePolicy.from_dict({}).delete_tag == "True"

    def test_from_dict_invalid_drift_mode(self):
        """Test an unknown drift mode is a configuration error."""
        with pytest.raises(ConfigError, match="drift mode"):
            LifecyclePolicy.from_dict({"drift_mode": "Sometimes"})

    def test_update_policy(self):
        """Test explicit changes apply and the original is left alone."""
        policy = LifecyclePolicy(ttl_expiration="2024-01-01T08:00:00Z")

        updated = update_policy(policy, ttl_minutes=60, drift_management="Detect", team="Ops",
                                delete_stack="Archive")

        assert updated.ttl_minutes == 60
        assert updated.drift_mode is DriftMode.DETECT_ONLY
        assert updated.team == "Ops"
        assert updated.delete_tag == "Archive"
        # expiration is kept unless explicitly reset
        assert updated.ttl_expiration == "2024-01-01T08:00:00Z"
        assert policy.ttl_minutes == 480

    def test_update_policy_reset_ttl(self):
        """Test reset_ttl clears the recorded deadline."""
        policy = LifecyclePolicy(ttl_expiration="2024-01-01T08:00:00Z")
        assert update_policy(policy, reset_ttl=True).ttl_expiration is None

    def test_update_policy_invalid(self):
        """Test an update producing an invalid policy raises."""
        with pytest.raises(ConfigError):
            update_policy(LifecyclePolicy(), ttl_minutes=-5)
