"""
Stack identity parsing and review-stack detection.
"""

import re
from dataclasses import dataclass

from .errors import ConfigError

DEFAULT_REVIEW_STACK_PATTERN = "pr-{org}-{project}"

# Organization, project and stack names become path components in the store.
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_name(value: str, label: str = "name") -> str:
    """
    Check one part of a stack identity.

    Args:
        value: Organization, project or stack name
        label: Which part is being checked (used in the error message)

    Returns:
        The value unchanged

    Raises:
        ConfigError: If the value is empty, "." or "..", or holds characters
            outside letters, digits, "_", "." and "-"
    """
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Invalid {label}: must be a non-empty string")
    if value in (".", "..") or not NAME_PATTERN.match(value):
        raise ConfigError(f"Invalid {label}: {value!r}")
    return value


@dataclass(frozen=True)
class StackIdentity:
    """Unique key of a managed stack: organization/project/stack."""
    organization: str
    project: str
    stack: str

    def __post_init__(self):
        validate_name(self.organization, "organization")
        validate_name(self.project, "project")
        validate_name(self.stack, "stack")

    def __str__(self) -> str:
        return f"{self.organization}/{self.project}/{self.stack}"

    @property
    def key(self) -> str:
        return str(self)

    def with_stack(self, stack: str) -> "StackIdentity":
        """Return the identity of a sibling stack in the same project."""
        return StackIdentity(self.organization, self.project, stack)


def parse_identity(text: str) -> StackIdentity:
    """
    Parse an identity in format: org/project/stack

    Args:
        text: Identity string

    Returns:
        StackIdentity

    Raises:
        ConfigError: If the string does not have exactly three valid parts
    """
    parts = text.strip().split("/")
    if len(parts) != 3:
        raise ConfigError(f"Invalid stack identity: {text!r}. Expected 'org/project/stack'")

    parts = [p.strip() for p in parts]
    if not all(parts):
        raise ConfigError(f"Invalid stack identity: {text!r}. Parts must not be empty")

    return StackIdentity(*parts)


def is_valid_identity(text: str) -> bool:
    try:
        parse_identity(text)
    except ConfigError:
        return False
    return True


def is_review_stack(identity: StackIdentity, pattern: str = DEFAULT_REVIEW_STACK_PATTERN) -> bool:
    """
    Check whether a stack is a review/preview stack created for a pull request.

    Review stacks carry the rendered pattern somewhere in their stack name,
    e.g. "pr-acme-widgets-123" for org "acme" and project "widgets".

    Args:
        identity: Stack identity
        pattern: Name template with {org} and {project} placeholders

    Returns:
        True if the stack name contains the rendered pattern
    """
    marker = pattern.format(org=identity.organization, project=identity.project)
    return marker in identity.stack


def validate_identity(identity: StackIdentity) -> StackIdentity:
    """Re-check every part of an identity before it is used as a path."""
    validate_name(identity.organization, "organization")
    validate_name(identity.project, "project")
    validate_name(identity.stack, "stack")
    return identity
