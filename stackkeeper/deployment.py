"""
Deployment source settings: model, API mapping and derivation from a template stack.
"""

import copy
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Union
import logging

logger = logging.getLogger(__name__)

TOKEN_ENV_NAME = "PULUMI_ACCESS_TOKEN"
BRANCH_PREFIX = "refs/heads/"

# Plain values are strings; secret-tagged values are {"secret": plaintext} on
# write and {"ciphertext": ...} when read back.
EnvValue = Union[str, Dict[str, str]]


def secret(value: str) -> Dict[str, str]:
    return {"secret": value}


def is_secret(value: EnvValue) -> bool:
    return isinstance(value, dict)


def encrypted_env_names(env_vars: Dict[str, EnvValue]) -> List[str]:
    """Names of env vars whose value is ciphertext read back from the API."""
    return sorted(name for name, value in env_vars.items() if is_secret(value) and "secret" not in value)


@dataclass
class DeploymentSourceSettings:
    """Where and how a stack's deployments run."""
    branch: Optional[str] = None
    repo_dir: Optional[str] = None
    cache_enabled: bool = False
    env_vars: Dict[str, EnvValue] = field(default_factory=dict)
    github: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    operation_options: Dict[str, Any] = field(default_factory=dict)  # operationContext minus env vars
    extra: Dict[str, Any] = field(default_factory=dict)              # unknown top-level keys, passed through

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DeploymentSourceSettings":
        """Build settings from a deployments/settings API document."""
        data = copy.deepcopy(data or {})
        source_context = data.pop("sourceContext", None) or {}
        git = source_context.get("git") or {}
        operation_context = data.pop("operationContext", None) or {}
        env_vars = operation_context.pop("environmentVariables", None) or {}
        cache_options = data.pop("cacheOptions", None) or {}

        return cls(
            branch=git.get("branch"),
            repo_dir=git.get("repoDir"),
            cache_enabled=bool(cache_options.get("enable", False)),
            env_vars=dict(env_vars),
            github=data.pop("gitHub", None) or {},
            source=data.pop("source", None),
            operation_options=operation_context,
            extra=data,
        )

    def to_api(self) -> Dict[str, Any]:
        """Render the full settings document. Writes replace the whole document."""
        doc: Dict[str, Any] = copy.deepcopy(self.extra)

        git: Dict[str, Any] = {}
        if self.branch is not None:
            git["branch"] = self.branch
        if self.repo_dir is not None:
            git["repoDir"] = self.repo_dir
        doc["sourceContext"] = {"git": git}

        operation_context = copy.deepcopy(self.operation_options)
        if self.env_vars:
            operation_context["environmentVariables"] = copy.deepcopy(self.env_vars)
        doc["operationContext"] = operation_context

        if self.github:
            doc["gitHub"] = copy.deepcopy(self.github)
        if self.source is not None:
            doc["source"] = self.source
        doc["cacheOptions"] = {"enable": self.cache_enabled}
        return doc

    def comparable(self) -> Dict[str, Any]:
        """
        Document used to decide whether a write is needed.

        Secret values cannot be compared (they come back encrypted), so only
        their presence counts.
        """
        doc = self.to_api()
        env = doc.get("operationContext", {}).get("environmentVariables")
        if env:
            doc["operationContext"]["environmentVariables"] = {
                k: ("<secret>" if is_secret(v) else v) for k, v in env.items()
            }
        return doc


def derive_stack_settings(
    template: DeploymentSourceSettings,
    stack: str,
    template_stack: str,
    access_token: str,
) -> DeploymentSourceSettings:
    """
    Derive a stack's deployment settings from the template stack's settings.

    Args:
        template: Current settings of the template stack
        stack: Name of the stack being reconciled
        template_stack: Name of the template stack
        access_token: Token injected as a secret PULUMI_ACCESS_TOKEN env var

    Returns:
        New settings; the template object is left untouched. Encrypted env
        vars of the template are left out when deriving another stack
    """
    derived = copy.deepcopy(template)
    env_vars = dict(derived.env_vars)

    # Stacks other than the template deploy from the branch named after them
    if stack != template_stack:
        derived.branch = BRANCH_PREFIX + stack

        # Ciphertext only decrypts on the stack it was read from
        dropped = [name for name in encrypted_env_names(env_vars) if name != TOKEN_ENV_NAME]
        if dropped:
            logger.warning(f"Not copying encrypted env vars of {template_stack} to {stack}: {', '.join(dropped)}")
        for name in dropped:
            del env_vars[name]

    derived.env_vars = {**env_vars, TOKEN_ENV_NAME: secret(access_token)}
    derived.cache_enabled = True
    return derived
