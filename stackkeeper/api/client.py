"""
HTTP client for the stack management API.
"""

import time
from enum import Enum
from typing import Dict, List, Any, Optional
import logging

import requests

from ..config import AccessToken, Credential, MissingToken, DEFAULT_API_URL
from ..deployment import DeploymentSourceSettings
from ..errors import AuthError, NotFound, UpstreamUnavailable
from ..ids import StackIdentity

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class TeamStackPermission(Enum):
    """Stack permission levels understood by the teams endpoint."""
    READ = 101
    WRITE = 102
    ADMIN = 104


class ScheduleKind(Enum):
    TTL = "ttl"
    DRIFT = "drift"


def _schedule_request(schedule: Dict[str, Any]) -> Dict[str, Any]:
    return (schedule.get("definition") or {}).get("request") or {}


def _schedule_kind(schedule: Dict[str, Any]) -> Optional[ScheduleKind]:
    """Classify a schedule returned by the schedules listing."""
    operation = (_schedule_request(schedule).get("operation") or schedule.get("kind") or "").lower()
    if "ttl" in operation or operation == "destroy":
        return ScheduleKind.TTL
    if "drift" in operation:
        return ScheduleKind.DRIFT
    return None


def drift_schedule_state(schedule: Dict[str, Any]) -> Dict[str, Any]:
    """Extract cron and remediation flag from a listed drift schedule."""
    options = (_schedule_request(schedule).get("operationContext") or {}).get("options") or {}
    auto_remediate = options.get("autoRemediate", schedule.get("autoRemediate"))
    return {"scheduleCron": schedule.get("scheduleCron"), "autoRemediate": auto_remediate}


class ManagementClient:
    """
    Client for the management API.

    Every call carries a timeout. Transport errors, 429 and 5xx responses are
    retried with exponential backoff up to ``max_attempts``; other failures
    are raised straight away.
    """

    def __init__(
        self,
        credential: Credential,
        base_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.credential = credential
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "ManagementClient":
        return cls(
            credential=settings.credential,
            base_url=settings.api_url,
            timeout=settings.request_timeout,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            session=session,
        )

    @property
    def has_token(self) -> bool:
        return isinstance(self.credential, AccessToken)

    def access_token(self) -> str:
        """Return the raw token, or raise AuthError when none is configured."""
        if isinstance(self.credential, MissingToken):
            raise AuthError(f"Access token unavailable: {self.credential.reason}")
        return self.credential.value

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"token {self.access_token()}",
        }

    def _request(self, method: str, path: str, identity: StackIdentity, json_body: Optional[Dict] = None) -> Any:
        """
        Perform one API call with retries.

        Args:
            method: HTTP method
            path: Path below the base URL
            identity: Stack the call is about (used in error messages)
            json_body: Optional JSON request body

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            AuthError: No token, or 401/403
            NotFound: 404
            UpstreamUnavailable: Any other failure once retries are exhausted
        """
        headers = self._headers()
        url = f"{self.base_url}{path}"
        last_error: Optional[UpstreamUnavailable] = None

        for attempt in range(self.max_attempts):
            try:
                response = self.session.request(method, url, headers=headers, json=json_body, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = UpstreamUnavailable(f"{method} {path} failed for stack {identity}: {e}")
            else:
                if 200 <= response.status_code < 300:
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError:
                        return None

                body = _response_text(response)
                if response.status_code in (401, 403):
                    raise AuthError(
                        f"{method} {path} rejected for stack {identity} "
                        f"({response.status_code}): {body}"
                    )
                if response.status_code == 404:
                    raise NotFound(f"{method} {path} not found for stack {identity}: {body}")

                error = UpstreamUnavailable(
                    f"{method} {path} failed for stack {identity} ({response.status_code}): {body}",
                    status_code=response.status_code,
                    body=body,
                )
                if response.status_code not in RETRYABLE_STATUS:
                    raise error
                last_error = error

            if attempt < self.max_attempts - 1:
                delay = self.backoff_seconds * (2 ** attempt)
                logger.debug(f"Attempt {attempt + 1} of {method} {path} failed, retrying in {delay}s...")
                if delay > 0:
                    time.sleep(delay)

        logger.warning(f"Giving up on {method} {path} after {self.max_attempts} attempts")
        raise last_error

    @staticmethod
    def _stack_path(identity: StackIdentity) -> str:
        return f"/api/stacks/{identity.organization}/{identity.project}/{identity.stack}"

    # ------------------------------------------------------------------
    # Deployment settings
    # ------------------------------------------------------------------

    def get_deployment_settings(self, identity: StackIdentity) -> DeploymentSourceSettings:
        data = self._request("GET", f"{self._stack_path(identity)}/deployments/settings", identity)
        return DeploymentSourceSettings.from_api(data or {})

    def update_deployment_settings(self, identity: StackIdentity, settings: DeploymentSourceSettings) -> None:
        self._request("POST", f"{self._stack_path(identity)}/deployments/settings", identity, settings.to_api())

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def get_stack_tags(self, identity: StackIdentity) -> Dict[str, str]:
        data = self._request("GET", self._stack_path(identity), identity) or {}
        return dict(data.get("tags") or {})

    def set_stack_tag(self, identity: StackIdentity, name: str, value: str) -> None:
        self._request("POST", f"{self._stack_path(identity)}/tags", identity, {"name": name, "value": value})

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def list_schedules(self, identity: StackIdentity) -> List[Dict[str, Any]]:
        data = self._request("GET", f"{self._stack_path(identity)}/deployments/schedules", identity) or {}
        return list(data.get("schedules") or [])

    def find_schedule(self, identity: StackIdentity, kind: ScheduleKind,
                      schedules: Optional[List[Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
        if schedules is None:
            schedules = self.list_schedules(identity)
        for schedule in schedules:
            if _schedule_kind(schedule) is kind:
                return schedule
        return None

    def _upsert_schedule(self, identity: StackIdentity, kind: ScheduleKind, body: Dict[str, Any],
                         existing: Optional[Dict[str, Any]]) -> None:
        base = f"{self._stack_path(identity)}/deployments/{kind.value}/schedules"
        if existing and existing.get("id"):
            self._request("POST", f"{base}/{existing['id']}", identity, body)
        else:
            self._request("POST", base, identity, body)

    def upsert_ttl_schedule(self, identity: StackIdentity, timestamp: str, delete_after_destroy: bool = False,
                            existing: Optional[Dict[str, Any]] = None) -> None:
        self._upsert_schedule(
            identity, ScheduleKind.TTL,
            {"timestamp": timestamp, "deleteAfterDestroy": delete_after_destroy},
            existing,
        )

    def upsert_drift_schedule(self, identity: StackIdentity, schedule_cron: str, auto_remediate: bool,
                              existing: Optional[Dict[str, Any]] = None) -> None:
        self._upsert_schedule(
            identity, ScheduleKind.DRIFT,
            {"scheduleCron": schedule_cron, "autoRemediate": auto_remediate},
            existing,
        )

    # ------------------------------------------------------------------
    # Team permissions
    # ------------------------------------------------------------------

    def grant_team_permission(self, identity: StackIdentity, team: str,
                              permission: TeamStackPermission = TeamStackPermission.ADMIN) -> None:
        body = {
            "addStackPermission": {
                "projectName": identity.project,
                "stackName": identity.stack,
                "permission": permission.value,
            }
        }
        self._request("PATCH", f"/api/orgs/{identity.organization}/teams/{team}", identity, body)


def _response_text(response: requests.Response) -> str:
    try:
        return response.text
    except Exception:
        return ""
