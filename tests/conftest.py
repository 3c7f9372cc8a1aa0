"""
Shared fixtures: an in-memory management API behind a fake requests session.
"""

import json
import re
from datetime import datetime, timezone
from urllib.parse import urlparse

import pytest

from stackkeeper.api.client import ManagementClient
from stackkeeper.config import AccessToken, Settings
from stackkeeper.ids import StackIdentity
from stackkeeper.reconcile import Reconciler
from stackkeeper.scheduler import SchedulerDriver
from stackkeeper.state import PolicyStore

FIXED_NOW = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

STACK_RE = re.compile(r"^/api/stacks/([^/]+)/([^/]+)/([^/]+)(/.*)?$")
TEAM_RE = re.compile(r"^/api/orgs/([^/]+)/teams/([^/]+)$")


class FakeResponse:
    def __init__(self, status_code, payload=None, text=None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode()

    def json(self):
        return json.loads(self.text)


class FakeManagementAPI:
    """Stands in for requests.Session; keeps remote state in dicts."""

    def __init__(self):
        self.tags = {}
        self.schedules = {}
        self.settings = {}
        self.team_permissions = {}
        self.calls = []
        self.failures = {}
        self._next_id = 1

    def fail(self, method, path, status=500, body="internal error"):
        self.failures[(method, path)] = (status, body)

    def calls_to(self, method, path_suffix=""):
        return [c for c in self.calls if c[0] == method and c[1].endswith(path_suffix)]

    def writes(self):
        return [c for c in self.calls if c[0] != "GET"]

    def remote_state(self):
        return json.loads(json.dumps({
            "tags": self.tags,
            "schedules": self.schedules,
            "settings": self.settings,
            "team_permissions": {f"{k[0]}/{k[1]}": v for k, v in self.team_permissions.items()},
        }))

    def request(self, method, url, headers=None, json=None, timeout=None):
        path = urlparse(url).path
        self.calls.append((method, path, json, headers, timeout))

        if (method, path) in self.failures:
            status, body = self.failures[(method, path)]
            return FakeResponse(status, text=body)

        m = TEAM_RE.match(path)
        if m and method == "PATCH":
            grant = json["addStackPermission"]
            perms = self.team_permissions.setdefault((m.group(1), m.group(2)), {})
            perms[f"{grant['projectName']}/{grant['stackName']}"] = grant["permission"]
            return FakeResponse(204)

        m = STACK_RE.match(path)
        if not m:
            return FakeResponse(404, text="no such route")

        key = f"{m.group(1)}/{m.group(2)}/{m.group(3)}"
        rest = m.group(4) or ""

        if rest == "" and method == "GET":
            return FakeResponse(200, {"stackName": m.group(3), "tags": self.tags.get(key, {})})

        if rest == "/tags" and method == "POST":
            self.tags.setdefault(key, {})[json["name"]] = json["value"]
            return FakeResponse(204)

        if rest == "/deployments/settings":
            if method == "GET":
                if key not in self.settings:
                    return FakeResponse(404, text="no deployment settings")
                return FakeResponse(200, self.settings[key])
            if method == "POST":
                self.settings[key] = _encrypt_secrets(json)
                return FakeResponse(200)

        if rest == "/deployments/schedules" and method == "GET":
            return FakeResponse(200, {"schedules": self.schedules.get(key, [])})

        m2 = re.match(r"^/deployments/(ttl|drift)/schedules(?:/([^/]+))?$", rest)
        if m2 and method == "POST":
            kind, schedule_id = m2.group(1), m2.group(2)
            schedules = self.schedules.setdefault(key, [])
            if schedule_id is None:
                schedule = {"id": f"sched-{self._next_id}"}
                self._next_id += 1
                schedules.append(schedule)
            else:
                matches = [s for s in schedules if s["id"] == schedule_id]
                if not matches:
                    return FakeResponse(404, text="no such schedule")
                schedule = matches[0]
            schedule.update(_schedule_body(kind, json))
            return FakeResponse(200, {"id": schedule["id"]})

        return FakeResponse(404, text="no such route")


def _encrypt_secrets(doc):
    doc = json.loads(json.dumps(doc))
    env = doc.get("operationContext", {}).get("environmentVariables", {})
    for name, value in env.items():
        if isinstance(value, dict) and "secret" in value:
            env[name] = {"ciphertext": "v1:encrypted"}
    return doc


def _schedule_body(kind, body):
    if kind == "ttl":
        return {
            "scheduleOnce": body["timestamp"],
            "definition": {"request": {
                "operation": "destroy",
                "operationContext": {"options": {"deleteAfterDestroy": body["deleteAfterDestroy"]}},
            }},
        }
    return {
        "scheduleCron": body["scheduleCron"],
        "definition": {"request": {
            "operation": "detect-drift",
            "operationContext": {"options": {"autoRemediate": body["autoRemediate"]}},
        }},
    }


TEMPLATE_SETTINGS = {
    "sourceContext": {"git": {"branch": "refs/heads/main", "repoDir": "infra"}},
    "operationContext": {
        "environmentVariables": {"AWS_REGION": "us-west-2"},
        "options": {"skipInstallDependencies": False},
    },
    "gitHub": {"repository": "acme/widgets", "deployCommits": True, "previewPullRequests": True},
    "source": "github",
    "cacheOptions": {"enable": False},
}


@pytest.fixture
def api():
    fake = FakeManagementAPI()
    fake.settings["acme/widgets/dev"] = json.loads(json.dumps(TEMPLATE_SETTINGS))
    return fake


@pytest.fixture
def template_settings():
    return json.loads(json.dumps(TEMPLATE_SETTINGS))


@pytest.fixture
def settings():
    return Settings(
        credential=AccessToken("pul-0123456789abcdefghij"),
        max_attempts=2,
        backoff_seconds=0,
    )


@pytest.fixture
def store(tmp_path):
    return PolicyStore(tmp_path)


@pytest.fixture
def client(api, settings):
    return ManagementClient.from_settings(settings, session=api)


@pytest.fixture
def clock():
    class Clock:
        now = FIXED_NOW

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def reconciler(client, store, settings, clock):
    return Reconciler(client, store, settings, clock=clock)


@pytest.fixture
def driver(reconciler, store):
    return SchedulerDriver(reconciler, store, interval_seconds=0.05, max_workers=2)


@pytest.fixture
def feature_stack():
    return StackIdentity("acme", "widgets", "feature-x")
