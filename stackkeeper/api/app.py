"""FastAPI application: stack webhooks and policy endpoints."""

import hashlib
import hmac
import json
import os
from typing import Dict, Any, List, Optional
import logging

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel
import uvicorn

from .. import __version__
from ..errors import ConfigError, NotFound
from ..events import read_events, emit_event, EventTypes
from ..ids import StackIdentity
from ..policy import update_policy
from ..scheduler import SchedulerDriver

logger = logging.getLogger(__name__)

WEBHOOK_KIND_HEADER = "Pulumi-Webhook-Kind"
WEBHOOK_SIGNATURE_HEADER = "Pulumi-Webhook-Signature"


# Pydantic models
class PolicyUpdate(BaseModel):
    ttl_minutes: Optional[int] = None
    drift_management: Optional[str] = None
    team: Optional[str] = None
    delete_stack: Optional[str] = None
    reset_ttl: bool = False


class PolicyResponse(BaseModel):
    stack: str
    ttl_expiration: Optional[str] = None
    ttl_minutes: int
    drift_mode: str
    team: str
    delete_tag: str
    delete_on_expire: bool
    applied: Dict[str, str] = {}
    updated_at: Optional[str] = None


class WebhookResponse(BaseModel):
    accepted: bool
    action: str
    stack: Optional[str] = None


def compute_signature(body: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a webhook body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: Optional[str]) -> bool:
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(compute_signature(body, secret), signature)


def _record_response(record) -> PolicyResponse:
    policy = record.policy
    return PolicyResponse(
        stack=str(record.identity),
        ttl_expiration=policy.ttl_expiration,
        ttl_minutes=policy.ttl_minutes,
        drift_mode=policy.drift_mode.value,
        team=policy.team,
        delete_tag=policy.delete_tag,
        delete_on_expire=policy.delete_on_expire,
        applied=record.applied,
        updated_at=record.updated_at,
    )


def _identity_from_webhook(payload: Dict[str, Any]) -> StackIdentity:
    org = payload.get("organization") or {}
    org_name = org.get("githubLogin") if isinstance(org, dict) else org
    project = payload.get("projectName")
    stack = payload.get("stackName")
    if not (org_name and project and stack):
        raise ConfigError("webhook payload is missing organization, projectName or stackName")
    return StackIdentity(org_name, project, stack)


def _path_identity(org: str, project: str, stack: str) -> StackIdentity:
    try:
        return StackIdentity(org, project, stack)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail={"code": "bad_identity", "message": str(e)})


def create_app(driver: SchedulerDriver, webhook_secret: Optional[str] = None) -> FastAPI:
    """
    Build the API around a scheduler driver.

    Args:
        driver: Driver whose reconciler and store back the endpoints
        webhook_secret: When set, webhook bodies must carry a valid signature
    """
    app = FastAPI(
        title="stackkeeper API",
        description="Stack lifecycle policy engine",
        version=__version__,
    )
    store = driver.store
    settings = driver.reconciler.settings

    def run_created_pass(identity: StackIdentity) -> None:
        try:
            driver.on_stack_created(identity)
        except ConfigError as e:
            logger.error(f"Creation pass for {identity} aborted: {e}")

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"message": "stackkeeper is running", "version": __version__}

    @app.post("/webhooks/pulumi", response_model=WebhookResponse)
    async def pulumi_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive stack lifecycle webhooks."""
        body = await request.body()

        if webhook_secret and not verify_signature(body, webhook_secret,
                                                   request.headers.get(WEBHOOK_SIGNATURE_HEADER)):
            raise HTTPException(
                status_code=401,
                detail={"code": "bad_signature", "message": "Webhook signature mismatch"}
            )

        kind = request.headers.get(WEBHOOK_KIND_HEADER, "stack")
        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail={"code": "bad_payload", "message": "Body is not JSON"})

        action = str(payload.get("action", "")) if isinstance(payload, dict) else ""
        if kind != "stack" or action not in ("created", "deleted"):
            return WebhookResponse(accepted=False, action=action or kind)

        try:
            identity = _identity_from_webhook(payload)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail={"code": "bad_payload", "message": str(e)})

        if action == "created":
            background_tasks.add_task(run_created_pass, identity)
        else:
            background_tasks.add_task(driver.on_stack_deleted, identity)

        return WebhookResponse(accepted=True, action=action, stack=str(identity))

    @app.get("/stacks", response_model=List[PolicyResponse])
    async def list_stacks():
        return [_record_response(r) for r in store.list_records()]

    @app.get("/stacks/{org}/{project}/{stack}/policy", response_model=PolicyResponse)
    async def get_policy(org: str, project: str, stack: str):
        identity = _path_identity(org, project, stack)
        try:
            return _record_response(store.get(identity))
        except NotFound:
            raise HTTPException(
                status_code=404,
                detail={"code": "stack_not_found", "message": f"No policy stored for {identity}"}
            )

    @app.put("/stacks/{org}/{project}/{stack}/policy", response_model=PolicyResponse)
    async def put_policy(org: str, project: str, stack: str, update: PolicyUpdate):
        identity = _path_identity(org, project, stack)

        def apply(policy):
            return update_policy(
                policy,
                ttl_minutes=update.ttl_minutes,
                drift_management=update.drift_management,
                team=update.team,
                delete_stack=update.delete_stack,
                reset_ttl=update.reset_ttl,
            )

        try:
            record = store.update(identity, apply, default=settings.default_policy())
        except ConfigError as e:
            raise HTTPException(status_code=422, detail={"code": "invalid_policy", "message": str(e)})

        emit_event(identity, EventTypes.POLICY_UPDATED, record.policy.to_dict(), store.home)
        return _record_response(record)

    @app.post("/stacks/{org}/{project}/{stack}/reconcile")
    def reconcile_stack(org: str, project: str, stack: str):
        identity = _path_identity(org, project, stack)
        try:
            report = driver.reconciler.reconcile(identity)
        except ConfigError as e:
            raise HTTPException(status_code=422, detail={"code": "invalid_policy", "message": str(e)})
        return report.to_dict()

    @app.get("/stacks/{org}/{project}/{stack}/events")
    async def stack_events(org: str, project: str, stack: str, limit: int = 50):
        events = read_events(_path_identity(org, project, stack), store.home)
        return {"events": events[-limit:] if limit > 0 else events}

    return app


def serve(driver: SchedulerDriver, webhook_secret: Optional[str] = None,
          host: str = "0.0.0.0", port: Optional[int] = None) -> None:
    """Run the API with the periodic sweep in the background."""
    if port is None:
        port = int(os.getenv("PORT", 8080))
    app = create_app(driver, webhook_secret)
    driver.start()
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        driver.stop()
