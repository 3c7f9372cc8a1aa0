"""
Click CLI interface for stackkeeper.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional
import click

from .config import load_settings, AccessToken
from .errors import ConfigError, NotFound
from .events import read_events, emit_event, EventTypes
from .ids import StackIdentity, parse_identity
from .policy import update_policy
from .reconcile import PassKind, ReconcileReport, StepStatus
from .scheduler import build_driver

STATUS_ICONS = {
    StepStatus.APPLIED: "✅",
    StepStatus.UNCHANGED: "➖",
    StepStatus.SKIPPED: "⏭️ ",
    StepStatus.FAILED: "❌",
}


def _fail(message: str, code: int = 1) -> None:
    click.echo(message, err=True)
    sys.exit(code)


def _identity(ctx, text: str) -> StackIdentity:
    """Accept org/project/stack, or project/stack when an organization is configured."""
    organization = ctx.obj["settings"].organization
    if organization and text.count("/") == 1:
        text = f"{organization}/{text}"
    try:
        return parse_identity(text)
    except ConfigError as e:
        _fail(str(e))


def _print_report(report: ReconcileReport) -> None:
    click.echo(f"🆔 Stack: {report.identity}  ({report.kind.value} pass)")
    for result in report.steps:
        icon = STATUS_ICONS[result.status]
        click.echo(f"  {icon} {result.step}: {result.status.value}  {result.message}")
    if report.failed:
        click.echo(f"⚠️  {len(report.failed)} step(s) failed: {', '.join(report.failed)}")


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to stackkeeper.yaml")
@click.option("--home", type=click.Path(file_okay=False), help="State directory (default: $STACKKEEPER_HOME or .stackkeeper)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config_path: Optional[str], home: Optional[str], verbose: bool):
    """
    stackkeeper - keep stack TTL, drift, permissions and deployment settings in line with policy.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        _fail(f"Configuration error: {e}")

    if not isinstance(settings.credential, AccessToken):
        logging.getLogger(__name__).warning(
            "No access token configured; API calls will be skipped as unauthorized"
        )

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["driver"] = build_driver(settings, Path(home) if home else None)


@main.command()
@click.argument("stack")
@click.option("--created", is_flag=True, help="Treat the stack as newly created (fresh TTL and settings sync)")
@click.option("--json", "output_json", is_flag=True, help="Output machine-readable JSON")
@click.pass_context
def reconcile(ctx, stack: str, created: bool, output_json: bool):
    """
    Run one reconciliation pass for STACK (org/project/stack).
    """
    identity = _identity(ctx, stack)
    driver = ctx.obj["driver"]

    try:
        if created:
            report = driver.on_stack_created(identity)
        else:
            report = driver.reconciler.reconcile(identity, PassKind.MANUAL)
    except ConfigError as e:
        _fail(f"Pass aborted for {identity}: {e}")

    if output_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)

    sys.exit(0 if report.ok else 1)


@main.command()
@click.option("--json", "output_json", is_flag=True, help="Output machine-readable JSON")
@click.pass_context
def sweep(ctx, output_json: bool):
    """
    Run one periodic pass over every managed stack.
    """
    result = ctx.obj["driver"].run_sweep()

    if output_json:
        print(json.dumps(result, indent=2))
    else:
        click.echo(f"📊 Checked {result['total_checked']} stack(s), {result['reconciled']} clean")
        for stack in result["with_failures"]:
            click.echo(f"  ❌ {stack}: some steps failed")
        for stack in result["aborted"]:
            click.echo(f"  ⛔ {stack}: invalid policy")

    failed = result["with_failures"] or result["aborted"] or result["errors"]
    sys.exit(1 if failed else 0)


@main.command()
@click.pass_context
def run(ctx):
    """
    Sweep all managed stacks on the configured interval until interrupted.
    """
    ctx.obj["driver"].run_forever()


@main.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", type=int, default=None, help="Port (default: $PORT or 8080)")
@click.pass_context
def serve(ctx, host: str, port: Optional[int]):
    """
    Serve the webhook/policy API and sweep in the background.
    """
    from .api.app import serve as serve_api

    settings = ctx.obj["settings"]
    serve_api(ctx.obj["driver"], settings.webhook_secret, host=host, port=port)


@main.group()
def policy():
    """
    Inspect and change stored stack policies.
    """
    pass


@policy.command(name="show")
@click.argument("stack")
@click.pass_context
def policy_show(ctx, stack: str):
    """Show the stored policy of STACK."""
    identity = _identity(ctx, stack)
    try:
        record = ctx.obj["driver"].store.get(identity)
    except NotFound:
        _fail(f"No policy stored for {identity}", code=2)

    print(json.dumps(record.to_dict(), indent=2))


@policy.command(name="set")
@click.argument("stack")
@click.option("--ttl-minutes", type=int, help="Minutes until expiration")
@click.option("--drift-management", help="'Correct' to remediate drift, anything else to only detect it")
@click.option("--team", help="Team granted admin permission")
@click.option("--delete-stack", help="Value of the delete_stack tag (True/False)")
@click.option("--reset-ttl", is_flag=True, help="Forget the recorded expiration; the next pass sets a new one")
@click.pass_context
def policy_set(ctx, stack: str, ttl_minutes: Optional[int], drift_management: Optional[str],
               team: Optional[str], delete_stack: Optional[str], reset_ttl: bool):
    """Create or change the policy of STACK."""
    identity = _identity(ctx, stack)
    store = ctx.obj["driver"].store

    try:
        record = store.update(
            identity,
            lambda current: update_policy(current, ttl_minutes, drift_management, team, delete_stack, reset_ttl),
            default=ctx.obj["settings"].default_policy(),
        )
    except ConfigError as e:
        _fail(f"Invalid policy: {e}")

    emit_event(identity, EventTypes.POLICY_UPDATED, record.policy.to_dict(), store.home)
    print(json.dumps(record.to_dict(), indent=2))


@policy.command(name="list")
@click.pass_context
def policy_list(ctx):
    """List all stacks with a stored policy."""
    records = ctx.obj["driver"].store.list_records()
    if not records:
        click.echo("No managed stacks")
        return

    for record in records:
        p = record.policy
        expires = p.ttl_expiration or "not scheduled"
        click.echo(f"• {record.identity}  team={p.team} drift={p.drift_mode.value} expires={expires}")


@main.command()
@click.argument("stack")
@click.option("--limit", type=int, default=20, help="Number of most recent events")
@click.pass_context
def events(ctx, stack: str, limit: int):
    """Show recent reconciliation events of STACK."""
    identity = _identity(ctx, stack)
    for event in read_events(identity, ctx.obj["driver"].store.home)[-limit:]:
        print(json.dumps(event))


if __name__ == "__main__":
    main()
