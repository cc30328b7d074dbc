"""Click CLI for inspecting accounts, probing delivery, and approving pairings."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path

import click
import uvicorn

from tgrelay.audit.logger import AuditLogger, validate_audit_chain
from tgrelay.config.accounts import load_channel_config
from tgrelay.outbound.target import MissingTargetError
from tgrelay.pairing.store import SqlitePairingStore
from tgrelay.proxy.app import create_app
from tgrelay.runtime import UpstreamAgentDispatcher
from tgrelay.service import RelayService
from tgrelay.status import collect_issues, collect_warnings


@click.group()
@click.option("--config", "config_path", default="config/tgrelay.json",
              envvar="TGRELAY_CONFIG", help="Path to the channel config JSON.")
@click.option("--pairing-db", default="data/pairing.db", envvar="TGRELAY_PAIRING_DB",
              help="Pairing database path.")
@click.option("--audit-log", default=None, envvar="TGRELAY_AUDIT_LOG", help="Audit log file path.")
@click.option("--upstream-url", default=None, envvar="UPSTREAM_URL", help="Agent endpoint.")
@click.option("--upstream-token", default="", envvar="UPSTREAM_TOKEN", help="Agent bearer token.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str,
    pairing_db: str,
    audit_log: str | None,
    upstream_url: str | None,
    upstream_token: str,
) -> None:
    """Telegram webhook relay CLI."""
    ctx.ensure_object(dict)
    try:
        config = load_channel_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    audit_logger = AuditLogger.from_env(audit_log) if audit_log else None
    ctx.obj["audit_log"] = audit_log
    ctx.obj["upstream_url"] = upstream_url
    ctx.obj["service"] = RelayService(
        config,
        UpstreamAgentDispatcher(upstream_url or "", upstream_token),
        pairing_store=SqlitePairingStore(pairing_db),
        audit_logger=audit_logger,
    )


@cli.group("accounts")
def accounts_group() -> None:
    """Inspect configured accounts."""


@accounts_group.command("list")
@click.pass_context
def accounts_list(ctx: click.Context) -> None:
    """List accounts with their webhook path, policies, and config issues."""
    service: RelayService = ctx.obj["service"]
    output = [
        {
            "account_id": account.account_id,
            "name": account.name,
            "enabled": account.enabled,
            "configured": account.configured,
            "webhook_path": account.webhook_path,
            "dm_policy": account.dm_policy.value,
            "group_policy": account.group_policy.value,
            "rpc": account.rpc_enabled,
            "warnings": collect_warnings(account),
            "issues": collect_issues(account),
        }
        for account in service.accounts()
    ]
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.option("--account", "account_id", default=None, help="Probe one account only.")
@click.pass_context
def probe(ctx: click.Context, account_id: str | None) -> None:
    """Check that each account's reply path answers a getMe call."""
    service: RelayService = ctx.obj["service"]
    results = asyncio.run(service.probe(account_id))
    click.echo(json.dumps([asdict(result) for result in results], indent=2))
    if not all(result.ok for result in results):
        ctx.exit(1)


@cli.command()
@click.argument("text")
@click.option("--to", default=None, help="Chat id or @username; defaults to dm.allowFrom[0].")
@click.option("--account", "account_id", default=None, help="Account whose reply path sends.")
@click.pass_context
def send(ctx: click.Context, text: str, to: str | None, account_id: str | None) -> None:
    """Send a text message through an account's reply path."""
    service: RelayService = ctx.obj["service"]
    try:
        result = asyncio.run(service.send_text(text, to=to, account_id=account_id))
    except MissingTargetError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(asdict(result), indent=2))
    if not result.ok:
        ctx.exit(1)


@cli.group("pairing")
def pairing_group() -> None:
    """Manage DM pairing requests."""


@pairing_group.command("list")
@click.pass_context
def pairing_list(ctx: click.Context) -> None:
    """List pending pairing requests."""
    service: RelayService = ctx.obj["service"]
    requests = asyncio.run(service.list_pairing_requests())
    click.echo(json.dumps([asdict(request) for request in requests], indent=2))


@pairing_group.command("approve")
@click.argument("code")
@click.option("--account", "account_id", default=None,
              help="Account whose reply path sends the approval notice.")
@click.pass_context
def pairing_approve(ctx: click.Context, code: str, account_id: str | None) -> None:
    """Approve a pairing code and notify the sender."""
    service: RelayService = ctx.obj["service"]
    approved = asyncio.run(service.approve_pairing(code, account_id))
    if approved is None:
        raise click.ClickException(f"Unknown or expired pairing code: {code}")
    click.echo(f"Approved sender: {approved.sender_id}")


@cli.group("audit")
def audit_group() -> None:
    """Inspect the audit trail."""


@audit_group.command("verify")
@click.argument("log_path", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def audit_verify(ctx: click.Context, log_path: str | None) -> None:
    """Check the audit log hash chain; exits 1 when it is broken."""
    path = log_path or ctx.obj["audit_log"]
    if not path:
        raise click.UsageError("LOG_PATH (or --audit-log) is required")
    if not Path(path).exists():
        raise click.ClickException(f"Audit log not found: {path}")
    result = validate_audit_chain(Path(path))
    click.echo(json.dumps(asdict(result), indent=2))
    if not result.valid:
        ctx.exit(1)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")
@click.option("--port", default=8080, type=int, help="Bind port.")
@click.option("--admin-token", default=None, envvar="TGRELAY_ADMIN_TOKEN",
              help="Bearer token for /admin routes.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, admin_token: str | None) -> None:
    """Run the webhook server."""
    if not ctx.obj["upstream_url"]:
        raise click.UsageError("--upstream-url (or UPSTREAM_URL) is required to serve")
    service: RelayService = ctx.obj["service"]
    app = create_app(
        service.config,
        service.dispatcher,
        admin_token=admin_token,
        audit_logger=service.audit_logger,
        service=service,
    )
    uvicorn.run(app, host=host, port=port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
