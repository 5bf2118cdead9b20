"""
Command-line interface for the membership client.

Keeps the local group mirror in sync with the contract and runs the
join / model-update proof workflow against the verifier.
"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional, Tuple

import click
import trio
from rich.console import Console
from rich.table import Table

from zkmember_client import __version__
from zkmember_client.config import ClientConfig, load_config
from zkmember_client.constants import DEFAULT_MIRROR_PATH
from zkmember_client.errors import ConfigurationError, ZKMemberError
from zkmember_client.ledger.bridge import ContractEventBridge
from zkmember_client.ledger.source import Web3ChainSource, load_abi
from zkmember_client.membership.mirror import MembershipMirror
from zkmember_client.workflow.coordinator import WorkflowCoordinator, summarize
from zkmember_client.workflow.correlator import EventCorrelator
from zkmember_client.workflow.proofs import Identity, SubprocessProofGenerator
from zkmember_client.workflow.submission import ProofSubmissionClient

logger = logging.getLogger(__name__)


def _single_error(exc: BaseException) -> BaseException:
    # Nurseries wrap errors in exception groups; report the lone cause.
    while len(getattr(exc, "exceptions", ())) == 1:
        exc = exc.exceptions[0]
    return exc


def _run(async_fn: Any, *args: Any) -> Any:
    try:
        return trio.run(async_fn, *args)
    except Exception as exc:
        error = _single_error(exc)
        if isinstance(error, ZKMemberError):
            click.echo(click.style(f"✗ {type(error).__name__}: {error}", fg="red"), err=True)
            sys.exit(1)
        raise


def _load(ctx: click.Context) -> ClientConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigurationError as exc:
        click.echo(click.style(f"✗ {exc}", fg="red"), err=True)
        sys.exit(2)


def _build_bridge(config: ClientConfig) -> Tuple[Web3ChainSource, MembershipMirror, ContractEventBridge]:
    source = Web3ChainSource(
        config.rpc_url,
        config.contract_address,
        load_abi(config.abi_path),
        request_timeout=config.request_timeout,
    )
    mirror = MembershipMirror(config.mirror_path)
    bridge = ContractEventBridge(
        source,
        mirror,
        poll_interval=config.poll_interval,
        max_attempts=config.backfill_max_attempts,
        backoff=config.backfill_backoff,
    )
    return source, mirror, bridge


def _identity_from_env() -> Identity:
    secret = os.environ.get("IDENTITY_SECRET")
    commitment = os.environ.get("IDENTITY_COMMITMENT")
    if not secret or not commitment:
        raise ConfigurationError(
            "Environment variables not found: IDENTITY_SECRET, IDENTITY_COMMITMENT"
        )
    try:
        return Identity(secret=secret, commitment=int(commitment))
    except ValueError as exc:
        raise ConfigurationError("IDENTITY_COMMITMENT must be a decimal integer") from exc


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML config file (environment variables take precedence)",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """
    Anonymous group membership client.

    Mirrors group membership from the ledger and submits membership and
    model-update proofs to the verifier.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@main.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Backfill the group mirror, then keep following the contract."""
    config = _load(ctx)

    async def _sync() -> None:
        _, mirror, bridge = _build_bridge(config)
        async with trio.open_nursery() as nursery:
            block = await nursery.start(bridge.run, config.from_block)
            click.echo(click.style(f"✓ Synced through block {block}", fg="green"))
            click.echo(f"Mirror: {mirror.path} ({len(mirror.group_ids())} group(s))")
            click.echo("Listening to member updates...")

    try:
        _run(_sync)
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@main.command()
@click.option("--group-id", type=str, help="Only show this group")
@click.option(
    "--mirror-path",
    type=click.Path(dir_okay=False),
    default=lambda: os.environ.get("MIRROR_PATH", DEFAULT_MIRROR_PATH),
    show_default="MIRROR_PATH or group_members.json",
    help="Mirror file to read",
)
def members(group_id: Optional[str], mirror_path: str) -> None:
    """Show the mirrored group members."""
    mirror = MembershipMirror(Path(mirror_path))
    try:
        snapshot = mirror.load()
    except ZKMemberError as exc:
        click.echo(click.style(f"✗ {exc}", fg="red"), err=True)
        sys.exit(1)

    if group_id is not None:
        if group_id not in snapshot:
            click.echo(click.style(f"✗ Unknown group {group_id}", fg="red"), err=True)
            sys.exit(1)
        snapshot = {group_id: snapshot[group_id]}

    table = Table(title=f"Group members ({mirror.path})")
    table.add_column("Group", style="cyan")
    table.add_column("Index", justify="right")
    table.add_column("Commitment")
    for gid, commitments in snapshot.items():
        if not commitments:
            table.add_row(gid, "-", "(empty)")
        for index, commitment in enumerate(commitments):
            table.add_row(gid, str(index), commitment)
    Console().print(table)


@main.command()
@click.option("--group-id", type=str, help="Group to join (default: first known group)")
@click.option("--scope", type=str, default="round-1", show_default=True, help="Model-update scope")
@click.option(
    "--value",
    "values",
    multiple=True,
    required=True,
    help="Model-update value (decimal integer, repeatable)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def join(
    ctx: click.Context,
    group_id: Optional[str],
    scope: str,
    values: Tuple[str, ...],
    as_json: bool,
) -> None:
    """Join a group and submit the membership and model-update proofs."""
    config = _load(ctx)
    try:
        identity = _identity_from_env()
    except ConfigurationError as exc:
        click.echo(click.style(f"✗ {exc}", fg="red"), err=True)
        sys.exit(2)
    if not config.prover_command:
        click.echo(click.style("✗ PROVER_COMMAND is not configured", fg="red"), err=True)
        sys.exit(2)

    async def _join() -> Any:
        source, mirror, bridge = _build_bridge(config)
        correlator = EventCorrelator()
        prover = SubprocessProofGenerator(config.prover_command, timeout=config.prover_timeout)
        async with trio.open_nursery() as nursery:
            nursery.start_soon(correlator.run, bridge.subscribe())
            await nursery.start(bridge.run, config.from_block)
            async with ProofSubmissionClient(
                config.server_url, timeout=config.request_timeout
            ) as client:
                coordinator = WorkflowCoordinator(
                    source,
                    mirror,
                    correlator,
                    client,
                    prover,
                    submission_policy=config.submission_policy,
                    confirmation_timeout=config.confirmation_timeout,
                )
                gid = group_id or await coordinator.resolve_group_id(
                    config.confirmation_timeout
                )
                report = await coordinator.run(gid, identity, scope, values)
            nursery.cancel_scope.cancel()
        return report

    report = _run(_join)
    summary = summarize(report)
    if as_json:
        click.echo(json.dumps(summary, indent=2))
        return
    status = click.style("✓", fg="green") if report.success else click.style("✗", fg="red")
    click.echo(f"{status} Group {report.group_id}: joined={report.joined} members={len(report.members)}")
    for label in ("join_proof", "update_proof"):
        item = summary[label]
        state = "accepted" if item and item["ok"] else f"failed ({item and item['error']})"
        click.echo(f"  {label.replace('_', ' ')}: {state}")
    if not report.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
