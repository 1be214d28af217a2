"""Delayed group reconciler CLI (delaysync).

Usage:
    delaysync run                 # One reconciliation pass (writes changes)
    delaysync run --dry-run       # Compute and log plans only
    delaysync plan                # Dry-run and print per-group changes
    delaysync show-config         # Print effective configuration
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import yaml

from . import __version__
from .config import Config, ConfigurationError
from .main import exit_code_for, install_signal_handlers, main, setup_logging
from .reconciler import GroupResult, Reconciler, RunResult
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError

spec_option = click.option(
    "--spec",
    "spec_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML sync spec (overrides SOURCE_GROUP_PREFIX and friends).",
)


def load_config(spec_path: Path | None, dry_run: bool | None = None) -> Config:
    """Load configuration, converting failures into CLI errors."""
    try:
        config = Config.from_env(spec_path)
        if dry_run is not None and dry_run != config.dry_run:
            config = config.with_overrides(dry_run=dry_run)
    except (ConfigurationError, SpecLoadError) as e:
        raise click.ClickException(str(e)) from e
    return config


def _format_group(group: GroupResult) -> list[str]:
    delayed_name = group.delayed_group.display_name if group.delayed_group else "-"
    lines = [f"{group.source_group.display_name} -> {delayed_name} [{group.outcome.value}]"]

    if group.delayed_group is not None and not group.delayed_group.exists:
        lines.append("  (delayed group would be created)")
    if group.error:
        lines.append(f"  error: {group.error}")

    plan = group.plan
    if plan is None:
        return lines
    for member in plan.to_add:
        lines.append(f"  + {member.label} ({member.external_id})")
    for member in plan.to_remove:
        lines.append(f"  - {member.label} ({member.external_id or 'non-device'})")
    if plan.not_qualified:
        lines.append(f"  waiting: {len(plan.not_qualified)} device(s) below threshold")
    if plan.unresolved or plan.invalid:
        lines.append(
            f"  warnings: {len(plan.unresolved)} unresolved, {len(plan.invalid)} invalid"
        )
    return lines


def print_run_summary(result: RunResult) -> None:
    for group in result.groups:
        for line in _format_group(group):
            click.echo(line)

    click.echo("")
    if result.error is not None:
        click.secho(f"Run failed: {result.error}", fg="red")
        return

    verb = "planned" if result.dry_run else "applied"
    summary = (
        f"{len(result.groups)} group(s), {result.members_added} add(s) and "
        f"{result.members_removed} removal(s) {verb}"
    )
    if result.has_group_failures:
        click.secho(f"{summary}, with failures", fg="yellow")
    else:
        click.secho(summary, fg="green")
    if result.cancelled:
        click.secho("Run was cancelled before all groups were processed", fg="yellow")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="delaysync")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Keep enrollment-delayed copies of Entra device groups in sync.

    \b
    Each source group (selected by SOURCE_GROUP_PREFIX) gets a delayed
    group named "<source><DELAYED_GROUP_SUFFIX>" holding the source's
    devices that were enrolled at least QUALIFICATION_THRESHOLD_HOURS ago.
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = logging.DEBUG if verbose else logging.INFO


@cli.command("run")
@spec_option
@click.option("--dry-run", is_flag=True, help="Compute plans without writing.")
@click.pass_context
def run_command(ctx: click.Context, spec_path: Path | None, dry_run: bool) -> None:
    """Run one reconciliation pass with JSON logs on stdout."""
    setup_logging(ctx.obj["log_level"])
    # Without the flag, DRY_RUN or the sync spec decides
    ctx.exit(main(spec_path, dry_run=True if dry_run else None))


@cli.command()
@spec_option
@click.pass_context
def plan(ctx: click.Context, spec_path: Path | None) -> None:
    """Show what a run would change, without writing anything."""
    config = load_config(spec_path, dry_run=True)

    # Human-readable output on stdout; logs go to stderr
    logging.basicConfig(level=ctx.obj["log_level"], stream=sys.stderr)
    logger = logging.getLogger("delaysync")

    try:
        reconciler = Reconciler(config, log=logger)
    except SecretlessViolationError as e:
        raise click.ClickException(str(e)) from e

    install_signal_handlers(reconciler, logger)
    result = reconciler.run_once()
    print_run_summary(result)
    ctx.exit(exit_code_for(result))


@cli.command("show-config")
@spec_option
def show_config(spec_path: Path | None) -> None:
    """Print the effective configuration."""
    config = load_config(spec_path)
    click.echo(
        yaml.safe_dump(
            {
                "sourceGroupPrefix": config.source_group_prefix,
                "delayedGroupSuffix": config.delayed_group_suffix,
                "thresholdHours": config.threshold_hours,
                "dryRun": config.dry_run,
                "maxChangesPerGroup": config.max_changes_per_group,
                "auditLogging": config.enable_audit_logging,
                "graphBaseUrl": config.graph_base_url,
                "graphTimeoutSeconds": config.graph_timeout_seconds,
                "managedIdentityClientId": config.managed_identity_client_id,
                "syncSpecPath": str(config.sync_spec_path) if config.sync_spec_path else None,
            },
            sort_keys=False,
        ),
        nl=False,
    )


if __name__ == "__main__":
    cli()
