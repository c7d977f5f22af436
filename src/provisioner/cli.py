"""AWS operator CLI (awsop).

Interactive counterpart of the operator container for plan/apply cycles,
state inspection and adopting existing resources.

Usage:
    awsop plan                         # Show what apply would change
    awsop apply                        # Converge AWS on the manifests
    awsop refresh                      # Re-read every recorded resource
    awsop destroy [ADDRESS...]         # Delete recorded resources
    awsop show                         # Print the local state
    awsop import KIND NAME HANDLE      # Adopt an existing resource
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from .clients import RemoteError
from .config import Config, ConfigurationError
from .main import setup_logging
from .reconciler import Action, ApplyResult, PlannedAction, Reconciler
from .spec_loader import ResourceManifest, SpecLoadError, load_manifests
from .state_store import FileStateStore, ResourceRecord, StateStoreError
from .waiter import WaitError

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.READ: "=",
    Action.IMPORT: "<=",
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Attributes never printed in clear
SECRET_ATTRIBUTES = frozenset({"customer_key", "source_customer_key", "kms_encryption_context"})


class InvalidInputError(click.ClickException):
    """Configuration or manifest error; exits with status 2."""

    exit_code = 2


class OperatorContext:
    """Lazily built configuration and reconciler shared by the commands."""

    def __init__(self, overrides: dict[str, object]) -> None:
        self._overrides = overrides
        self._config: Config | None = None
        self._reconciler: Reconciler | None = None

    @property
    def config(self) -> Config:
        if self._config is None:
            try:
                self._config = Config.from_env(**self._overrides)
            except ConfigurationError as e:
                raise InvalidInputError(str(e)) from e
        return self._config

    @property
    def reconciler(self) -> Reconciler:
        if self._reconciler is None:
            try:
                self._reconciler = Reconciler(self.config)
            except StateStoreError as e:
                raise click.ClickException(str(e)) from e
        return self._reconciler

    def manifests(self) -> list[ResourceManifest]:
        try:
            return load_manifests(self.config.specs_dir)
        except SpecLoadError as e:
            raise InvalidInputError(str(e)) from e


def _describe(action: Action, address: str, changed: tuple[str, ...]) -> str:
    line = f"  {ACTION_SYMBOLS.get(action, ' '):>3} {action.value:<8} {address}"
    if changed:
        line += f" ({', '.join(changed)})"
    return line


def _redacted(record: ResourceRecord) -> dict[str, object]:
    return {
        key: ("<redacted>" if key in SECRET_ATTRIBUTES and value else value)
        for key, value in record.attributes.items()
    }


def _echo_plan(actions: list[PlannedAction]) -> None:
    pending = [a for a in actions if a.action is not Action.NOOP]
    if not pending:
        click.secho("No changes. AWS matches the manifests.", fg="green")
        return
    for planned in pending:
        click.echo(_describe(planned.action, planned.address, planned.changed))
    counts = {action: sum(1 for a in pending if a.action is action) for action in Action}
    click.echo(
        f"\nPlan: {counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
        f"{counts[Action.REPLACE]} to replace, {counts[Action.DELETE]} to delete."
    )


def _echo_result(result: ApplyResult) -> None:
    for outcome in result.outcomes:
        if outcome.action is Action.NOOP:
            continue
        line = _describe(outcome.action, outcome.address, outcome.changed)
        if outcome.handle:
            line += f" [{outcome.handle}]"
        if outcome.error is not None:
            click.secho(f"{line}\n      error: {outcome.error}", fg="red")
        else:
            click.echo(line)

    summary = f"\n{len(result.outcomes)} resources in {result.duration_seconds:.1f}s"
    if result.dry_run:
        summary += " (dry run, nothing changed)"
    if result.success:
        click.secho(summary, fg="green")
    else:
        click.secho(f"{summary}, {len(result.failed)} failed", fg="red")
        sys.exit(1)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="awsop")
@click.option("--specs-dir", type=click.Path(path_type=Path), help="Manifest directory")
@click.option("--state-file", type=click.Path(path_type=Path), help="Local state file")
@click.option("--region", help="AWS region (default: AWS_REGION)")
@click.option("--profile", help="Named AWS profile (default: AWS_PROFILE)")
@click.option("--dry-run", is_flag=True, default=None, help="Plan only, change nothing")
@click.option("--prune", is_flag=True, default=None, help="Delete undeclared resources")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
@click.pass_context
def cli(
    ctx: click.Context,
    specs_dir: Path | None,
    state_file: Path | None,
    region: str | None,
    profile: str | None,
    dry_run: bool | None,
    prune: bool | None,
    log_level: str,
) -> None:
    """AWS operator CLI (awsop).

    Reconciles VPC Endpoint Services and S3 object copies declared in YAML
    manifests. Options override the matching environment variables.
    """
    setup_logging(log_level.upper(), stream=sys.stderr)
    ctx.obj = OperatorContext(
        {
            "specs_dir": specs_dir,
            "state_file": state_file,
            "region": region,
            "profile": profile,
            "dry_run": dry_run,
            "prune": prune,
        }
    )


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command()
@click.pass_obj
def plan(operator: OperatorContext) -> None:
    """Show what apply would change."""
    manifests = operator.manifests()
    try:
        actions = operator.reconciler.plan(manifests)
    except (RemoteError, WaitError, StateStoreError) as e:
        raise click.ClickException(f"Plan failed: {e}") from e
    _echo_plan(actions)


@cli.command()
@click.pass_obj
def apply(operator: OperatorContext) -> None:
    """Create, update or replace resources to match the manifests."""
    manifests = operator.manifests()
    _echo_result(operator.reconciler.apply(manifests))


@cli.command()
@click.pass_obj
def refresh(operator: OperatorContext) -> None:
    """Re-read every recorded resource and update the local state."""
    _echo_result(operator.reconciler.refresh())


@cli.command()
@click.argument("addresses", nargs=-1)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_obj
def destroy(operator: OperatorContext, addresses: tuple[str, ...], yes: bool) -> None:
    """Delete recorded resources (all of them when no ADDRESS is given)."""
    target = ", ".join(addresses) if addresses else "ALL recorded resources"
    if not yes and not operator.config.dry_run:
        click.confirm(f"Delete {target}?", abort=True)
    _echo_result(operator.reconciler.destroy(addresses or None))


@cli.command("import")
@click.argument("kind")
@click.argument("name")
@click.argument("handle")
@click.pass_obj
def import_command(operator: OperatorContext, kind: str, name: str, handle: str) -> None:
    """Adopt the existing resource HANDLE as KIND.NAME."""
    outcome = operator.reconciler.import_resource(kind, name, handle)
    if outcome.error is not None:
        raise click.ClickException(f"Import failed: {outcome.error}")
    click.secho(f"Imported {outcome.address} [{handle}]", fg="green")


# =============================================================================
# State Commands
# =============================================================================


@cli.command()
@click.argument("address", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print records as JSON")
@click.pass_obj
def show(operator: OperatorContext, address: str | None, as_json: bool) -> None:
    """Print the local state without calling AWS."""
    try:
        store = FileStateStore(operator.config.state_file)
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    records = sorted(store.records(), key=lambda r: r.address)
    if address is not None:
        records = [r for r in records if r.address == address]
        if not records:
            raise click.ClickException(f"No recorded resource at {address}")

    if as_json:
        payload = [{**r.to_dict(), "attributes": _redacted(r)} for r in records]
        click.echo(json.dumps(payload, indent=2, default=str))
        return

    if not records:
        click.echo("No recorded resources.")
        return
    for record in records:
        updated = record.updated_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{record.address}  [{record.handle}]  updated {updated}")
        if address is not None:
            for key, value in sorted(_redacted(record).items()):
                click.echo(f"    {key}: {value}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
