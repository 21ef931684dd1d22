"""Cluster provisioning CLI (clusterctl).

Usage:
    clusterctl create -f cluster.yaml --state acct.json       # Create and wait until provisioned
    clusterctl update SLUG -f cluster.yaml --state acct.json  # Rename / change plan and wait
    clusterctl delete SLUG                                    # Destroy and wait until gone
    clusterctl show SLUG --state acct.json                    # Print the current snapshot
    clusterctl catalog plans                                  # List plans (or clusters/spaces/releases)
    clusterctl catalog plans sandbox                          # Show a single plan

Output is JSON on stdout. Credentials are masked unless --show-secrets is
given. Logs go to stderr.

The one-time credentials are only returned when a cluster is created. Pass
--state to keep the full snapshot (credentials unmasked, mode 0600) in a
file: create writes it, update and show read it as the prior snapshot and
write the merged result back.

Exit codes:
    0    success
    1    operation failed
    2    configuration or manifest error
    3    convergence timeout (a partial snapshot is still printed)
    130  cancelled by SIGINT/SIGTERM
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NoReturn

import click
from azure.core.exceptions import AzureError, ResourceNotFoundError
from pydantic import ValidationError

from .client import CLIENT_VERSION, ClusterClient
from .config import Config, ConfigurationError
from .errors import ConvergenceTimeout, ReconciliationCancelled, ReconciliationError
from .models import ClusterDescriptor, ClusterSnapshot
from .reconciler import ClusterReconciler
from .spec_loader import SpecLoadError, load_manifest

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_TIMEOUT = 3
EXIT_CANCELLED = 130

CATALOG_KINDS = ("clusters", "plans", "spaces", "releases")

STATE_OPTION_HELP = "Snapshot file holding the one-time credentials (JSON)."


def _fail(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(code)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def _echo_snapshot(snapshot: ClusterSnapshot | None, show_secrets: bool) -> None:
    if snapshot is not None:
        _echo_json(snapshot.to_output(show_secrets=show_secrets))


def _load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        _fail(str(e), EXIT_CONFIG_ERROR)


def _load_manifest(path: Path) -> ClusterDescriptor:
    try:
        return load_manifest(path)
    except SpecLoadError as e:
        _fail(str(e), EXIT_CONFIG_ERROR)


def _load_state(path: Path | None, slug: str) -> ClusterSnapshot | None:
    """Load the persisted snapshot for SLUG, or None if there is none yet."""
    if path is None or not path.exists():
        return None
    try:
        prior = ClusterSnapshot.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        _fail(f"Invalid state file {path}: {e}", EXIT_CONFIG_ERROR)
    if prior.slug and prior.slug != slug:
        _fail(
            f"State file {path} belongs to cluster {prior.slug}, not {slug}",
            EXIT_CONFIG_ERROR,
        )
    return prior


def _save_state(path: Path | None, snapshot: ClusterSnapshot | None) -> None:
    if path is None or snapshot is None:
        return
    path.write_text(json.dumps(snapshot.to_output(show_secrets=True), indent=2, sort_keys=True))
    path.chmod(0o600)
    logger.debug("Saved cluster state", extra={"path": str(path), "cluster_slug": snapshot.slug})


@contextmanager
def cancel_on_signals() -> Iterator[threading.Event]:
    """Yield an event that SIGINT/SIGTERM set, restoring handlers afterwards."""
    cancel = threading.Event()

    def handler(signum: int, frame: Any) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield cancel
    finally:
        for sig, original in previous.items():
            signal.signal(sig, original)


def _run_operation(
    operation: Callable[[threading.Event], ClusterSnapshot | None],
    show_secrets: bool,
    state_file: Path | None = None,
) -> None:
    """Run a reconciler operation, mapping its errors to exit codes.

    Timeouts and cancellations still print and save the partial snapshot:
    after a create it holds the one-time credentials, which cannot be
    fetched again.
    """
    with cancel_on_signals() as cancel:
        try:
            snapshot = operation(cancel)
        except ConvergenceTimeout as e:
            _save_state(state_file, e.snapshot)
            _echo_snapshot(e.snapshot, show_secrets)
            _fail(str(e), EXIT_TIMEOUT)
        except ReconciliationCancelled as e:
            _save_state(state_file, e.snapshot)
            _echo_snapshot(e.snapshot, show_secrets)
            _fail(str(e), EXIT_CANCELLED)
        except ReconciliationError as e:
            _fail(str(e), EXIT_FAILURE)
        else:
            _save_state(state_file, snapshot)
            _echo_snapshot(snapshot, show_secrets)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLIENT_VERSION, prog_name="clusterctl")
@click.option(
    "--show-secrets",
    is_flag=True,
    default=False,
    help="Print cluster credentials instead of masking them.",
)
@click.pass_context
def cli(ctx: click.Context, show_secrets: bool) -> None:
    """Managed search cluster provisioning (clusterctl).

    Every mutating command blocks until the cluster converges.

    \b
    Credentials:
        BONSAI_API_KEY and BONSAI_API_TOKEN must be set.
    """
    ctx.ensure_object(dict)
    ctx.obj["show_secrets"] = show_secrets


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@click.option(
    "-f",
    "--file",
    "manifest",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Cluster manifest (YAML).",
)
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help=STATE_OPTION_HELP,
)
@click.pass_context
def create(ctx: click.Context, manifest: Path, state_file: Path | None) -> None:
    """Create a cluster and wait until it is provisioned."""
    config = _load_config()
    descriptor = _load_manifest(manifest)

    with ClusterClient(config) as client:
        reconciler = ClusterReconciler(client, config)
        _run_operation(
            lambda cancel: reconciler.create(descriptor, cancel=cancel),
            ctx.obj["show_secrets"],
            state_file,
        )


@cli.command()
@click.argument("slug")
@click.option(
    "-f",
    "--file",
    "manifest",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Cluster manifest (YAML). Only name and plan are applied.",
)
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help=STATE_OPTION_HELP,
)
@click.pass_context
def update(ctx: click.Context, slug: str, manifest: Path, state_file: Path | None) -> None:
    """Update cluster SLUG and wait until the change has landed."""
    config = _load_config()
    descriptor = _load_manifest(manifest)
    prior = _load_state(state_file, slug)

    with ClusterClient(config) as client:
        reconciler = ClusterReconciler(client, config)
        _run_operation(
            lambda cancel: reconciler.update(slug, descriptor, prior=prior, cancel=cancel),
            ctx.obj["show_secrets"],
            state_file,
        )


@cli.command()
@click.argument("slug")
@click.pass_context
def delete(ctx: click.Context, slug: str) -> None:
    """Destroy cluster SLUG and wait until it is gone."""
    config = _load_config()

    with ClusterClient(config) as client:
        reconciler = ClusterReconciler(client, config)

        def run(cancel: threading.Event) -> None:
            reconciler.delete(slug, cancel=cancel)

        _run_operation(run, ctx.obj["show_secrets"])
    click.echo(f"Deleted {slug}", err=True)


@cli.command()
@click.argument("slug")
@click.option(
    "--state",
    "state_file",
    type=click.Path(dir_okay=False, path_type=Path),
    help=STATE_OPTION_HELP,
)
@click.pass_context
def show(ctx: click.Context, slug: str, state_file: Path | None) -> None:
    """Print the current snapshot of cluster SLUG."""
    config = _load_config()
    prior = _load_state(state_file, slug)

    with ClusterClient(config) as client:
        reconciler = ClusterReconciler(client, config)
        try:
            snapshot = reconciler.read(slug, prior=prior)
        except ReconciliationError as e:
            _fail(str(e))
        _save_state(state_file, snapshot)
        _echo_snapshot(snapshot, ctx.obj["show_secrets"])


# =============================================================================
# Catalog Commands
# =============================================================================


def _lookup(client: ClusterClient, kind: str, name: str, show_secrets: bool) -> dict[str, Any]:
    match kind:
        case "clusters":
            return client.get_by_slug(name).to_output(show_secrets=show_secrets)
        case "plans":
            return client.get_plan(name).model_dump(mode="json")
        case "spaces":
            return client.get_space(name).model_dump(mode="json")
        case _:
            return client.get_release(name).model_dump(mode="json")


def _list(client: ClusterClient, kind: str, show_secrets: bool) -> list[dict[str, Any]]:
    match kind:
        case "clusters":
            return [c.to_output(show_secrets=show_secrets) for c in client.list_clusters()]
        case "plans":
            return [p.model_dump(mode="json") for p in client.list_plans()]
        case "spaces":
            return [s.model_dump(mode="json") for s in client.list_spaces()]
        case _:
            return [r.model_dump(mode="json") for r in client.list_releases()]


@cli.command()
@click.argument("kind", type=click.Choice(CATALOG_KINDS))
@click.argument("name", required=False)
@click.pass_context
def catalog(ctx: click.Context, kind: str, name: str | None) -> None:
    """List clusters, plans, spaces or releases, or show the one called NAME.

    NAME is a slug, or the path for spaces (e.g. omc/bonsai/us-east-1/common).
    """
    config = _load_config()
    show_secrets = ctx.obj["show_secrets"]

    target = kind if name is None else f"{kind[:-1]} {name!r}"

    with ClusterClient(config) as client:
        try:
            if name is None:
                result: Any = _list(client, kind, show_secrets)
            else:
                result = _lookup(client, kind, name, show_secrets)
        except ResourceNotFoundError:
            _fail(f"{target} does not exist")
        except (AzureError, ValidationError) as e:
            _fail(f"failed to fetch {target}: {e}")

    _echo_json(result)
