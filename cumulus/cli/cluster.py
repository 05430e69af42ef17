from __future__ import annotations

from typing import Optional

import typer

from cumulus.cli.utils import (
    build_context,
    check_output_format,
    handle_errors,
    load_backend,
    load_cluster_config,
    render_state,
    render_summaries,
    render_teardown_failures,
    validate_name,
)
from cumulus.logger import logger
from cumulus.providers.base import get_cluster_state, list_clusters, load_provider

cluster_app = typer.Typer()

STATE_BACKEND_HELP = (
    "The state backend URL, e.g. s3://my-bucket?lock-table=my-locks or "
    "file:///path/to/dir. Defaults to $CUMULUS_STATE_BACKEND."
)
BACKEND_REGION_HELP = (
    "The region of the state backend. Defaults to $CUMULUS_REGION."
)


@cluster_app.command()
@handle_errors
def create(
    cluster_config: str = typer.Option(
        "",
        "--file",
        "-f",
        help="Path to the cluster config file. The cluster config file is a "
        "YAML file that contains the configuration of the cluster",
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
    no_kubeconfig: bool = typer.Option(
        False,
        "--no-kubeconfig",
        "-n",
        help="By default, the connection details of the newly created Kubernetes "
        "cluster are saved to ~/.kube/config-<name> and merged into the default "
        "kubeconfig file (~/.kube/config). Use this option to skip that.",
    ),
) -> None:
    """
    Creates a Kubernetes cluster based on the provided configuration.
    """
    config = load_cluster_config(cluster_config)
    validate_name(config.cluster.name)

    ctx = build_context(state_backend, backend_region)
    ctx.set_should_save_kubeconfig(not no_kubeconfig)
    backend = load_backend(ctx)
    provider = load_provider(ctx, config.cluster.provider)

    state = provider.create_cluster(config.cluster, backend)
    typer.echo(render_state(state, "text"))


@cluster_app.command()
@handle_errors
def destroy(
    name: str = typer.Argument(..., help="The name of the cluster."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Automatic yes to prompts. Use this option to bypass the confirmation "
        "prompt and directly proceed with the operation.",
    ),
    keep_state: bool = typer.Option(
        False,
        "--keep-state",
        help="Keep the cluster state if some resources could not be removed, so "
        "the destroy can be run again.",
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
) -> None:
    """
    Tears down the Kubernetes cluster, removing all associated resources.
    """
    validate_name(name)
    if not yes and not typer.confirm(
        f"Are you sure you want to destroy cluster {name}? Please note that "
        "all resources and data will be permanently deleted.",
        default=False,
    ):
        raise typer.Abort()

    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    state = get_cluster_state(backend, name)
    provider = load_provider(ctx, state.config.provider)

    report = provider.delete_cluster(name, backend, keep_state_on_failure=keep_state)
    if not report.ok:
        typer.echo(render_teardown_failures(report))


@cluster_app.command()
@handle_errors
def update(
    name: str = typer.Argument(..., help="The name of the cluster."),
    scale_nodes: Optional[int] = typer.Option(
        None, "--scale-nodes", help="The desired number of nodes."
    ),
    node_min: Optional[int] = typer.Option(
        None, "--node-min", help="The minimum number of nodes."
    ),
    node_max: Optional[int] = typer.Option(
        None, "--node-max", help="The maximum number of nodes."
    ),
    k8s_version: Optional[str] = typer.Option(
        None, "--k8s-version", help="The Kubernetes version to upgrade to."
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show the planned changes without applying them."
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
) -> None:
    """
    Scales the node group or upgrades the Kubernetes version of a cluster.
    """
    validate_name(name)
    if all(v is None for v in [scale_nodes, node_min, node_max, k8s_version]):
        logger.error(
            "Nothing to update. Pass --scale-nodes, --node-min, --node-max or --k8s-version."
        )
        raise typer.Exit(1)

    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    state = get_cluster_state(backend, name)
    provider = load_provider(ctx, state.config.provider)

    state = provider.update_cluster(
        name,
        backend,
        desired_size=scale_nodes,
        min_size=node_min,
        max_size=node_max,
        k8s_version=k8s_version,
        dry_run=dry_run,
    )
    if not dry_run:
        typer.echo(render_state(state, "text"))


@cluster_app.command()
@handle_errors
def status(
    name: str = typer.Argument(..., help="The name of the cluster."),
    output: str = typer.Option(
        "text", "--output", "-o", help="Output format: text, json or yaml."
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
) -> None:
    """
    Shows the recorded status of a cluster.
    """
    check_output_format(output)
    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    typer.echo(render_state(get_cluster_state(backend, name), output))


@cluster_app.command("list")
@handle_errors
def list_command(
    output: str = typer.Option(
        "text", "--output", "-o", help="Output format: text, json or yaml."
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
) -> None:
    """
    Lists the clusters recorded in the state backend.
    """
    check_output_format(output)
    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    summaries = list_clusters(backend)
    if not summaries and output == "text":
        logger.info("No clusters found.")
        return
    typer.echo(render_summaries(summaries, output))


@cluster_app.command()
@handle_errors
def unlock(
    name: str = typer.Argument(..., help="The name of the cluster."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation."),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help=STATE_BACKEND_HELP
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help=BACKEND_REGION_HELP
    ),
) -> None:
    """
    Force-releases the lock of a cluster left behind by an interrupted operation.
    """
    if not yes and not typer.confirm(
        f"Only do this if no other operation is running on {name}. Continue?",
        default=False,
    ):
        raise typer.Abort()

    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    backend.unlock(name)
    logger.info(f"Lock of cluster {name} released.")
