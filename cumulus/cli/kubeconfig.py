from __future__ import annotations

from typing import Optional

import typer

from cumulus.cli.utils import build_context, handle_errors, load_backend
from cumulus.errors import NotFoundError
from cumulus.kubeconfig import merge_kubeconfig, save_kubeconfig
from cumulus.logger import logger
from cumulus.providers.aws.eks import generate_kubeconfig
from cumulus.providers.aws.provider import PROVIDER_NAME, decode_resources
from cumulus.providers.base import get_cluster_state
from cumulus.utils import to_yaml

kube_app = typer.Typer()


@kube_app.command()
@handle_errors
def export(
    name: str = typer.Argument(..., help="The name of the cluster."),
    merge: bool = typer.Option(
        False,
        "--merge",
        "-m",
        help="Also merge the connection details into ~/.kube/config and switch "
        "the current context to the cluster.",
    ),
    stdout: bool = typer.Option(
        False, "--stdout", help="Print the kubeconfig instead of writing it."
    ),
    state_backend: Optional[str] = typer.Option(
        None, "--state-backend", "-s", help="The state backend URL."
    ),
    backend_region: Optional[str] = typer.Option(
        None, "--backend-region", help="The region of the state backend."
    ),
) -> None:
    """
    Writes the kubeconfig of a cluster to ~/.kube/config-<name>.
    """
    ctx = build_context(state_backend, backend_region)
    backend = load_backend(ctx)
    state = get_cluster_state(backend, name)
    if state.config.provider != PROVIDER_NAME:
        raise NotFoundError(f"Unknown provider {state.config.provider} for {name}")

    resources = decode_resources(state)
    if resources.eks is None or resources.eks.cluster is None:
        raise NotFoundError(f"No control plane is recorded for cluster {name}")

    kubeconfig = generate_kubeconfig(resources.eks.cluster, state.config.region)
    if stdout:
        typer.echo(to_yaml(kubeconfig))
        return

    save_kubeconfig(name, kubeconfig)
    if merge:
        merge_kubeconfig(kubeconfig)
    logger.info("Successfully exported kubeconfig.")
