from __future__ import annotations

import functools
import json
import os
import re
from typing import Any, Callable, List, Optional

import typer
from tabulate import tabulate

from cumulus.config import Config, parse_yaml
from cumulus.context import Context
from cumulus.errors import CumulusError, PartialFailureError
from cumulus.logger import logger
from cumulus.state.base import StateBackend
from cumulus.state.factory import new_backend
from cumulus.state.types import ClusterState, ClusterSummary
from cumulus.teardown import TeardownReport
from cumulus.utils import to_yaml

OUTPUT_FORMATS = ["text", "json", "yaml"]

NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
MAX_NAME_LENGTH = 40


def validate_name(name: str) -> str:
    """
    Exits the program if the cluster name can not be used in AWS resource names.
    """
    if not re.match(NAME_PATTERN, name) or len(name) > MAX_NAME_LENGTH:
        logger.error(
            f"Invalid name. It must contain no more than {MAX_NAME_LENGTH} characters, "
            "contain only lowercase alphanumeric characters or '-', start with an "
            "alphanumeric character, and end with an alphanumeric character."
        )
        raise typer.Exit(1)
    return name


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator for commands: logs cumulus errors and exits with status 1.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except PartialFailureError as e:
            for resource, ids in e.report.failed_by_resource().items():
                logger.error(f"  {resource}: {', '.join(ids)}")
            logger.error(str(e))
            raise typer.Exit(1)
        except CumulusError as e:
            logger.error(str(e))
            raise typer.Exit(1)

    return wrapper


def load_cluster_config(cluster_config_file: Optional[str]) -> Config:
    if not cluster_config_file:
        cluster_config_file = "./cluster.yaml"
    cluster_config_file = os.path.abspath(os.path.expanduser(cluster_config_file))
    if not os.path.exists(cluster_config_file):
        logger.error(f"The cluster config file {cluster_config_file} does not exist.")
        raise typer.Exit(1)

    with open(cluster_config_file, "r") as file:
        return parse_yaml(file.read())


def build_context(
    state_backend: Optional[str] = None, backend_region: Optional[str] = None
) -> Context:
    """
    Builds the process context from the environment, with command line options
    taking precedence.
    """
    ctx = Context.from_env()
    if state_backend:
        ctx.state_backend = state_backend
    if backend_region:
        ctx.backend_region = backend_region
    return ctx


def load_backend(ctx: Context) -> StateBackend:
    backend = new_backend(
        ctx.state_backend,
        ctx.backend_region,
        session=ctx.session(ctx.backend_region),
    )
    backend.initialize()
    return backend


def render_state(state: ClusterState, output: str) -> str:
    if output == "json":
        return state.model_dump_json(indent=2)
    if output == "yaml":
        return to_yaml(state.model_dump(mode="json", exclude_none=True))

    config = state.config
    status = state.status
    rows = [
        ["Name", config.name],
        ["Provider", config.provider],
        ["Region", config.region],
        ["Kubernetes", config.k8sVersion],
        ["Phase", status.phase.value],
        ["Ready", "yes" if status.ready else "no"],
        ["Endpoint", status.endpoint or "-"],
        ["Nodes", f"{status.nodesReady}/{status.nodesTotal}"],
        ["Message", status.message or "-"],
        ["Updated", status.updatedAt.isoformat()],
    ]
    return tabulate(rows, tablefmt="plain")


def render_summaries(summaries: List[ClusterSummary], output: str) -> str:
    if output == "json":
        return json.dumps([s.model_dump(mode="json") for s in summaries], indent=2)
    if output == "yaml":
        return to_yaml([s.model_dump(mode="json") for s in summaries])

    table = [
        [
            s.name,
            s.provider,
            s.region,
            s.status.phase.value,
            s.nodeCount,
            s.k8sVersion,
            s.environment,
        ]
        for s in summaries
    ]
    return tabulate(
        table,
        headers=["Name", "Provider", "Region", "Phase", "Nodes", "Kubernetes", "Env"],
    )


def render_teardown_failures(report: TeardownReport) -> str:
    """
    Renders the resources a destroy left behind, for manual cleanup.
    """
    table = [
        [step.resource, step.resource_id, step.error or "-"] for step in report.failures
    ]
    return "Resources left behind:\n" + tabulate(
        table, headers=["Resource", "ID", "Error"]
    )


def check_output_format(output: str) -> str:
    if output not in OUTPUT_FORMATS:
        logger.error(f"Unknown output format {output}. Expected one of {OUTPUT_FORMATS}")
        raise typer.Exit(1)
    return output
