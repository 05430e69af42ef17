import typer

from cumulus import __version__
from cumulus.cli.cluster import cluster_app
from cumulus.cli.kubeconfig import kube_app
from cumulus.logger import setup_logger


def version_callback(version: bool) -> None:
    if version:
        typer.echo(f"Cumulus CLI Version: {__version__}")
        raise typer.Exit()


cli = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@cli.callback()
def main_options(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    setup_logger(verbose)


cli.add_typer(cluster_app, name="cluster", help="Manage clusters.")

cli.add_typer(kube_app, name="kubeconfig", help="Export kubeconfig.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
