"""
BeliefMesh CLI - main entry point.

Commands:
- decompose: Decompose a scenario's submissions without writing anything
- process: Run a scenario through one full epoch
"""

import logging

import click

from beliefmesh import __version__
from beliefmesh.cli.epoch_cli import decompose, process


@click.group()
@click.version_option(version=__version__, prog_name="beliefmesh")
@click.option("-v", "--verbose", count=True, help="Log pipeline stages (-v) or everything (-vv).")
def app(verbose: int):
    """BeliefMesh - consensus core for belief markets.

    Decomposition, truth-serum scoring and zero-sum stake redistribution
    over scenario files.
    """
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


app.add_command(decompose)
app.add_command(process)


def main():
    """Run the CLI."""
    app()


if __name__ == "__main__":
    main()
