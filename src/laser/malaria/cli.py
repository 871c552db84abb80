"""
Command line entry point: ``laser-malaria``.

    laser-malaria --params scenario.json --nticks 730 --seed 42 -p annual_eir=50 -p ento_model=nonvector

Parameters are resolved in order: defaults, then the JSON file given with ``--params``, then the
command line options, then ``--param`` overrides (``name=value`` or ``name:value``, cast to the
type of the default).
"""

import json
import re
from pathlib import Path

import click
from laser.core.propertyset import PropertySet

from laser.malaria.model import Model
from laser.malaria.params import get_default_parameters
from laser.malaria.utils import TimingStats


def get_parameters(kwargs) -> PropertySet:
    """
    Build the simulation parameters from the command line arguments.

    Args:
        kwargs (dict): The command line arguments.

    Returns:
        PropertySet: Default parameters with the overrides applied.
    """
    params = get_default_parameters()

    if kwargs.get("params") is not None:
        with Path(kwargs["params"]).open() as file:
            overrides = json.load(file)
        click.echo(f"Loading {len(overrides)} parameter(s) from `{kwargs['params']}`…")
        params = params | overrides

    for key in ("nticks", "seed", "verbose"):
        if kwargs.get(key) is not None:
            params[key] = kwargs[key]

    for kvp in kwargs.get("param", ()):
        key, value = re.split("[=:]+", kvp, maxsplit=1)
        if key not in params:
            click.echo(f"Unknown parameter `{key}` ({value=}). Skipping…")
            continue
        default = params[key]
        if isinstance(default, bool):
            value = value.lower() in ("1", "true", "yes")
        elif isinstance(default, (int, float)):
            value = type(default)(value)
        elif default is None or isinstance(default, list):
            value = json.loads(value)
        click.echo(f"Using `{value}` for parameter `{key}` from the command line…")
        params[key] = value

    return params


@click.command()
@click.option("--params", "params", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON file of parameter overrides")
@click.option("--nticks", default=None, type=int, help="Number of intervention-period steps to run")
@click.option("--seed", default=None, type=int, help="Random seed")
@click.option("--verbose", is_flag=True, default=None, help="Print verbose output")
@click.option("--viz", is_flag=True, default=False, help="Display visualizations to help validate the model")
@click.option("--pdf", is_flag=True, help="Output visualization results as a PDF")
@click.option("--output", default=None, type=click.Path(dir_okay=False), help="CSV file for the survey results")
@click.option("--checkpoint", default=None, type=click.Path(dir_okay=False), help="Write the final model state to this file")
@click.option("--param", "-p", multiple=True, help="Additional parameter overrides (param:value or param=value)")
def run(**kwargs):
    """Run a malaria transmission simulation."""
    parameters = get_parameters(kwargs)
    model = Model(parameters)
    model.run()

    click.echo(model.surveys.to_string(index=False))
    if kwargs["output"] is not None:
        model.surveys.to_csv(kwargs["output"], index=False)
        click.echo(f"Survey results saved to '{kwargs['output']}'.")
    if kwargs["checkpoint"] is not None:
        with Path(kwargs["checkpoint"]).open("wb") as stream:
            model.save(stream)
        click.echo(f"Model state saved to '{kwargs['checkpoint']}'.")

    if parameters.verbose:
        TimingStats.freeze()
        click.echo(TimingStats.to_string(scale="ms"))

    if kwargs["viz"] or kwargs["pdf"]:
        model.visualize(pdf=kwargs["pdf"])

    return


def main():
    run()


if __name__ == "__main__":
    main()
