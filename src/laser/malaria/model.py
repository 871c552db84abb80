"""
This module defines the `Model` class for agent-based malaria transmission simulations.

A model is a fixed cohort of hosts (`people`, a LaserFrame) and three components that are stepped
in order every time step:

1. `TransmissionModel`: advances the mosquito populations and delivers EIR to every host.
2. `Humans`: converts EIR into new infections.
3. `DescriptiveWithinHost`: advances infections and derives each host's infectiousness.

after which `TransmissionModel.update()` aggregates kappa (the synchronisation point of a step).

`run()` first runs the warm-up with forced EIR for as long as the transmission model asks
(equilibration of the vector model), then `nticks` steps of intervention period with surveys.

**Imports:**
- datetime: For timestamps of model creation and runs.
- click: For command-line friendly status messages.
- numpy as np: For numerical operations.
- pandas as pd: For survey and reporting tables.
- laser.core.laserframe: Provides the LaserFrame class for agent properties.
- laser.core.propertyset: Provides the PropertySet class for simulation parameters.
- laser.core.random: Provides random number generator seeding utilities.
- matplotlib: For plotting results.
- tqdm: For progress bar visualization during runs.
"""

import time
from datetime import datetime

import click
import numpy as np
import pandas as pd
from laser.core.laserframe import LaserFrame
from laser.core.propertyset import PropertySet
from laser.core.random import seed as seed_prng
from matplotlib import pyplot as plt
from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure
from tqdm import tqdm

from laser.malaria.checkpoint import read_generator
from laser.malaria.checkpoint import read_state
from laser.malaria.checkpoint import write_generator
from laser.malaria.checkpoint import write_state
from laser.malaria.humans import Humans
from laser.malaria.params import validate_parameters
from laser.malaria.reporting import ContinuousReporter
from laser.malaria.transmission import TransmissionModel
from laser.malaria.utils import TimingStats
from laser.malaria.withinhost import DescriptiveWithinHost

__all__ = ["Model"]


class Model:
    """
    A LASER simulation model for malaria transmission.

    Typical usage:
    ```python
    params = get_default_parameters() | {"seed": 20240521, "population": 2_000, "nticks": 730}
    model = Model(params)
    model.run()
    print(model.surveys)
    model.visualize(pdf=True)
    ```
    """

    CHECKPOINT_FIELDS = ("tick", "intervention_start")

    def __init__(self, parameters: PropertySet, name: str = "malaria") -> None:
        """
        Initialize the model with simulation parameters.

        Parameters
        ----------
        parameters : PropertySet
            Simulation parameters, usually `get_default_parameters()` with overrides.
        name : str, optional
            Name of the model. Default is "malaria".

        Raises
        ------
        ConfigurationError
            If any parameter is invalid.
        """
        self.tinit = datetime.now(tz=None)  # noqa: DTZ005
        click.echo(f"{self.tinit}: Creating the {name} model…")
        validate_parameters(parameters)
        self.params = parameters
        self.name = name
        self.validating = False

        self.prng = seed_prng(parameters.seed if parameters.seed is not None else self.tinit.microsecond)

        population = int(parameters.population)
        self.people = LaserFrame(capacity=max(population, 1), initial_count=population)

        self.humans = Humans(self)
        self.withinhost = DescriptiveWithinHost(self)
        self.transmission = TransmissionModel(self)
        self.transmission.init2()
        self.components = [self.transmission, self.humans, self.withinhost]

        self.reporter = ContinuousReporter(parameters.continuous_period)
        self.transmission.register_reporting(self.reporter)
        self.reporter.register("patent hosts", lambda now: int(self.patent_hosts()))

        self.tick = 0
        self.intervention_start = -1
        self.surveys = pd.DataFrame()
        self._surveys = []
        self.metrics = []

        click.echo(f"Initialized the {name} model with {population:,} hosts ({parameters.ento_model} transmission).")

        return

    def step(self, tick: int) -> None:
        """Run every component for step `tick`, then aggregate kappa."""
        timing = [tick]
        for component in self.components:
            label = type(component).__name__
            tstart = time.perf_counter_ns()
            with TimingStats.start(label):
                component.step(tick)
            timing.append((time.perf_counter_ns() - tstart) // 1_000)

        tstart = time.perf_counter_ns()
        with TimingStats.start("kappa"):
            self.transmission.update(tick)
        timing.append((time.perf_counter_ns() - tstart) // 1_000)
        self.metrics.append(timing)

        self.reporter.record(tick + 1)
        self.tick = tick + 1

        return

    def _advance(self, nsteps: int, description: str) -> None:
        for tick in tqdm(range(self.tick, self.tick + nsteps), desc=description, disable=not self.params.verbose):
            self.step(tick)
            if self.intervention_start >= 0 and (tick + 1 - self.intervention_start) % self.params.survey_period == 0:
                self.survey(tick)

        return

    def equilibrate(self) -> None:
        """Run the forced-EIR warm-up until the transmission model is initialised."""
        nsteps = self.transmission.init_iterate(self.tick)
        while nsteps > 0:
            self._advance(nsteps, "warm-up")
            nsteps = self.transmission.init_iterate(self.tick)
            if self.params.verbose:
                click.echo(
                    f"Initialisation check at step {self.tick}: "
                    f"{'done' if nsteps == 0 else f'iteration {self.transmission.init_iterations}, {nsteps} more steps'}"
                )

        return

    def run(self) -> None:
        """
        Execute the model simulation.

        Runs the warm-up (`equilibrate()`), then `params.nticks` steps of intervention period.
        A survey is taken every `params.survey_period` steps of the intervention period.

        Attributes Set
        --------------
        tstart : datetime
            Start time of execution.
        tfinish : datetime
            End time of execution.
        intervention_start : int
            First step of the intervention period.
        surveys : pd.DataFrame
            One row per survey.
        """
        self.tstart = datetime.now(tz=None)  # noqa: DTZ005
        click.echo(f"{self.tstart}: Running the {self.name} model…")

        with TimingStats.start("warm-up"):
            self.equilibrate()
        click.echo(f"Transmission initialised after {self.tick:,} steps ({self.transmission.simulation_mode.name}).")

        self.start_intervention_period()
        with TimingStats.start("intervention period"):
            self._advance(self.params.nticks, "intervention")

        self.tfinish = datetime.now(tz=None)  # noqa: DTZ005
        click.echo(f"Completed the {self.name} model at {self.tfinish}…")

        if self.params.verbose:
            names = [type(component).__name__ for component in self.components] + ["kappa"]
            metrics = pd.DataFrame(self.metrics, columns=["tick", *names])
            sum_columns = metrics[names].sum()
            width = max(map(len, sum_columns.index))
            for key in sum_columns.index:
                click.echo(f"{key:{width}}: {sum_columns[key]:13,} µs")
            click.echo("=" * (width + 2 + 13 + 3))
            click.echo(f"{'Total:':{width + 1}} {sum_columns.sum():13,} microseconds")

        return

    def start_intervention_period(self) -> None:
        self.intervention_start = self.tick
        self.transmission.reset_survey(self.tick)

        return

    def patent_hosts(self) -> int:
        count = self.people.count
        return int(np.count_nonzero(self.people.total_density[:count] > self.params.detection_limit))

    def survey(self, tick: int) -> dict:
        """Record survey statistics for the interval ending with step `tick`."""
        count = self.people.count
        summary = {"tick": tick, "year": (tick + 1 - self.intervention_start) / self.params.steps_per_year}
        summary.update(self.transmission.summarize(tick))
        summary["prevalence"] = self.patent_hosts() / count if count > 0 else np.nan
        summary["mean infections"] = self.people.ninfs[:count].mean() if count > 0 else np.nan
        summary["rejected infections"] = self.withinhost.rejected_infections
        self._surveys.append(summary)
        self.surveys = pd.DataFrame(self._surveys)

        return summary

    @property
    def continuous(self) -> pd.DataFrame:
        return self.reporter.to_dataframe()

    # -----  checkpointing  -----

    def save(self, stream) -> None:
        """Write the model state to a binary stream (e.g. `open(path, "wb")` or `io.BytesIO()`)."""
        write_state(stream, self, self.CHECKPOINT_FIELDS)
        write_generator(stream, self.prng)
        self.transmission.serialize(stream)
        self.humans.serialize(stream)
        self.withinhost.serialize(stream)

        return

    def load(self, stream) -> None:
        """Restore state written by `save()` into a model built with the same parameters."""
        read_state(stream, self, self.CHECKPOINT_FIELDS)
        read_generator(stream, self.prng)
        self.transmission.deserialize(stream)
        self.humans.deserialize(stream)
        self.withinhost.deserialize(stream)

        return

    # -----  visualization  -----

    def visualize(self, pdf: bool = True) -> None:
        """
        Generate visualizations for the model and all components.

        Parameters
        ----------
        pdf : bool, optional
            If True (default), save plots to a PDF file named "<model name> <timestamp>.pdf".
            If False, display plots interactively with `plt.show()`.
        """
        instances = [self, *self.components, self.reporter]
        if not pdf:
            for instance in instances:
                for _plot in instance.plot():
                    plt.show()

        else:
            click.echo("Generating PDF output…")
            pdf_filename = f"{self.name} {self.tstart:%Y-%m-%d %H%M%S}.pdf"
            with PdfPages(pdf_filename) as pdf:
                for instance in instances:
                    for _plot in instance.plot():
                        pdf.savefig()
                        plt.close()

            click.echo(f"PDF output saved to '{pdf_filename}'.")

        return

    def plot(self, fig: Figure = None):
        """
        Yield the survey time series and a pie chart of component update times.

        Parameters
        ----------
        fig : Figure, optional
            An existing matplotlib Figure. If None, a new figure is created.
        """
        if len(self.surveys) > 0:
            _fig = plt.figure(figsize=(12, 9), dpi=128) if fig is None else fig
            _fig.suptitle("Surveys")
            ax1 = plt.gca()
            ax1.plot(self.surveys["year"], self.surveys["prevalence"], label="Prevalence")
            ax1.set_xlabel("Year of Intervention Period")
            ax1.set_ylabel("Prevalence (patent)")
            ax2 = ax1.twinx()
            ax2.plot(self.surveys["year"], self.surveys["simulated EIR"], color="tab:red", linestyle="--", label="Simulated EIR")
            ax2.set_ylabel("Simulated EIR (per step)")

            yield

        if len(self.metrics) > 0:
            _fig = plt.figure(figsize=(12, 9), dpi=128) if fig is None else fig
            names = [type(component).__name__ for component in self.components] + ["kappa"]
            metrics = pd.DataFrame(self.metrics, columns=["tick", *names])
            sum_columns = metrics[names].sum()

            plt.pie(sum_columns, labels=sum_columns.index, autopct="%1.1f%%", startangle=140)
            plt.title("Update Phase Times")

            yield

        return
