"""
The human host population.

Hosts are a fixed cohort in a ``LaserFrame``: ages are sampled once from an age pyramid and then
advance with the clock. There are no births or deaths. Each host carries its availability to
mosquitoes (an age-dependent body-surface factor times a gamma distributed heterogeneity factor),
vaccine efficacy factors, the EIR it received on the current step and its cumulative EIR.

The ``Humans`` component converts the EIR delivered by the transmission model into new infections
and hands them to the within-host model.
"""

import matplotlib.pyplot as plt
import numpy as np
from laser.core.demographics import AliasedDistribution

from laser.malaria.checkpoint import read_frame
from laser.malaria.checkpoint import write_frame
from laser.malaria.params import DAYS_PER_YEAR
from laser.malaria.params import days_per_step
from laser.malaria.utils import validate

__all__ = ["AVAILABILITY_AGES", "AVAILABILITY_BY_AGE", "Humans", "age_availability", "default_pyramid"]

# Body surface area (m^2) by age, relative to a 20 year old: availability to mosquitoes scales with
# the exposed skin area.
AVAILABILITY_AGES = np.arange(21, dtype=np.float64)
AVAILABILITY_BY_AGE = (
    np.array(
        [0.20, 0.45, 0.55, 0.62, 0.68, 0.75, 0.81, 0.87, 0.93, 1.00, 1.07,
         1.14, 1.23, 1.33, 1.43, 1.52, 1.59, 1.65, 1.69, 1.72, 1.73],
        dtype=np.float64,
    )
    / 1.73
)  # fmt: skip


def age_availability(age_years):
    """Relative availability to mosquitoes by age in years; 1.0 for adults (20 years and older)."""
    return np.interp(age_years, AVAILABILITY_AGES, AVAILABILITY_BY_AGE)


def default_pyramid(max_age: int = 90, mean_age: float = 25.0) -> np.ndarray:
    """Relative number of people by year of age for a young, exponentially declining population."""
    return np.exp(-np.arange(max_age, dtype=np.float64) / mean_age)


class Humans:
    """
    Host population component.

    Adds these properties to ``model.people``:

    - ``dob``: step of birth (negative for the initial cohort)
    - ``age_years``: age at the current step
    - ``avail_het``: availability heterogeneity factor (mean 1)
    - ``availability``: relative availability to mosquitoes (age factor times heterogeneity)
    - ``pev_factor``, ``bsv_factor``, ``tbv_factor``: remaining fraction after pre-erythrocytic,
      blood-stage and transmission-blocking vaccines (1 means no vaccine)
    - ``eir``: EIR received on the current step
    - ``cum_eir``: cumulative EIR received
    """

    FRAME_FIELDS = ("dob", "avail_het", "pev_factor", "bsv_factor", "tbv_factor", "eir", "cum_eir")

    def __init__(self, model):
        self.model = model
        params = model.params
        people = model.people
        self.days_per_step = days_per_step(params)

        people.add_scalar_property("dob", dtype=np.int32, default=0)
        people.add_scalar_property("age_years", dtype=np.float64, default=0.0)
        people.add_scalar_property("avail_het", dtype=np.float64, default=1.0)
        people.add_scalar_property("availability", dtype=np.float64, default=0.0)
        people.add_scalar_property("pev_factor", dtype=np.float32, default=1.0)
        people.add_scalar_property("bsv_factor", dtype=np.float32, default=1.0)
        people.add_scalar_property("tbv_factor", dtype=np.float32, default=1.0)
        people.add_scalar_property("eir", dtype=np.float64, default=0.0)
        people.add_scalar_property("cum_eir", dtype=np.float64, default=0.0)

        count = people.count
        weights = np.asarray(params.age_pyramid if params.age_pyramid is not None else default_pyramid(), dtype=np.float64)
        # AliasedDistribution expects integer counts
        pyramid = AliasedDistribution(np.round(weights / weights.max() * 100_000).astype(np.int32))
        years = np.atleast_1d(pyramid.sample(count)).astype(np.int32)
        days = years * DAYS_PER_YEAR + model.prng.integers(0, DAYS_PER_YEAR, size=count)
        people.dob[:count] = -(days // self.days_per_step)
        people.age_years[:count] = -people.dob[:count] * self.days_per_step / DAYS_PER_YEAR

        if params.avail_het_shape > 0.0:
            shape = float(params.avail_het_shape)
            people.avail_het[:count] = model.prng.gamma(shape, 1.0 / shape, size=count)
        people.availability[:count] = age_availability(people.age_years[:count]) * people.avail_het[:count]

        self.incidence = []

        return

    def update_ages(self, tick: int) -> None:
        """Set ``age_years`` and ``availability`` for the start of step ``tick``."""
        people = self.model.people
        count = people.count
        people.age_years[:count] = (tick - people.dob[:count]) * self.days_per_step / DAYS_PER_YEAR
        people.availability[:count] = age_availability(people.age_years[:count]) * people.avail_het[:count]

        return

    def expected_infections(self) -> np.ndarray:
        """
        Expected number of new infections per host for the EIR received this step.

        The probability that an infectious bite infects falls with the EIR of the step (saturating
        bites) and with cumulative exposure (acquired pre-erythrocytic immunity).
        """
        params = self.model.params
        people = self.model.people
        count = people.count
        eir = people.eir[:count]
        p_bite = params.s_inf + (1.0 - params.s_inf) / (1.0 + eir / params.e_star)
        p_immune = params.s_imm + (1.0 - params.s_imm) / (1.0 + np.power(people.cum_eir[:count] / params.x_star_p, params.gamma_p))

        return eir * p_bite * p_immune * people.pev_factor[:count]

    def prevalidate_step(self, tick: int) -> None:
        count = self.model.people.count
        assert np.all(self.model.people.eir[:count] >= 0.0), "EIR must be non-negative"

        return

    def postvalidate_step(self, tick: int) -> None:
        count = self.model.people.count
        assert np.all(np.isfinite(self.model.people.cum_eir[:count])), "cumulative EIR must be finite"

        return

    @validate(pre=prevalidate_step, post=postvalidate_step)
    def step(self, tick: int) -> None:
        people = self.model.people
        count = people.count

        expected = self.expected_infections()
        ninfections = self.model.prng.poisson(expected).astype(np.int32)
        people.cum_eir[:count] += people.eir[:count]

        self.model.withinhost.add_infections_all(ninfections, tick)
        self.incidence.append((tick, ninfections.sum()))

        return

    def serialize(self, stream) -> None:
        write_frame(stream, self.model.people, self.FRAME_FIELDS)

        return

    def deserialize(self, stream) -> None:
        read_frame(stream, self.model.people, self.FRAME_FIELDS)

        return

    def plot(self):
        _fig, ax1 = plt.subplots()
        ax1.hist(self.model.people.age_years[: self.model.people.count], bins=90)
        ax1.set_xlabel("Age (years)")
        ax1.set_ylabel("Hosts")
        ax1.set_title("Host Age Distribution")

        yield

        if len(self.incidence) > 0:
            _fig, ax1 = plt.subplots()
            ticks, counts = zip(*self.incidence)
            ax1.plot(ticks, counts)
            ax1.set_xlabel("Tick")
            ax1.set_ylabel("New Infections")
            ax1.set_title("Infection Incidence over Time")

            yield

        return
