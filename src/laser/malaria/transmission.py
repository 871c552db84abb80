"""
The transmission model: EIR delivery, kappa aggregation and the initialisation state machine.

``TransmissionModel`` closes the loop between hosts and mosquitoes. Each step it advances the
mosquito populations with the kappa (human infectiousness) of ``L = eip_steps + 1`` steps ago, gives
every host its EIR, and, after the within-host update, aggregates the hosts' probability of
infecting a mosquito into this step's kappa.

The EIR calculation is a strategy chosen once from ``params.ento_model``:

- ``VectorTransmission``: dynamic EIR from the simulated infectious mosquitoes of every species.
- ``NonVectorTransmission``: dynamic EIR is the input EIR scaled by lagged kappa relative to its
  annual average; the input EIR can be replaced by an explicit series (``change_eir``).

The simulation starts in ``FORCED_EIR`` (hosts receive the input EIR) and switches to the
intervention mode once ``init_iterate`` reports that the vector model reproduces the input EIR.
"""

import math
import warnings
from enum import IntEnum

import matplotlib.pyplot as plt
import numba as nb
import numpy as np

from laser.malaria.anopheles import create_species
from laser.malaria.checkpoint import read_state
from laser.malaria.checkpoint import write_state
from laser.malaria.errors import ConfigurationError
from laser.malaria.errors import SimulationStateError
from laser.malaria.humans import age_availability
from laser.malaria.params import days_per_step
from laser.malaria.params import forced_eir_daily
from laser.malaria.params import species_parameters
from laser.malaria.ringbuffer import RingBuffer
from laser.malaria.utils import validate

__all__ = ["NonVectorTransmission", "SimulationMode", "TransmissionModel", "VectorTransmission", "read_mode"]

# smallest aggregate availability accepted for a nonempty population
MIN_SUM_WEIGHT = np.finfo(np.float64).tiny * 10.0


class SimulationMode(IntEnum):
    PRE_INIT = 0
    FORCED_EIR = 1
    TRANSIENT_EIR_KNOWN = 2
    DYNAMIC_EIR = 3


def read_mode(mode: str) -> SimulationMode:
    """Parse the intervention-period EIR mode: "forced" or "dynamic"."""
    modes = {"forced": SimulationMode.FORCED_EIR, "dynamic": SimulationMode.DYNAMIC_EIR}
    if mode not in modes:
        raise ConfigurationError(f"mode: expected 'forced' or 'dynamic' (got {mode!r})")

    return modes[mode]


@nb.njit(nogil=True, parallel=True, cache=True)
def nb_deliver_eir(availability, age_years, adult_age, base_eir, eir):
    adult_inocs = 0.0
    nadults = 0
    for i in nb.prange(len(availability)):
        eir[i] = base_eir * availability[i]
        if age_years[i] >= adult_age:
            adult_inocs += eir[i]
            nadults += 1

    return adult_inocs, nadults


@nb.njit(nogil=True, parallel=True, cache=True)
def nb_kappa_sums(availability, p_transmit):
    sum_weight = 0.0
    sum_wt_kappa = 0.0
    ntransmitting = 0
    for i in nb.prange(len(availability)):
        risk = availability[i] * p_transmit[i]
        sum_weight += availability[i]
        sum_wt_kappa += risk
        if risk > 0.0:
            ntransmitting += 1

    return sum_weight, sum_wt_kappa, ntransmitting


class NonVectorTransmission:
    """EIR from the input EIR scaled by relative human infectiousness."""

    CHECKPOINT_FIELDS = ("transient_eir", "transient_start")

    def __init__(self, coordinator):
        self.coordinator = coordinator
        self.transient_eir = np.zeros(0, dtype=np.float64)
        self.transient_start = -1

        return

    def min_preinit_duration(self) -> int:
        # one year of kappa to finalise the annual average
        return self.coordinator.steps_per_year

    def expected_init_duration(self) -> int:
        return 0

    def init2(self, people) -> None:
        return

    def fit(self, tolerance: float) -> bool:
        return True

    def refit_duration(self) -> int:
        return 0

    def vector_update(self, tick: int, kappa_lagged: float, total_availability: float) -> None:
        return

    def dynamic_eir(self, tick: int, kappa_lagged: float) -> float:
        coordinator = self.coordinator
        if not (coordinator.annual_average_kappa > 0.0):
            raise SimulationStateError(f"annual average kappa is {coordinator.annual_average_kappa}; cannot scale the input EIR")
        tmod = tick % coordinator.steps_per_year
        return coordinator.initialisation_eir[tmod] * kappa_lagged / coordinator.annual_average_kappa

    def transient_eir_at(self, tick: int) -> float:
        offset = tick - self.transient_start
        if not (0 <= offset < len(self.transient_eir)):
            raise SimulationStateError(f"no input EIR for step {tick}: the changeEIR series covers {len(self.transient_eir)} steps")

        return float(self.transient_eir[offset])

    def change_eir(self, tick: int, eir_daily) -> None:
        dps = self.coordinator.days_per_step
        daily = np.asarray(eir_daily, dtype=np.float64)
        nsteps = len(daily) // dps
        if nsteps == 0 or np.any(daily < 0.0):
            raise ConfigurationError(f"changeEIR: need at least {dps} non-negative daily values (got {len(daily)})")
        self.transient_eir = daily[: nsteps * dps].reshape(nsteps, dps).sum(axis=1)
        self.transient_start = tick

        return

    def scale_eir(self, factor: float) -> None:
        self.transient_eir *= factor

        return

    def deploy_vector_pop_interv(self, tick: int, instance: int) -> None:
        raise ConfigurationError("vector population interventions need the vector transmission model")

    def deploy_vector_trap(self, tick: int, instance: int, pop_size: float, lifespan: int) -> None:
        raise ConfigurationError("vector traps need the vector transmission model")

    def scale_vectors(self, factor: float) -> None:
        raise ConfigurationError("scaling the mosquito population needs the vector transmission model")

    def uninfect_vectors(self) -> None:
        if self.coordinator.simulation_mode != SimulationMode.DYNAMIC_EIR:
            warnings.warn("uninfecting vectors has no effect while the EIR is forced", stacklevel=3)
        self.coordinator.lagged_kappa.fill(0.0)

        return

    def summarize(self, tick: int) -> dict:
        return {}

    def serialize(self, stream) -> None:
        write_state(stream, self, self.CHECKPOINT_FIELDS)

        return

    def deserialize(self, stream) -> None:
        read_state(stream, self, self.CHECKPOINT_FIELDS)

        return

    def plot(self):
        return
        yield


class VectorTransmission:
    """EIR from the simulated infectious host-seeking mosquitoes of every species."""

    def __init__(self, coordinator):
        self.coordinator = coordinator
        params = coordinator.model.params
        self.species = [
            create_species(sp, coordinator.steps_per_year, params.vector_pop_interventions, params.vector_traps)
            for sp in species_parameters(params)
        ]

        return

    def min_preinit_duration(self) -> int:
        # five years of mosquito data for the first fitting step
        return 5 * self.coordinator.steps_per_year

    def expected_init_duration(self) -> int:
        return self.refit_duration()

    def refit_duration(self) -> int:
        # a year to stabilise, then five years of data
        return 6 * self.coordinator.steps_per_year

    def init2(self, people) -> None:
        count = people.count
        total = float(people.availability[:count].sum())
        mean_pop_avail = total / count if count > 0 else 0.0
        daily = forced_eir_daily(self.coordinator.model.params) * self.coordinator.eir_scale
        for species in self.species:
            sum_avail, sigma_f, sigma_df, sigma_dff = species.host_aggregates(total)
            species.init2(count, mean_pop_avail, sum_avail, sigma_f, sigma_df, sigma_dff, daily)

        return

    def fit(self, tolerance: float) -> bool:
        fitted = True
        for species in self.species:
            fitted = species.init_iterate(tolerance) and fitted

        return fitted

    def vector_update(self, tick: int, kappa_lagged: float, total_availability: float) -> None:
        for species in self.species:
            species.host_aggregates(total_availability)
            species.advance(tick, kappa_lagged)

        return

    def dynamic_eir(self, tick: int, kappa_lagged: float) -> float:
        return sum(species.partial_eir for species in self.species)

    def transient_eir_at(self, tick: int) -> float:
        raise SimulationStateError("the vector transmission model has no transient EIR")

    def change_eir(self, tick: int, eir_daily) -> None:
        raise ConfigurationError("changeEIR can only be used with the non-vector transmission model")

    def scale_eir(self, factor: float) -> None:
        for species in self.species:
            species.scale_eir(factor)

        return

    def deploy_vector_pop_interv(self, tick: int, instance: int) -> None:
        for species in self.species:
            species.deploy_vector_pop_interv(tick, instance)

        return

    def deploy_vector_trap(self, tick: int, instance: int, pop_size: float, lifespan: int) -> None:
        for species in self.species:
            species.deploy_vector_trap(tick, instance, pop_size, lifespan)

        return

    def scale_vectors(self, factor: float) -> None:
        for species in self.species:
            species.scale(factor)

        return

    def uninfect_vectors(self) -> None:
        for species in self.species:
            species.uninfect()

        return

    def summarize(self, tick: int) -> dict:
        summary = {}
        for species in self.species:
            summary[f"{species.name} N_v"] = species.last_n_v
            summary[f"{species.name} S_v"] = species.last_s_v
            summary[f"{species.name} resource availability"] = species.get_res_availability(tick)
            summary[f"{species.name} resource requirements"] = species.get_res_requirements()

        return summary

    def serialize(self, stream) -> None:
        for species in self.species:
            species.serialize(stream)

        return

    def deserialize(self, stream) -> None:
        for species in self.species:
            species.deserialize(stream)

        return

    def plot(self):
        for species in self.species:
            yield from species.plot()

        return


class TransmissionModel:
    """
    Transmission component.

    ``step(tick)`` advances the mosquitoes and delivers EIR to every host (``people.eir``);
    ``update(tick)`` must be called after every host has been updated for the step and aggregates
    kappa. Requires the ``Humans`` and ``DescriptiveWithinHost`` components.
    """

    CHECKPOINT_FIELDS = (
        "simulation_mode",
        "intervention_mode",
        "initialisation_eir",
        "lagged_kappa",
        "annual_eir",
        "annual_average_kappa",
        "sum_annual_kappa",
        "ts_adult_eir",
        "survey_input_eir",
        "survey_simulated_eir",
        "last_survey_time",
        "num_transmitting_humans",
        "init_iterations",
        "eir_scale",
    )

    def __init__(self, model):
        self.model = model
        params = model.params

        self.simulation_mode = SimulationMode.PRE_INIT
        self.intervention_mode = read_mode(params.mode)

        self.steps_per_year = int(params.steps_per_year)
        self.days_per_step = days_per_step(params)
        self.eip_steps = int(params.eip_days) // self.days_per_step
        self.lagged_kappa = RingBuffer(self.eip_steps + 1)
        self.adult_age = float(params.adult_age_years)

        daily = forced_eir_daily(params)
        self.initialisation_eir = daily.reshape(self.steps_per_year, self.days_per_step).sum(axis=1)
        self.annual_eir = float(self.initialisation_eir.sum())
        self.eir_scale = 1.0

        self.annual_average_kappa = math.nan
        self.sum_annual_kappa = 0.0
        self.ts_adult_ento_inocs = 0.0
        self.ts_num_adults = 0
        self.ts_adult_eir = 0.0
        self.survey_input_eir = 0.0
        self.survey_simulated_eir = 0.0
        self.last_survey_time = 0
        self.num_transmitting_humans = 0
        self.init_iterations = 0
        self.max_init_iterations = int(params.max_init_iterations)
        self.init_tolerance = float(params.init_tolerance)
        self.current_base_eir = math.nan

        strategies = {"vector": VectorTransmission, "nonvector": NonVectorTransmission}
        if params.ento_model not in strategies:
            raise ConfigurationError(f"ento_model: expected 'vector' or 'nonvector' (got {params.ento_model!r})")
        self.strategy = strategies[params.ento_model](self)

        self.simulation_mode = SimulationMode.FORCED_EIR
        self.kappa_history = []

        return

    def init2(self) -> None:
        """Second initialisation phase for fresh starts, once hosts have ages and availability."""
        self.strategy.init2(self.model.people)

        return

    # -----  initialisation state machine  -----

    def min_preinit_duration(self) -> int:
        """Steps to run with forced EIR before the first call to ``init_iterate``."""
        if self.intervention_mode == SimulationMode.FORCED_EIR:
            return 0
        return self.strategy.min_preinit_duration()

    def expected_init_duration(self) -> int:
        """Extra steps ``init_iterate`` is expected to request; only used to estimate run time."""
        if self.intervention_mode == SimulationMode.FORCED_EIR:
            return 0
        return self.strategy.expected_init_duration()

    def init_iterate(self, tick: int) -> int:
        """
        Check whether transmission is initialised; switch to the intervention mode if so.

        Args:
            tick (int): Number of steps run so far.

        Returns:
            int: Steps to run before calling again; 0 once the intervention period can start.
        """
        if self.intervention_mode == SimulationMode.FORCED_EIR:
            return 0
        remaining = self.min_preinit_duration() - tick
        if remaining > 0:
            return remaining

        if self.strategy.fit(self.init_tolerance):
            self.simulation_mode = self.intervention_mode
            return 0

        self.init_iterations += 1
        if self.init_iterations > self.max_init_iterations:
            raise SimulationStateError(f"transmission initialisation did not converge in {self.max_init_iterations} iterations")

        return self.strategy.refit_duration()

    # -----  per step  -----

    def base_eir(self, tick: int) -> float:
        """EIR per unit of relative host availability for step ``tick`` in the current mode."""
        tmod = tick % self.steps_per_year
        if self.simulation_mode == SimulationMode.FORCED_EIR:
            return float(self.initialisation_eir[tmod])
        if self.simulation_mode == SimulationMode.TRANSIENT_EIR_KNOWN:
            return self.strategy.transient_eir_at(tick)
        if self.simulation_mode == SimulationMode.DYNAMIC_EIR:
            return float(self.strategy.dynamic_eir(tick, self.lagged_kappa[tick]))

        raise SimulationStateError("EIR requested before transmission was initialised")

    def get_eir(self, index: int, age_steps: int, age_years: float) -> tuple:
        """
        EIR for host ``index`` this step.

        Returns:
            tuple: ``(per_genotype_eir, total_eir)``; there is a single genotype.
        """
        if self.simulation_mode == SimulationMode.PRE_INIT:
            raise SimulationStateError("EIR requested before transmission was initialised")
        eir = self.current_base_eir * age_availability(age_years) * self.model.people.avail_het[index]
        if age_years >= self.adult_age:
            self.ts_adult_ento_inocs += eir
            self.ts_num_adults += 1

        return np.array([eir]), eir

    def prevalidate_step(self, tick: int) -> None:
        assert self.simulation_mode != SimulationMode.PRE_INIT, "transmission not initialised"

        return

    def postvalidate_step(self, tick: int) -> None:
        count = self.model.people.count
        assert np.all(self.model.people.eir[:count] >= 0.0), "EIR must be non-negative"

        return

    @validate(pre=prevalidate_step, post=postvalidate_step)
    def step(self, tick: int) -> None:
        people = self.model.people
        count = people.count
        self.model.humans.update_ages(tick)
        total_availability = float(people.availability[:count].sum())

        # kappa from L steps ago: this step's slot is only overwritten in update()
        self.strategy.vector_update(tick, self.lagged_kappa[tick], total_availability)

        self.current_base_eir = self.base_eir(tick)
        adult_inocs, nadults = nb_deliver_eir(
            people.availability[:count], people.age_years[:count], self.adult_age, self.current_base_eir, people.eir[:count]
        )
        self.ts_adult_ento_inocs += adult_inocs
        self.ts_num_adults += nadults

        return

    def update_kappa(self, people, tick: int) -> float:
        """
        Aggregate the hosts' infectiousness into kappa for step ``tick``.

        kappa is the availability weighted mean of ``p_transmit``; 0 for an empty population.

        Raises:
            SimulationStateError: A nonempty population has no (or invalid) aggregate availability.
        """
        count = people.count
        sum_weight, sum_wt_kappa, ntransmitting = nb_kappa_sums(people.availability[:count], people.p_transmit[:count])
        self.num_transmitting_humans = int(ntransmitting)
        if count == 0:
            kappa = 0.0
        else:
            if not (sum_weight > MIN_SUM_WEIGHT):
                raise SimulationStateError(f"sum of host availability is invalid: {sum_weight}, {sum_wt_kappa}, {count}")
            kappa = sum_wt_kappa / sum_weight
        self.lagged_kappa[tick] = kappa

        tmod = tick % self.steps_per_year
        self.sum_annual_kappa += kappa * self.initialisation_eir[tmod]
        if tmod == self.steps_per_year - 1:
            # inf or NaN when the annual EIR is zero
            with np.errstate(divide="ignore", invalid="ignore"):
                self.annual_average_kappa = float(np.float64(self.sum_annual_kappa) / np.float64(self.annual_eir))
            self.sum_annual_kappa = 0.0

        self.ts_adult_eir = self.ts_adult_ento_inocs / self.ts_num_adults if self.ts_num_adults > 0 else math.nan
        self.ts_adult_ento_inocs = 0.0
        self.ts_num_adults = 0
        self.survey_input_eir += self.initialisation_eir[tmod]
        self.survey_simulated_eir += self.ts_adult_eir

        return kappa

    def update(self, tick: int) -> None:
        kappa = self.update_kappa(self.model.people, tick)
        self.kappa_history.append((tick, kappa, self.ts_adult_eir))

        return

    # -----  reporting  -----

    def summarize(self, tick: int) -> dict:
        """
        Survey statistics since the previous survey; resets the survey accumulators.

        Args:
            tick (int): The last step completed.
        """
        duration = tick + 1 - self.last_survey_time
        summary = {
            "kappa": float(self.lagged_kappa[tick]),
            "annual average kappa": self.annual_average_kappa,
            "input EIR": math.nan,
            "simulated EIR": math.nan,
        }
        if duration > 0:
            summary["input EIR"] = self.survey_input_eir / duration
            summary["simulated EIR"] = self.survey_simulated_eir / duration
        else:
            warnings.warn(f"survey requested twice for step {tick}", stacklevel=2)
        summary.update(self.strategy.summarize(tick))

        self.survey_input_eir = 0.0
        self.survey_simulated_eir = 0.0
        self.last_survey_time = tick + 1

        return summary

    def reset_survey(self, tick: int) -> None:
        """Start a new survey interval at step ``tick`` without reporting."""
        self.survey_input_eir = 0.0
        self.survey_simulated_eir = 0.0
        self.last_survey_time = tick

        return

    def register_reporting(self, reporter) -> None:
        """Register the continuous reporting taps; callbacks receive the number of steps completed."""
        reporter.register("input EIR", lambda now: float(self.initialisation_eir[(now - 1) % self.steps_per_year]))
        reporter.register("simulated EIR", lambda now: self.ts_adult_eir)
        reporter.register("human infectiousness", lambda now: float(self.lagged_kappa[now - 1]))
        reporter.register("num transmitting humans", lambda now: self.num_transmitting_humans)

        return

    # -----  interventions  -----

    def scale_eir(self, tick: int, factor: float) -> None:
        """Scale the input EIR (and the vector model's target) by ``factor``."""
        self.initialisation_eir *= factor
        self.annual_eir *= factor
        self.eir_scale *= factor
        self.strategy.scale_eir(factor)

        return

    def change_eir(self, tick: int, eir_daily) -> None:
        """Replace the input EIR from ``tick`` on with an explicit daily series (non-vector only)."""
        self.strategy.change_eir(tick, eir_daily)
        self.simulation_mode = SimulationMode.TRANSIENT_EIR_KNOWN

        return

    def deploy_vector_pop_interv(self, tick: int, instance: int) -> None:
        self.strategy.deploy_vector_pop_interv(tick, instance)

        return

    def deploy_vector_trap(self, tick: int, instance: int, pop_size: float, lifespan: int) -> None:
        if not (pop_size > 0.0) or not (lifespan > 0):
            warnings.warn(f"ignoring vector trap deployment with size {pop_size} and lifespan {lifespan}", stacklevel=2)
            return
        self.strategy.deploy_vector_trap(tick, instance, pop_size, lifespan)

        return

    def uninfect_vectors(self, tick: int) -> None:
        self.strategy.uninfect_vectors()

        return

    def scale_vectors(self, tick: int, factor: float) -> None:
        """Scale the size of every mosquito population (emergence and current state) by ``factor``."""
        if not (factor >= 0.0):
            raise ConfigurationError(f"vector scale factor must be non-negative (got {factor})")
        self.strategy.scale_vectors(factor)

        return

    # -----  checkpointing  -----

    def serialize(self, stream) -> None:
        write_state(stream, self, self.CHECKPOINT_FIELDS)
        self.strategy.serialize(stream)

        return

    def deserialize(self, stream) -> None:
        read_state(stream, self, self.CHECKPOINT_FIELDS)
        self.strategy.deserialize(stream)

        return

    def plot(self):
        if len(self.kappa_history) > 0:
            ticks, kappas, adult_eirs = zip(*self.kappa_history)
            _fig, ax1 = plt.subplots()
            ax1.plot(ticks, kappas, color="tab:blue", label="kappa")
            ax1.set_xlabel("Tick")
            ax1.set_ylabel("Human Infectiousness (kappa)")
            ax2 = ax1.twinx()
            ax2.plot(ticks, adult_eirs, color="tab:red", linestyle="--", label="adult EIR")
            ax2.set_ylabel("Adult EIR (per step)")
            ax1.set_title("Human Infectiousness and Simulated EIR over Time")

            yield

        yield from self.strategy.plot()

        return
