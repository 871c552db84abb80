"""
Mosquito population dynamics, one instance per species.

``AnophelesModel`` integrates the adult feeding-cycle difference equations one day at a time with a
fixed (periodic) emergence rate. ``SimpleMPDAnophelesModel`` replaces the fixed emergence with a
delayed, density-dependent larval model: emergence on day ``d`` depends on the number of mosquitoes
that oviposited ``development_duration`` days earlier and on the larval resources for the day of the
year.

Both models are initialised in two phases: the constructor validates and allocates, and ``init2``
(fresh starts only) derives a closed-form steady state from the forced EIR once the host aggregates
are known. ``init_iterate`` then refines the emergence target until the simulated infectious
mosquito population reproduces the forced EIR.
"""

import math

import matplotlib.pyplot as plt
import numpy as np
from laser.core.propertyset import PropertySet

from laser.malaria.checkpoint import read_state
from laser.malaria.checkpoint import write_state
from laser.malaria.errors import ConfigurationError
from laser.malaria.errors import SimulationStateError
from laser.malaria.params import DAYS_PER_YEAR
from laser.malaria.ringbuffer import RingBuffer

__all__ = ["AnophelesModel", "SimpleMPDAnophelesModel", "create_species", "inverse_resources"]

FIVE_YEARS = 5 * DAYS_PER_YEAR


class AnophelesModel:
    """
    Adult mosquito population of one species with a fixed, periodic emergence rate.

    Per day ``d``, with ``tau`` the resting duration::

        N_v[d] = E(d) + P_A N_v[d-1] + P_df N_v[d-tau]
        S_v[d] = P_A S_v[d-1] + P_df S_v[d-tau] + P_dif (N_v[d-tau] - S_v[d-tau])

    where ``P_A`` is the probability of a host-seeking mosquito neither feeding nor dying on a day,
    ``P_df`` the probability of feeding, resting and returning to seek, and ``P_dif`` the same for a
    mosquito that became infected at the feed (``P_df`` times the lagged kappa).
    """

    CHECKPOINT_FIELDS = (
        "mosq_emerge_rate",
        "forced_s_v",
        "n_v",
        "s_v",
        "quinquennial_s_v",
        "init_nv_from_sv",
        "eir_to_s_v",
        "emergence_reduction",
        "pop_interventions",
        "traps",
        "last_day",
        "sum_avail",
        "sigma_df",
        "fitted",
    )

    def __init__(self, params: PropertySet, steps_per_year: int, vector_pop_interventions=(), vector_traps=()) -> None:
        self.params = params
        self.name = params.name
        self.steps_per_year = int(steps_per_year)
        self.days_per_step = DAYS_PER_YEAR // self.steps_per_year

        self.rest_duration = int(params.mosq_rest_duration)
        if not (self.rest_duration > 0):
            raise ConfigurationError(f"{self.name}.mosq_rest_duration: must be positive (got {params.mosq_rest_duration})")
        if not (params.mosq_seeking_duration > 0.0):
            raise ConfigurationError(f"{self.name}.mosq_seeking_duration: must be positive (got {params.mosq_seeking_duration})")
        if not (params.mosq_seeking_death_rate >= 0.0):
            raise ConfigurationError(f"{self.name}.mosq_seeking_death_rate: must be non-negative (got {params.mosq_seeking_death_rate})")
        if not (params.ento_availability > 0.0):
            raise ConfigurationError(f"{self.name}.ento_availability: must be positive (got {params.ento_availability})")
        for key in ("prob_biting", "prob_find_rest_site", "prob_resting", "prob_ovipositing"):
            if not (0.0 <= params[key] <= 1.0):
                raise ConfigurationError(f"{self.name}.{key}: must be a probability in [0, 1] (got {params[key]})")
        if not (0.0 < params.prop_infectious <= 1.0):
            raise ConfigurationError(f"{self.name}.prop_infectious: must be in (0, 1] (got {params.prop_infectious})")

        self.seeking_duration = float(params.mosq_seeking_duration)
        self.seeking_death_rate = float(params.mosq_seeking_death_rate)
        self.ento_availability = float(params.ento_availability)
        self.p_b = float(params.prob_biting)
        self.p_c = float(params.prob_find_rest_site)
        self.p_d = float(params.prob_resting)
        self.p_e = float(params.prob_ovipositing)
        self.eir_fraction = float(params.eir_fraction)

        self.pop_intervention_params = list(vector_pop_interventions)
        self.trap_params = list(vector_traps)

        self.mosq_emerge_rate = np.zeros(DAYS_PER_YEAR, dtype=np.float64)
        self.forced_s_v = np.zeros(DAYS_PER_YEAR, dtype=np.float64)
        self.n_v = RingBuffer(self.rest_duration + 1)
        self.s_v = RingBuffer(self.rest_duration + 1)
        self.quinquennial_s_v = RingBuffer(FIVE_YEARS)
        self.init_nv_from_sv = 1.0 / float(params.prop_infectious)
        self.eir_to_s_v = 0.0

        # [reduction, deploy day, half life (days)] per vector population intervention instance
        self.pop_interventions = np.zeros((len(self.pop_intervention_params), 3), dtype=np.float64)
        self.pop_interventions[:, 1] = -1.0
        self.emergence_reduction = 0.0
        # [instance, deploy day, expiry day, availability] per trap deployment
        self.traps = np.zeros((0, 4), dtype=np.float64)
        self.last_day = -1

        # host aggregates, refreshed every step by the transmission model
        self.sum_avail = 0.0
        self.sigma_df = 0.0
        self.partial_eir = 0.0
        self.fitted = False

        return

    # -----  initialisation  -----

    def adult_survival(self, sum_avail: float, trap_avail: float = 0.0) -> tuple:
        """Return ``(leave_rate, P_A, alpha_d)`` for the given host and trap availability."""
        leave_rate = sum_avail + trap_avail + self.seeking_death_rate
        p_a = math.exp(-leave_rate * self.seeking_duration)
        alpha_d = (1.0 - p_a) / leave_rate

        return leave_rate, p_a, alpha_d

    def host_aggregates(self, total_availability: float) -> tuple:
        """
        Availability aggregates of the host population for this species.

        Args:
            total_availability (float): Sum of the relative availabilities of all hosts.

        Returns:
            tuple: ``(sum_avail, sigma_f, sigma_df, sigma_dff)``; the values are also kept for the next
            call to ``advance``.
        """
        sum_avail = self.ento_availability * total_availability
        sigma_f = sum_avail * self.p_b
        sigma_df = sigma_f * self.p_c * self.p_d
        self.sum_avail = sum_avail
        self.sigma_df = sigma_df

        return sum_avail, sigma_f, sigma_df, sigma_df

    def init2(self, n_humans, mean_pop_avail, sum_avail, sigma_f, sigma_df, sigma_dff, forced_eir_daily) -> None:
        """
        Derive the forced infectious population and a matching emergence rate from the forced EIR.

        Args:
            n_humans (int): Number of hosts.
            mean_pop_avail (float): Mean relative availability of the host population.
            sum_avail (float): Total availability rate of the hosts to this species (per day).
            sigma_f (float): ``sum_avail`` weighted by the probability of biting.
            sigma_df (float): ``sigma_f`` weighted by finding a resting site and resting.
            sigma_dff (float): ``sigma_df`` weighted by fecundity; the same as ``sigma_df`` here.
            forced_eir_daily (np.ndarray): Adult EIR for each day of the year (all species).
        """
        if not (n_humans > 0 and sigma_f > 0.0):
            raise SimulationStateError(f"{self.name}: cannot initialise the vector model without available hosts")

        _leave_rate, p_a, alpha_d = self.adult_survival(sum_avail)
        p_df = sigma_df * alpha_d * self.p_e

        self.eir_to_s_v = n_humans * mean_pop_avail / (alpha_d * sigma_f)
        self.forced_s_v[:] = np.asarray(forced_eir_daily, dtype=np.float64) * self.eir_fraction * self.eir_to_s_v
        # steady state of N_v[d] = E + P_A N_v[d-1] + P_df N_v[d-tau] for N_v = initNvFromSv * S_v
        self.mosq_emerge_rate[:] = self.forced_s_v * self.init_nv_from_sv * (1.0 - p_a - p_df)
        assert np.all(self.mosq_emerge_rate >= 0.0), f"{self.name}: P_A + P_df must not exceed 1"

        for k in range(self.rest_duration + 1):
            day = -k
            self.s_v[day] = self.forced_s_v[day % DAYS_PER_YEAR]
            self.n_v[day] = self.s_v[day] * self.init_nv_from_sv
        for day in range(FIVE_YEARS):
            self.quinquennial_s_v[day] = self.forced_s_v[day % DAYS_PER_YEAR]

        self.sum_avail = sum_avail
        self.sigma_df = sigma_df

        return

    def init_iterate(self, tolerance: float = 0.1) -> bool:
        """
        One fitting step: rescale the emergence target so the five-year mean of simulated ``S_v``
        matches ``forced_s_v``.

        Returns:
            bool: True when the simulated and forced annual totals agree within ``tolerance``.
        """
        target = self.forced_s_v.sum()
        if target == 0.0:
            # no transmission to reproduce
            self.fitted = True
            return self.fitted

        observed = self.quinquennial_s_v.values.reshape(5, DAYS_PER_YEAR).mean(axis=0)
        total = observed.sum()
        if not (total > 0.0):
            raise SimulationStateError(f"{self.name}: simulated S_v is zero; cannot fit the emergence rate")
        factor = target / total
        if not (1e-6 < factor < 1e6):
            raise SimulationStateError(f"{self.name}: emergence fitting diverged (factor {factor})")

        self.fitted = abs(factor - 1.0) <= tolerance
        if not self.fitted:
            # the population follows the target so the next window starts near its new steady state
            self.mosq_emerge_rate *= factor
            self.scale_population(factor)

        return self.fitted

    # -----  daily dynamics  -----

    def get_emergence_rate(self, day: int, n_ovipositing: float) -> float:
        """Fixed emergence: the target rate for the day of the year."""
        return float(self.mosq_emerge_rate[day % DAYS_PER_YEAR])

    def trap_availability(self, day: int) -> float:
        if len(self.traps) == 0:
            return 0.0
        active = (self.traps[:, 1] <= day) & (day < self.traps[:, 2])

        return float(self.traps[active, 3].sum())

    def update_emergence_reduction(self, day: int) -> float:
        remaining = 1.0
        for reduction, deployed, half_life in self.pop_interventions:
            if deployed >= 0.0 and day >= deployed:
                remaining *= 1.0 - reduction * math.exp(-math.log(2.0) * (day - deployed) / half_life)
        self.emergence_reduction = 1.0 - remaining

        return self.emergence_reduction

    def advance(self, tick: int, kappa_lagged: float) -> float:
        """
        Advance the population over the days of step ``tick``.

        Returns:
            float: The partial EIR for the step, i.e. the adult EIR per unit of relative host
            availability contributed by this species.
        """
        first_day = tick * self.days_per_step
        assert first_day > self.last_day, f"{self.name}: days must be strictly increasing ({first_day} after {self.last_day})"

        tau = self.rest_duration
        partial_eir = 0.0
        for day in range(first_day, first_day + self.days_per_step):
            _leave_rate, p_a, alpha_d = self.adult_survival(self.sum_avail, self.trap_availability(day))
            p_df = self.sigma_df * alpha_d * self.p_e
            p_dif = p_df * kappa_lagged

            n_v_tau = self.n_v[day - tau]
            s_v_tau = self.s_v[day - tau]
            n_ovipositing = p_df * n_v_tau
            emergence = self.get_emergence_rate(day, n_ovipositing)
            emergence *= 1.0 - self.update_emergence_reduction(day)

            n_v = emergence + p_a * self.n_v[day - 1] + p_df * n_v_tau
            s_v = p_a * self.s_v[day - 1] + p_df * s_v_tau + p_dif * (n_v_tau - s_v_tau)
            self.n_v[day] = n_v
            self.s_v[day] = s_v
            self.quinquennial_s_v[day] = s_v

            partial_eir += s_v * alpha_d * self.ento_availability * self.p_b

        self.last_day = first_day + self.days_per_step - 1
        self.partial_eir = partial_eir

        return partial_eir

    # -----  diagnostics  -----

    def get_res_availability(self, tick: int) -> float:
        return math.nan

    def get_res_requirements(self) -> float:
        return math.nan

    @property
    def last_n_v(self) -> float:
        return float(self.n_v[self.last_day])

    @property
    def last_s_v(self) -> float:
        return float(self.s_v[self.last_day])

    # -----  interventions  -----

    def scale_population(self, factor: float) -> None:
        """Rescale the simulated mosquito populations and their histories by ``factor``."""
        self.n_v.scale(factor)
        self.s_v.scale(factor)
        self.quinquennial_s_v.scale(factor)

        return

    def scale(self, factor: float) -> None:
        """Rescale every population-size dependent quantity by ``factor``."""
        self.mosq_emerge_rate *= factor
        self.forced_s_v *= factor
        self.scale_population(factor)

        return

    def scale_eir(self, factor: float) -> None:
        self.forced_s_v *= factor

        return

    def deploy_vector_pop_interv(self, tick: int, instance: int) -> None:
        if not (0 <= instance < len(self.pop_intervention_params)):
            raise ConfigurationError(f"{self.name}: no vector population intervention {instance}")
        config = self.pop_intervention_params[instance]
        reduction = float(config["emergence_reduction"])
        half_life = float(config.get("half_life_days", math.inf))
        if not (0.0 <= reduction <= 1.0) or not (half_life > 0.0):
            raise ConfigurationError(f"{self.name}: vector population intervention {instance} is invalid ({config})")
        self.pop_interventions[instance] = (reduction, tick * self.days_per_step, half_life)

        return

    def deploy_vector_trap(self, tick: int, instance: int, pop_size: float, lifespan: int) -> None:
        if not (0 <= instance < len(self.trap_params)):
            raise ConfigurationError(f"{self.name}: no vector trap {instance}")
        deployed = tick * self.days_per_step
        availability = float(self.trap_params[instance]["availability"]) * pop_size
        record = np.array([[instance, deployed, deployed + lifespan * self.days_per_step, availability]])
        same = (self.traps[:, 0] == instance) & (self.traps[:, 1] == deployed)
        self.traps = np.concatenate([self.traps[~same], record])

        return

    def uninfect(self) -> None:
        self.s_v.fill(0.0)

        return

    # -----  checkpointing  -----

    def serialize(self, stream) -> None:
        write_state(stream, self, self.CHECKPOINT_FIELDS)

        return

    def deserialize(self, stream) -> None:
        read_state(stream, self, self.CHECKPOINT_FIELDS)

        return

    def plot(self):
        _fig, ax = plt.subplots()
        days = np.arange(DAYS_PER_YEAR)
        observed = self.quinquennial_s_v.values.reshape(5, DAYS_PER_YEAR).mean(axis=0)
        ax.plot(days, self.forced_s_v, label="Forced S_v")
        ax.plot(days, observed, linestyle="--", label="Simulated S_v (5 year mean)")
        ax.set_xlabel("Day of Year")
        ax.set_ylabel("Infectious Host-Seeking Mosquitoes")
        ax.set_title(f"Anopheles {self.name}")
        ax.legend()

        yield

        return


def inverse_resources(p_surv: float, laid: float, target: float) -> float:
    """
    Inverse larval resources ``gamma`` so that ``laid`` eggs yield ``target`` emergence.

    Solves ``target = p_surv * laid / (1 + gamma * laid)``. Never negative: 0 (no density dependence)
    where even density-independent survival cannot reach the target, infinity (zero emergence) where
    the target is zero.
    """
    if not (target > 0.0):
        return math.inf
    if p_surv * laid <= target:
        return 0.0

    return (p_surv * laid - target) / (target * laid)


class SimpleMPDAnophelesModel(AnophelesModel):
    """
    Adult model with emergence from a simple, density-dependent pre-adult model.

    Emergence on day ``d`` is ``p_surv * laid / (1 + gamma[d] * laid)`` where ``laid`` is the number
    of female eggs laid ``development_duration`` days earlier and ``gamma`` the inverse of the larval
    resources for the day of the year.
    """

    CHECKPOINT_FIELDS = (
        *AnophelesModel.CHECKPOINT_FIELDS,
        "quinquennial_ovipositing",
        "development_duration",
        "prob_preadult_survival",
        "f_eggs_laid_by_oviposit",
        "inv_larval_resources",
        "n_ovipositing_delayed",
    )

    def __init__(self, params: PropertySet, steps_per_year: int, vector_pop_interventions=(), vector_traps=()) -> None:
        super().__init__(params, steps_per_year, vector_pop_interventions, vector_traps)

        self.quinquennial_ovipositing = RingBuffer(FIVE_YEARS)
        self.inv_larval_resources = RingBuffer(DAYS_PER_YEAR)

        self.development_duration = int(params.development_duration)
        if not (self.development_duration > 0):
            raise ConfigurationError(f"{self.name}.development_duration: must be positive (got {params.development_duration})")
        self.prob_preadult_survival = float(params.development_survival)
        if not (0.0 <= self.prob_preadult_survival <= 1.0):
            raise ConfigurationError(
                f"{self.name}.development_survival: must be a probability in [0, 1] (got {params.development_survival})"
            )
        self.f_eggs_laid_by_oviposit = float(params.female_eggs_laid_by_oviposit)
        if not (self.f_eggs_laid_by_oviposit > 0.0):
            raise ConfigurationError(
                f"{self.name}.female_eggs_laid_by_oviposit: must be positive (got {params.female_eggs_laid_by_oviposit})"
            )
        self.n_ovipositing_delayed = RingBuffer(self.development_duration)

        return

    def init2(self, n_humans, mean_pop_avail, sum_avail, sigma_f, sigma_df, sigma_dff, forced_eir_daily) -> None:
        super().init2(n_humans, mean_pop_avail, sum_avail, sigma_f, sigma_df, sigma_dff, forced_eir_daily)

        _leave_rate, _p_a, alpha_d = self.adult_survival(sum_avail)
        p_dff = sigma_dff * alpha_d * self.p_e

        tau = self.rest_duration
        dev = self.development_duration
        for t in range(dev):
            self.n_ovipositing_delayed[t + tau] = p_dff * self.init_nv_from_sv * self.forced_s_v[t]

        assert tau + dev <= DAYS_PER_YEAR, f"{self.name}: resting plus development duration must not exceed a year"
        for t in range(DAYS_PER_YEAR):
            yt = self.f_eggs_laid_by_oviposit * p_dff * self.init_nv_from_sv * self.forced_s_v[(t + DAYS_PER_YEAR - tau - dev) % DAYS_PER_YEAR]
            self.inv_larval_resources[t] = inverse_resources(self.prob_preadult_survival, yt, self.mosq_emerge_rate[t])

        return

    def init_iterate(self, tolerance: float = 0.1) -> bool:
        """
        Fit the emergence target, then recompute the larval resources from the oviposition history
        of the last five years so the larval model produces the target emergence.
        """
        fitted = super().init_iterate(tolerance)

        dev = self.development_duration
        for t in range(DAYS_PER_YEAR):
            ttj = t - dev
            yt = (
                self.f_eggs_laid_by_oviposit
                * 0.2
                * sum(self.quinquennial_ovipositing[ttj + k * DAYS_PER_YEAR] for k in range(1, 6))
            )
            self.inv_larval_resources[t] = inverse_resources(self.prob_preadult_survival, yt, self.mosq_emerge_rate[t])

        return fitted

    def get_emergence_rate(self, day: int, n_ovipositing: float) -> float:
        """
        Emergence for ``day`` from the oviposition ``development_duration`` days ago.

        Records ``n_ovipositing`` in both oviposition histories, so calls must be made with strictly
        increasing days.
        """
        d1 = day + 1
        yt = self.f_eggs_laid_by_oviposit * self.n_ovipositing_delayed[d1]
        emergence = self.prob_preadult_survival * yt / (1.0 + self.inv_larval_resources[day] * yt) if yt > 0.0 else 0.0
        self.n_ovipositing_delayed[d1] = n_ovipositing
        self.quinquennial_ovipositing[d1] = n_ovipositing

        return float(emergence)

    def get_res_availability(self, tick: int) -> float:
        """Mean larval resources over the days of the step before ``tick``."""
        start = (tick - 1) * self.days_per_step + DAYS_PER_YEAR
        total = 0.0
        for day in range(start, start + self.days_per_step):
            gamma = self.inv_larval_resources[day]
            total += math.inf if gamma == 0.0 else 1.0 / gamma

        return total / self.days_per_step

    def scale_population(self, factor: float) -> None:
        super().scale_population(factor)
        self.n_ovipositing_delayed.scale(factor)
        self.quinquennial_ovipositing.scale(factor)

        return


def create_species(params: PropertySet, steps_per_year: int, vector_pop_interventions=(), vector_traps=()) -> AnophelesModel:
    """Build the mosquito model selected by ``params.emergence`` ("simple_mpd" or "fixed")."""
    kinds = {"simple_mpd": SimpleMPDAnophelesModel, "fixed": AnophelesModel}
    if params.emergence not in kinds:
        raise ConfigurationError(f"{params.name}.emergence: expected one of {sorted(kinds)} (got {params.emergence!r})")

    return kinds[params.emergence](params, steps_per_year, vector_pop_interventions, vector_traps)
