"""
Descriptive within-host model: per-host infection store, parasite densities and infectiousness.

Every host owns up to ``MAX_INFECTIONS`` infection records held in LaserFrame vector properties of
shape ``(MAX_INFECTIONS, capacity)``. A host's live infections are the first ``ninfs`` slots, in
arrival order. Removals compact the remaining records towards slot 0 and zero the freed slots.

All random numbers are drawn from ``model.prng`` before a kernel runs so results do not depend on
thread scheduling.
"""

import math
from enum import IntEnum

import matplotlib.pyplot as plt
import numba as nb
import numpy as np

from laser.malaria.checkpoint import read_frame
from laser.malaria.checkpoint import read_state
from laser.malaria.checkpoint import write_frame
from laser.malaria.checkpoint import write_state
from laser.malaria.errors import ConfigurationError
from laser.malaria.errors import FeatureUnsupportedError
from laser.malaria.params import days_per_step
from laser.malaria.utils import validate

__all__ = ["MAX_INFECTIONS", "DescriptiveWithinHost", "Stage"]

MAX_INFECTIONS = 21


class Stage(IntEnum):
    """Infection stage; also used as a bit mask when clearing (``BOTH = LIVER | BLOOD``)."""

    NONE = 0
    LIVER = 1
    BLOOD = 2
    BOTH = 3


_LIVER = np.uint8(Stage.LIVER.value)
_BLOOD = np.uint8(Stage.BLOOD.value)


@nb.njit(nogil=True, cache=True)
def _add_infections(i, n, tick, latent_steps, durations, offset, ninfs, nnew, inf_start, inf_duration, inf_stage, inf_density):
    accepted = min(n, MAX_INFECTIONS - ninfs[i])
    for k in range(accepted):
        slot = ninfs[i] + k
        inf_start[slot, i] = tick
        inf_duration[slot, i] = latent_steps + durations[offset + k]
        inf_stage[slot, i] = _LIVER
        inf_density[slot, i] = 0.0
    ninfs[i] += accepted
    nnew[i] += accepted

    return accepted


@nb.njit(nogil=True, cache=True)
def _move(src, dst, i, inf_start, inf_duration, inf_stage, inf_density):
    inf_start[dst, i] = inf_start[src, i]
    inf_duration[dst, i] = inf_duration[src, i]
    inf_stage[dst, i] = inf_stage[src, i]
    inf_density[dst, i] = inf_density[src, i]

    return


@nb.njit(nogil=True, cache=True)
def _release(first, last, i, inf_start, inf_duration, inf_stage, inf_density):
    for k in range(first, last):
        inf_start[k, i] = 0
        inf_duration[k, i] = 0
        inf_stage[k, i] = 0
        inf_density[k, i] = 0.0

    return


@nb.njit(nogil=True, cache=True)
def _clear_infections(i, stage, ninfs, inf_start, inf_duration, inf_stage, inf_density):
    live = 0
    for k in range(ninfs[i]):
        if inf_stage[k, i] & stage:
            continue
        if live != k:
            _move(k, live, i, inf_start, inf_duration, inf_stage, inf_density)
        live += 1
    _release(live, ninfs[i], i, inf_start, inf_duration, inf_stage, inf_density)
    cleared = ninfs[i] - live
    ninfs[i] = live

    return cleared


@nb.njit(nogil=True, cache=True)
def _prob_transmission(i, tick, ylag, lags, betas, mu, sqrt_tau, tbv_factor):
    ylag_len = ylag.shape[0]
    x = 0.0
    for k in range(len(lags)):
        x += betas[k] * ylag[(tick - lags[k]) % ylag_len, i]
    if x < 0.001:
        return 0.0
    zval = (math.log(x) + mu) * sqrt_tau
    pone = 0.5 * (1.0 + math.erf(zval / math.sqrt(2.0)))

    return min(pone * pone * tbv_factor, 1.0)


@nb.njit(nogil=True, cache=True)
def _update_host(
    i,
    tick,
    z,
    age_years,
    bsv_factor,
    tbv_factor,
    ninfs,
    nnew,
    inf_start,
    inf_duration,
    inf_stage,
    inf_density,
    cumulative_h,
    cumulative_y,
    total_density,
    max_density,
    treat_expiry_liver,
    treat_expiry_blood,
    ylag,
    p_transmit,
    latent_steps,
    dps,
    log_max_density,
    decay_days,
    h_star,
    y_star,
    alpha_m,
    decay_m,
    sigma,
    lags,
    betas,
    mu,
    sqrt_tau,
):
    # immunity from infections and densities before this step
    cum_h = cumulative_h[i]
    cum_y = cumulative_y[i]
    d_h = 1.0 / (1.0 + (cum_h - 1.0) / h_star) if cum_h > 1.0 else 1.0
    d_y = 1.0 / (1.0 + cum_y / y_star)
    d_a = alpha_m + (1.0 - alpha_m) * math.exp(-decay_m * age_years[i])
    treat_liver = tick <= treat_expiry_liver[i]
    treat_blood = tick <= treat_expiry_blood[i]

    total = 0.0
    step_max = 0.0
    live = 0
    for k in range(ninfs[i]):
        age = tick - inf_start[k, i]
        if age >= latent_steps:
            inf_stage[k, i] = _BLOOD
        blood = inf_stage[k, i] == _BLOOD
        if age >= inf_duration[k, i] or (treat_blood if blood else treat_liver):
            continue
        density = 0.0
        if blood:
            log_base = log_max_density - (age - latent_steps) * dps / decay_days
            if log_base > 0.0:
                density = math.exp(log_base * d_h * d_y * d_a + sigma * z[k, i]) * bsv_factor[i]
        if live != k:
            _move(k, live, i, inf_start, inf_duration, inf_stage, inf_density)
        inf_density[live, i] = density
        total += density
        step_max = max(step_max, density)
        cumulative_y[i] += dps * density
        live += 1
    _release(live, ninfs[i], i, inf_start, inf_duration, inf_stage, inf_density)
    ninfs[i] = live

    cumulative_h[i] += nnew[i]
    nnew[i] = 0
    total_density[i] = total
    max_density[i] = step_max
    ylag[tick % ylag.shape[0], i] = total
    p_transmit[i] = _prob_transmission(i, tick, ylag, lags, betas, mu, sqrt_tau, tbv_factor[i])

    return


@nb.njit(nogil=True, parallel=True, cache=True)
def nb_add_infections(counts, offsets, tick, latent_steps, durations, ninfs, nnew, inf_start, inf_duration, inf_stage, inf_density):
    allowed = 0
    for i in nb.prange(len(counts)):
        if counts[i] > 0:
            allowed += _add_infections(
                i, counts[i], tick, latent_steps, durations, offsets[i], ninfs, nnew, inf_start, inf_duration, inf_stage, inf_density
            )

    return allowed


@nb.njit(nogil=True, parallel=True, cache=True)
def nb_withinhost_step(
    count,
    tick,
    z,
    age_years,
    bsv_factor,
    tbv_factor,
    ninfs,
    nnew,
    inf_start,
    inf_duration,
    inf_stage,
    inf_density,
    cumulative_h,
    cumulative_y,
    total_density,
    max_density,
    treat_expiry_liver,
    treat_expiry_blood,
    ylag,
    p_transmit,
    latent_steps,
    dps,
    log_max_density,
    decay_days,
    h_star,
    y_star,
    alpha_m,
    decay_m,
    sigma,
    lags,
    betas,
    mu,
    sqrt_tau,
):
    for i in nb.prange(count):
        _update_host(
            i,
            tick,
            z,
            age_years,
            bsv_factor,
            tbv_factor,
            ninfs,
            nnew,
            inf_start,
            inf_duration,
            inf_stage,
            inf_density,
            cumulative_h,
            cumulative_y,
            total_density,
            max_density,
            treat_expiry_liver,
            treat_expiry_blood,
            ylag,
            p_transmit,
            latent_steps,
            dps,
            log_max_density,
            decay_days,
            h_star,
            y_star,
            alpha_m,
            decay_m,
            sigma,
            lags,
            betas,
            mu,
            sqrt_tau,
        )

    return


class DescriptiveWithinHost:
    """
    Within-host component: infection lifecycle, parasite densities and infectiousness to mosquitoes.

    Infections are accepted up to ``MAX_INFECTIONS`` per host; the excess is dropped and counted in
    ``rejected_infections``. Each ``step`` removes expired and treated infections, advances the
    densities of the survivors and records the host's total density in a lagged history from which
    the probability of infecting a biting mosquito (``p_transmit``) is derived.
    """

    CHECKPOINT_FIELDS = ("total_infections", "allowed_infections", "current_tick")
    FRAME_FIELDS = (
        "inf_start",
        "inf_duration",
        "inf_stage",
        "inf_density",
        "ninfs",
        "nnew",
        "cumulative_h",
        "cumulative_y",
        "total_density",
        "max_density",
        "treat_expiry_liver",
        "treat_expiry_blood",
        "ylag",
        "p_transmit",
    )

    def __init__(self, model):
        self.model = model
        params = model.params
        people = model.people

        self.days_per_step = days_per_step(params)
        if params.latent_days < 0:
            raise ConfigurationError(f"latent_days: must be non-negative (got {params.latent_days})")
        self.latent_steps = int(params.latent_days) // self.days_per_step
        self.ylag_len = 20 // self.days_per_step + 1
        self.lags = np.array([10, 15, 20], dtype=np.int32) // self.days_per_step
        self.betas = np.asarray(params.transmit_beta, dtype=np.float64)
        if len(self.betas) != len(self.lags):
            raise ConfigurationError(f"transmit_beta: expected {len(self.lags)} weights (got {len(self.betas)})")

        people.add_vector_property("inf_start", MAX_INFECTIONS, dtype=np.int32, default=0)
        people.add_vector_property("inf_duration", MAX_INFECTIONS, dtype=np.int32, default=0)
        people.add_vector_property("inf_stage", MAX_INFECTIONS, dtype=np.uint8, default=0)
        people.add_vector_property("inf_density", MAX_INFECTIONS, dtype=np.float64, default=0.0)
        people.add_scalar_property("ninfs", dtype=np.int32, default=0)
        people.add_scalar_property("nnew", dtype=np.int32, default=0)
        people.add_scalar_property("cumulative_h", dtype=np.float64, default=0.0)
        people.add_scalar_property("cumulative_y", dtype=np.float64, default=0.0)
        people.add_scalar_property("total_density", dtype=np.float64, default=0.0)
        people.add_scalar_property("max_density", dtype=np.float64, default=0.0)
        people.add_scalar_property("treat_expiry_liver", dtype=np.int32, default=-1)
        people.add_scalar_property("treat_expiry_blood", dtype=np.int32, default=-1)
        people.add_vector_property("ylag", self.ylag_len, dtype=np.float64, default=0.0)
        people.add_scalar_property("p_transmit", dtype=np.float64, default=0.0)

        self.total_infections = 0
        self.allowed_infections = 0
        self.current_tick = -1

        return

    @property
    def rejected_infections(self) -> int:
        return self.total_infections - self.allowed_infections

    def _draw_durations(self, n: int) -> np.ndarray:
        params = self.model.params
        days = self.model.prng.lognormal(params.inf_duration_mu, params.inf_duration_sigma, size=n)
        return np.maximum(np.round(days / self.days_per_step), 1).astype(np.int32)

    def _kernel_arguments(self):
        params = self.model.params
        people = self.model.people
        return (
            people.age_years,
            people.bsv_factor,
            people.tbv_factor,
            people.ninfs,
            people.nnew,
            people.inf_start,
            people.inf_duration,
            people.inf_stage,
            people.inf_density,
            people.cumulative_h,
            people.cumulative_y,
            people.total_density,
            people.max_density,
            people.treat_expiry_liver,
            people.treat_expiry_blood,
            people.ylag,
            people.p_transmit,
            self.latent_steps,
            float(self.days_per_step),
            math.log(params.max_density),
            float(params.density_decay_days),
            float(params.h_star),
            float(params.y_star),
            float(params.alpha_m),
            float(params.decay_m),
            float(params.sigma_density),
            self.lags,
            self.betas,
            float(params.transmit_mu),
            math.sqrt(params.transmit_tau),
        )

    # -----  infection store  -----

    def add_infections(self, index: int, n: int, tick: int) -> int:
        """
        Add up to ``n`` new (liver stage) infections to host ``index``.

        Returns:
            int: The number accepted; the rest are counted as rejected.
        """
        people = self.model.people
        durations = self._draw_durations(n)
        accepted = _add_infections(
            index,
            n,
            tick,
            self.latent_steps,
            durations,
            0,
            people.ninfs,
            people.nnew,
            people.inf_start,
            people.inf_duration,
            people.inf_stage,
            people.inf_density,
        )
        self.total_infections += n
        self.allowed_infections += accepted

        return accepted

    def add_infections_all(self, counts: np.ndarray, tick: int) -> int:
        """Add ``counts[i]`` new infections to every host ``i``; returns the number accepted."""
        people = self.model.people
        counts = counts.astype(np.int32)
        offsets = (np.cumsum(counts) - counts).astype(np.int64)
        durations = self._draw_durations(int(counts.sum()))
        accepted = nb_add_infections(
            counts,
            offsets,
            tick,
            self.latent_steps,
            durations,
            people.ninfs,
            people.nnew,
            people.inf_start,
            people.inf_duration,
            people.inf_stage,
            people.inf_density,
        )
        self.total_infections += int(counts.sum())
        self.allowed_infections += int(accepted)

        return int(accepted)

    def import_infection(self, index: int, tick: int) -> bool:
        """Add one imported infection; it counts towards immunity immediately."""
        people = self.model.people
        accepted = self.add_infections(index, 1, tick)
        if accepted:
            people.nnew[index] -= 1
            people.cumulative_h[index] += 1.0

        return accepted == 1

    def clear_infections(self, index: int, stage: Stage = Stage.BOTH) -> int:
        """Remove host ``index``'s infections in ``stage`` (LIVER, BLOOD or BOTH); returns the number removed."""
        people = self.model.people
        return _clear_infections(
            index, np.uint8(stage), people.ninfs, people.inf_start, people.inf_duration, people.inf_stage, people.inf_density
        )

    def count_infections(self, index: int) -> tuple:
        """Return ``(total, patent)`` where patent infections have a density above the detection limit."""
        people = self.model.people
        n = people.ninfs[index]
        patent = int(np.count_nonzero(people.inf_density[:n, index] > self.model.params.detection_limit))

        return int(n), patent

    def stages(self, index: int) -> np.ndarray:
        return self.model.people.inf_stage[: self.model.people.ninfs[index], index].copy()

    # -----  dynamics  -----

    def update(self, index: int, tick: int) -> None:
        """Advance the infections of host ``index`` by one step."""
        self.current_tick = tick
        z = np.zeros((MAX_INFECTIONS, index + 1), dtype=np.float64)
        z[:, index] = self.model.prng.standard_normal(MAX_INFECTIONS)
        _update_host(index, tick, z, *self._kernel_arguments())

        return

    def prob_transmission_to_mosquito(self, index: int, tbv_factor: float = 1.0) -> float:
        """Probability that a mosquito biting host ``index`` becomes infected, from the lagged densities."""
        return _prob_transmission(
            index,
            self.current_tick,
            self.model.people.ylag,
            self.lags,
            self.betas,
            float(self.model.params.transmit_mu),
            math.sqrt(self.model.params.transmit_tau),
            tbv_factor,
        )

    def prevalidate_step(self, tick: int) -> None:
        self._check_store()

        return

    def postvalidate_step(self, tick: int) -> None:
        self._check_store()
        count = self.model.people.count
        assert np.all(self.model.people.nnew[:count] == 0), "new infections should have been added to cumulative_h"
        assert np.all((self.model.people.p_transmit[:count] >= 0.0) & (self.model.people.p_transmit[:count] <= 1.0)), (
            "p_transmit must be a probability"
        )

        return

    def _check_store(self) -> None:
        people = self.model.people
        count = people.count
        ninfs = people.ninfs[:count]
        assert np.all((ninfs >= 0) & (ninfs <= MAX_INFECTIONS)), f"ninfs out of range [0, {MAX_INFECTIONS}]"
        live = np.count_nonzero(people.inf_stage[:, :count], axis=0)
        assert np.all(live == ninfs), "ninfs does not match the number of live infection records"
        slots = np.arange(MAX_INFECTIONS)[:, None]
        assert np.all((people.inf_stage[:, :count] != 0) == (slots < ninfs)), "live infection records are not contiguous"

        return

    @validate(pre=prevalidate_step, post=postvalidate_step)
    def step(self, tick: int) -> None:
        self.current_tick = tick
        count = self.model.people.count
        z = self.model.prng.standard_normal((MAX_INFECTIONS, count))
        nb_withinhost_step(count, tick, z, *self._kernel_arguments())

        return

    # -----  treatment  -----

    def treat_simple(self, index: int, tick: int, liver_steps: int, blood_steps: int) -> None:
        """
        Simple treatment of host ``index``.

        A negative duration clears the stage immediately; a positive duration clears infections of
        that stage at every update up to and including ``tick + duration``.
        """
        people = self.model.people
        if liver_steps < 0:
            self.clear_infections(index, Stage.LIVER)
        elif liver_steps > 0:
            people.treat_expiry_liver[index] = max(people.treat_expiry_liver[index], tick + liver_steps)
        if blood_steps < 0:
            self.clear_infections(index, Stage.BLOOD)
        elif blood_steps > 0:
            people.treat_expiry_blood[index] = max(people.treat_expiry_blood[index], tick + blood_steps)

        return

    def treat_pkpd(self, index: int, schedule: int, dosages: int) -> None:
        raise FeatureUnsupportedError('drug PK/PD treatment is not available with the "descriptive" within-host model')

    def add_prophylactic_effects(self, index: int, p_clearance_by_time) -> None:
        raise ConfigurationError("prophylactic drug action requires a within-host model with a prophylactic drug action model")

    def clear_immunity(self, index: int) -> None:
        self.model.people.cumulative_h[index] = 0.0
        self.model.people.cumulative_y[index] = 0.0

        return

    # -----  checkpointing  -----

    def serialize(self, stream) -> None:
        write_state(stream, self, self.CHECKPOINT_FIELDS)
        write_frame(stream, self.model.people, self.FRAME_FIELDS)

        return

    def deserialize(self, stream) -> None:
        read_state(stream, self, self.CHECKPOINT_FIELDS)
        read_frame(stream, self.model.people, self.FRAME_FIELDS)

        return

    def plot(self):
        people = self.model.people
        count = people.count
        _fig, ax1 = plt.subplots()
        ax1.hist(people.ninfs[:count], bins=np.arange(MAX_INFECTIONS + 2) - 0.5)
        ax1.set_xlabel("Concurrent Infections")
        ax1.set_ylabel("Hosts")
        ax1.set_title(f"Concurrent Infections per Host ({self.rejected_infections:,} rejected)")

        yield

        _fig, ax1 = plt.subplots()
        ax1.scatter(people.age_years[:count], people.total_density[:count], s=2)
        ax1.set_yscale("symlog")
        ax1.set_xlabel("Age (years)")
        ax1.set_ylabel("Total Parasite Density (per µl)")
        ax1.set_title("Parasite Density by Age")

        yield

        return
