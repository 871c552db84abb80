"""
Default parameters and parameter validation for laser-malaria models.

Parameters are carried in a ``laser.core.PropertySet``. Start from ``get_default_parameters()`` and
override with ``|``::

    params = get_default_parameters() | {"seed": 42, "population": 2_000, "annual_eir": 50.0}

Mosquito species are given as a list of dictionaries (or PropertySets) under ``species``; each
entry only needs the values that differ from ``DEFAULT_SPECIES``.
"""

import numpy as np
from laser.core.propertyset import PropertySet

from laser.malaria.errors import ConfigurationError
from laser.malaria.utils import exp_idft

__all__ = [
    "DAYS_PER_YEAR",
    "DEFAULT_SPECIES",
    "days_per_step",
    "forced_eir_daily",
    "get_default_parameters",
    "species_parameters",
    "validate_parameters",
]

DAYS_PER_YEAR = 365

DEFAULT_SPECIES = {
    "name": "gambiae",
    "emergence": "simple_mpd",  # or "fixed"
    "eir_fraction": 1.0,  # share of the forced EIR attributed to this species
    # simple MPD (larval) parameters
    "development_duration": 11,  # days from egg laying to emergence
    "development_survival": 0.25,  # pre-adult survival without density dependence
    "female_eggs_laid_by_oviposit": 50.0,
    # adult feeding cycle
    "mosq_rest_duration": 3,  # days
    "mosq_seeking_duration": 0.33,  # days
    "mosq_seeking_death_rate": 1.6,  # per day
    "ento_availability": 0.0072,  # availability rate of an adult human, per day
    "prob_biting": 0.95,
    "prob_find_rest_site": 0.95,
    "prob_resting": 0.99,
    "prob_ovipositing": 0.88,
    "prop_infectious": 0.021,  # initial guess of S_v / N_v
}


def get_default_parameters() -> PropertySet:
    """
    Return a PropertySet with default values for every model parameter.

    Returns:
        PropertySet: Defaults for simulation control, forced EIR, hosts, incidence, the within-host
        model, and the vector model.
    """
    return PropertySet(
        {
            # simulation control
            "nticks": 73 * 5,  # intervention-period steps after equilibration
            "seed": None,
            "verbose": False,
            "steps_per_year": 73,
            "population": 1_000,
            "mode": "dynamic",  # "forced" or "dynamic" during the intervention period
            "ento_model": "vector",  # "vector" or "nonvector"
            "max_init_iterations": 10,
            "init_tolerance": 0.1,  # accepted relative error of the simulated annual S_v
            "survey_period": 73,  # steps between surveys
            "continuous_period": 1,  # steps between continuous reports
            # forced EIR: explicit daily series, or a Fourier series of log(EIR) scaled to annual_eir
            "annual_eir": 20.0,  # infectious bites per adult per year
            "eir_daily": None,
            "eir_fourier": [0.0, -0.6, 0.4],
            "eir_rotate_angle": 0.0,
            "eip_days": 10,  # extrinsic incubation period
            "adult_age_years": 20.0,
            # hosts
            "avail_het_shape": 0.0,  # gamma shape of availability heterogeneity; 0 means homogeneous
            "age_pyramid": None,  # relative weights by year of age; None for the built-in pyramid
            # infection incidence
            "s_inf": 0.049,
            "e_star": 0.032,
            "s_imm": 0.138,
            "x_star_p": 1514.4,
            "gamma_p": 2.04,
            # descriptive within-host model
            "latent_days": 15,
            "inf_duration_mu": 5.13,  # log(days)
            "inf_duration_sigma": 0.8,
            "max_density": 1.0e5,  # parasites per microlitre
            "density_decay_days": 60.0,
            "h_star": 97.3,
            "y_star": 3.5e7,
            "alpha_m": 0.9,
            "decay_m": 2.53,
            "sigma_density": 0.5,
            "detection_limit": 40.0,
            "transmit_beta": [1.0, 0.46, 0.17],  # weights of densities 10, 15, and 20 days ago
            "transmit_mu": -8.1,
            "transmit_tau": 0.066,
            # vector model
            "species": [dict(DEFAULT_SPECIES)],
            "vector_pop_interventions": [],  # [{"emergence_reduction": 0.8, "half_life_days": 180.0}, ...]
            "vector_traps": [],  # [{"availability": 0.002}, ...]
        }
    )


def species_parameters(params: PropertySet) -> list:
    """Merge each configured species over ``DEFAULT_SPECIES``; returns a list of PropertySets."""
    species = []
    for entry in params.species:
        overrides = entry.to_dict() if isinstance(entry, PropertySet) else dict(entry)
        species.append(PropertySet(DEFAULT_SPECIES | overrides))

    return species


def days_per_step(params: PropertySet) -> int:
    return DAYS_PER_YEAR // int(params.steps_per_year)


def validate_parameters(params: PropertySet) -> None:
    """
    Check global parameters for range and consistency.

    Species parameters are checked by the mosquito models themselves at construction.

    Raises:
        ConfigurationError: On the first invalid parameter.
    """
    spy = int(params.steps_per_year)
    if spy <= 0 or DAYS_PER_YEAR % spy != 0:
        raise ConfigurationError(f"steps_per_year: must divide {DAYS_PER_YEAR} (got {params.steps_per_year})")
    if params.population < 0:
        raise ConfigurationError(f"population: must be non-negative (got {params.population})")
    if params.ento_model not in ("vector", "nonvector"):
        raise ConfigurationError(f"ento_model: expected 'vector' or 'nonvector' (got {params.ento_model!r})")
    if params.eip_days < 0:
        raise ConfigurationError(f"eip_days: must be non-negative (got {params.eip_days})")
    if not (params.annual_eir >= 0.0):
        raise ConfigurationError(f"annual_eir: must be non-negative (got {params.annual_eir})")
    if params.max_init_iterations < 1:
        raise ConfigurationError(f"max_init_iterations: must be at least 1 (got {params.max_init_iterations})")
    if params.latent_days < 0:
        raise ConfigurationError(f"latent_days: must be non-negative (got {params.latent_days})")
    if params.eir_daily is not None and len(params.eir_daily) != DAYS_PER_YEAR:
        raise ConfigurationError(f"eir_daily: expected {DAYS_PER_YEAR} values (got {len(params.eir_daily)})")
    if params.eir_daily is not None and not np.all(np.asarray(params.eir_daily, dtype=np.float64) >= 0.0):
        raise ConfigurationError("eir_daily: values must be non-negative")
    if params.ento_model == "vector":
        if len(params.species) == 0:
            raise ConfigurationError("species: the vector model needs at least one mosquito species")
        fractions = [s.eir_fraction for s in species_parameters(params)]
        if not np.isclose(sum(fractions), 1.0):
            raise ConfigurationError(f"species.eir_fraction: must sum to 1 (got {sum(fractions)})")

    return


def forced_eir_daily(params: PropertySet) -> np.ndarray:
    """
    The forced (input) EIR for an adult, one value per day of the year.

    Uses ``eir_daily`` when given, otherwise the Fourier series ``eir_fourier`` of log(EIR), rotated
    by ``eir_rotate_angle`` and scaled so the annual total equals ``annual_eir``.

    Returns:
        np.ndarray: 365 daily EIR values (infectious bites per adult per day).
    """
    if params.eir_daily is not None:
        daily = np.asarray(params.eir_daily, dtype=np.float64)
        assert np.all(daily >= 0.0), "eir_daily must be non-negative"
        return daily.copy()

    series = exp_idft(np.asarray(params.eir_fourier, dtype=np.float64), params.eir_rotate_angle, DAYS_PER_YEAR)
    series *= params.annual_eir / series.sum()

    return series
