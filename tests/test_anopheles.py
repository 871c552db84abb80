import io
import math

import numpy as np
import pytest
from laser.core.propertyset import PropertySet

from laser.malaria.anopheles import AnophelesModel
from laser.malaria.anopheles import SimpleMPDAnophelesModel
from laser.malaria.anopheles import create_species
from laser.malaria.anopheles import inverse_resources
from laser.malaria.errors import ConfigurationError
from laser.malaria.errors import SimulationStateError
from laser.malaria.params import DEFAULT_SPECIES
from laser.malaria.params import forced_eir_daily
from laser.malaria.params import get_default_parameters

STEPS_PER_YEAR = 73
NHOSTS = 100


def species_params(**overrides) -> PropertySet:
    return PropertySet(DEFAULT_SPECIES | overrides)


def initialised(kind=SimpleMPDAnophelesModel, eir_daily=None, traps=(), interventions=(), **overrides):
    """A mosquito model after init2 for NHOSTS adults with relative availability 1."""
    species = kind(species_params(**overrides), STEPS_PER_YEAR, interventions, traps)
    daily = forced_eir_daily(get_default_parameters()) if eir_daily is None else np.asarray(eir_daily)
    sum_avail, sigma_f, sigma_df, sigma_dff = species.host_aggregates(float(NHOSTS))
    species.init2(NHOSTS, 1.0, sum_avail, sigma_f, sigma_df, sigma_dff, daily)

    return species


class TestConfiguration:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"development_duration": 0},
            {"development_duration": -3},
            {"development_survival": -0.1},
            {"development_survival": 1.1},
            {"female_eggs_laid_by_oviposit": 0.0},
            {"mosq_rest_duration": 0},
            {"prob_biting": 1.5},
            {"prop_infectious": 0.0},
        ],
    )
    def test_invalid_species_parameters(self, overrides):
        with pytest.raises(ConfigurationError):
            SimpleMPDAnophelesModel(species_params(**overrides), STEPS_PER_YEAR)

        return

    def test_create_species(self):
        assert type(create_species(species_params(), STEPS_PER_YEAR)) is SimpleMPDAnophelesModel
        assert type(create_species(species_params(emergence="fixed"), STEPS_PER_YEAR)) is AnophelesModel

        with pytest.raises(ConfigurationError, match="emergence"):
            create_species(species_params(emergence="larval_habitat"), STEPS_PER_YEAR)

        return

    def test_init2_needs_hosts(self):
        species = SimpleMPDAnophelesModel(species_params(), STEPS_PER_YEAR)

        with pytest.raises(SimulationStateError):
            species.init2(0, 0.0, 0.0, 0.0, 0.0, 0.0, np.ones(365))

        return


class TestInitialisation:
    def test_forced_s_v_proportional_to_eir(self):
        daily = forced_eir_daily(get_default_parameters())
        species = initialised()

        assert np.allclose(species.forced_s_v / daily, species.eir_to_s_v)
        assert np.all(species.mosq_emerge_rate > 0.0)
        assert species.last_s_v == pytest.approx(species.forced_s_v[-1 % 365])

        return

    def test_constant_eir_is_a_steady_state_for_n_v(self):
        species = initialised(kind=AnophelesModel, eir_daily=np.full(365, 0.05))
        initial = species.n_v[0]

        for tick in range(10):
            species.advance(tick, 0.1)

        assert species.last_n_v == pytest.approx(initial, rel=1e-9)

        return

    def test_fixed_model_fits_its_own_forcing(self):
        species = initialised(kind=AnophelesModel)
        emergence = species.mosq_emerge_rate.copy()

        assert species.init_iterate(0.01)
        assert np.array_equal(species.mosq_emerge_rate, emergence)

        return

    def test_fixed_model_rescales_emergence(self):
        species = initialised(kind=AnophelesModel)
        emergence = species.mosq_emerge_rate.copy()
        species.quinquennial_s_v.scale(0.5)

        n_v = species.n_v.values.copy()
        forced = species.forced_s_v.copy()

        assert not species.init_iterate(0.01)
        assert np.allclose(species.mosq_emerge_rate, 2.0 * emergence)
        # the population follows the emergence target; the forced target is unchanged
        assert np.allclose(species.n_v.values, 2.0 * n_v)
        assert np.allclose(species.quinquennial_s_v.values, forced[np.arange(5 * 365) % 365])
        assert np.array_equal(species.forced_s_v, forced)

        return

    def test_fitting_without_forced_eir(self):
        species = initialised(kind=AnophelesModel, eir_daily=np.zeros(365))
        species.quinquennial_s_v.fill(0.0)

        assert species.init_iterate(0.01)
        assert species.fitted

        return

    def test_refit_rescales_oviposition_history(self):
        species = initialised()
        species.quinquennial_s_v.scale(0.5)
        species.quinquennial_ovipositing.fill(10.0)
        delayed = species.n_ovipositing_delayed.values.copy()

        assert not species.init_iterate(0.01)
        assert np.allclose(species.quinquennial_ovipositing.values, 20.0)
        assert np.allclose(species.n_ovipositing_delayed.values, 2.0 * delayed)
        assert np.all(species.inv_larval_resources.values >= 0.0)

        return

    def test_larval_resources_never_negative(self):
        species = initialised()
        species.quinquennial_ovipositing.fill(1e-6)

        species.init_iterate(0.01)

        # too few eggs for the target: no density dependence rather than negative resources
        assert np.all(species.inv_larval_resources.values == 0.0)
        for day in range(365):
            assert species.get_emergence_rate(day, 0.0) >= 0.0

        return

    @pytest.mark.parametrize(
        ("p_surv", "laid", "target", "expected"),
        [
            (0.25, 100.0, 5.0, (25.0 - 5.0) / (5.0 * 100.0)),
            (0.25, 100.0, 25.0, 0.0),
            (0.25, 100.0, 30.0, 0.0),
            (0.25, 0.0, 5.0, 0.0),
            (0.25, 100.0, 0.0, math.inf),
        ],
    )
    def test_inverse_resources(self, p_surv, laid, target, expected):
        assert inverse_resources(p_surv, laid, target) == pytest.approx(expected)

        return

    @pytest.mark.parametrize("kind", [AnophelesModel, SimpleMPDAnophelesModel])
    def test_fitting_converges(self, kind):
        species = initialised(kind=kind)
        start = 0
        nsteps = 5 * STEPS_PER_YEAR
        for _iteration in range(10):
            for tick in range(start, start + nsteps):
                species.advance(tick, 0.05)
            start += nsteps
            assert species.last_n_v > 0.0
            if species.init_iterate(0.1):
                break
            nsteps = 6 * STEPS_PER_YEAR

        assert species.fitted
        assert np.all(species.mosq_emerge_rate > 0.0)

        return

    def test_fitting_without_infectious_mosquitoes(self):
        species = initialised(kind=AnophelesModel)
        species.quinquennial_s_v.fill(0.0)

        with pytest.raises(SimulationStateError):
            species.init_iterate(0.01)

        return


class TestDynamics:
    def test_emergence_is_deterministic(self):
        first = initialised()
        second = initialised()
        ovipositing = np.linspace(10.0, 50.0, 100)

        a = [first.get_emergence_rate(day, n) for day, n in enumerate(ovipositing)]
        b = [second.get_emergence_rate(day, n) for day, n in enumerate(ovipositing)]

        assert a == b
        assert all(rate >= 0.0 for rate in a)

        return

    def test_days_must_increase(self):
        species = initialised()
        species.advance(3, 0.1)

        with pytest.raises(AssertionError):
            species.advance(3, 0.1)

        return

    def test_no_infectious_mosquitoes_without_kappa(self):
        species = initialised()
        species.uninfect()

        for tick in range(5):
            assert species.advance(tick, 0.0) == 0.0

        assert species.last_s_v == 0.0
        assert species.last_n_v > 0.0

        return

    def test_partial_eir_positive(self):
        species = initialised()

        assert species.advance(0, 0.2) > 0.0
        assert species.partial_eir > 0.0

        return

    def test_scale(self):
        species = initialised()
        n_v = species.n_v.values.copy()
        delayed = species.n_ovipositing_delayed.values.copy()
        species.scale(2.0)

        assert np.allclose(species.n_v.values, 2.0 * n_v)
        assert np.allclose(species.n_ovipositing_delayed.values, 2.0 * delayed)

        return

    def test_resource_diagnostics(self):
        species = initialised()

        assert math.isnan(species.get_res_requirements())
        assert species.get_res_availability(10) > 0.0
        assert math.isnan(initialised(kind=AnophelesModel).get_res_availability(10))

        return


class TestInterventions:
    def test_trap_reduces_eir(self):
        traps = [{"availability": 0.05}]
        control = initialised(traps=traps)
        trapped = initialised(traps=traps)
        trapped.deploy_vector_trap(0, 0, 100.0, 10)

        assert trapped.trap_availability(0) == pytest.approx(5.0)
        assert trapped.trap_availability(50) == 0.0
        assert trapped.advance(0, 0.2) < control.advance(0, 0.2)

        return

    def test_trap_redeployment_replaces(self):
        species = initialised(traps=[{"availability": 0.05}])
        species.deploy_vector_trap(2, 0, 100.0, 10)
        species.deploy_vector_trap(2, 0, 50.0, 10)
        species.deploy_vector_trap(4, 0, 50.0, 10)

        assert len(species.traps) == 2
        assert species.trap_availability(10) == pytest.approx(2.5)
        assert species.trap_availability(20) == pytest.approx(5.0)

        return

    def test_unknown_instance(self):
        species = initialised()

        with pytest.raises(ConfigurationError):
            species.deploy_vector_trap(0, 0, 1.0, 10)
        with pytest.raises(ConfigurationError):
            species.deploy_vector_pop_interv(0, 0)

        return

    def test_emergence_reduction_decays(self):
        species = initialised(interventions=[{"emergence_reduction": 0.8, "half_life_days": 10.0}])

        assert species.update_emergence_reduction(0) == 0.0
        species.deploy_vector_pop_interv(2, 0)
        assert species.update_emergence_reduction(9) == 0.0
        assert species.update_emergence_reduction(10) == pytest.approx(0.8)
        assert species.update_emergence_reduction(20) == pytest.approx(0.4)

        return

    def test_emergence_reduction_reduces_population(self):
        interventions = [{"emergence_reduction": 0.9}]
        control = initialised(interventions=interventions)
        treated = initialised(interventions=interventions)
        treated.deploy_vector_pop_interv(0, 0)

        for tick in range(10):
            control.advance(tick, 0.1)
            treated.advance(tick, 0.1)

        assert treated.last_n_v < control.last_n_v

        return


class TestCheckpoint:
    def test_round_trip_replays_identically(self):
        saved = initialised(traps=[{"availability": 0.01}])
        for tick in range(20):
            saved.advance(tick, 0.1)
        saved.deploy_vector_trap(20, 0, 10.0, 5)

        stream = io.BytesIO()
        saved.serialize(stream)
        stream.seek(0)
        restored = SimpleMPDAnophelesModel(species_params(), STEPS_PER_YEAR, (), [{"availability": 0.01}])
        restored.deserialize(stream)

        assert restored.last_day == saved.last_day
        assert len(restored.traps) == 1
        for tick in range(20, 40):
            assert restored.advance(tick, 0.05) == saved.advance(tick, 0.05)

        return
