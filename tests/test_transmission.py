import io
import math

import numpy as np
import pytest

from laser.malaria.errors import ConfigurationError
from laser.malaria.errors import SimulationStateError
from laser.malaria.transmission import NonVectorTransmission
from laser.malaria.transmission import SimulationMode
from laser.malaria.transmission import VectorTransmission
from laser.malaria.transmission import read_mode


class TestModes:
    def test_read_mode(self):
        assert read_mode("forced") == SimulationMode.FORCED_EIR
        assert read_mode("dynamic") == SimulationMode.DYNAMIC_EIR

        with pytest.raises(ConfigurationError):
            read_mode("transient")

        return

    def test_invalid_mode_parameter(self, make_model):
        with pytest.raises(ConfigurationError):
            make_model(mode="sometimes")

        return

    def test_strategy_selection(self, nonvector_model, vector_model):
        assert isinstance(nonvector_model.transmission.strategy, NonVectorTransmission)
        assert isinstance(vector_model.transmission.strategy, VectorTransmission)
        assert nonvector_model.transmission.simulation_mode == SimulationMode.FORCED_EIR
        assert vector_model.transmission.simulation_mode == SimulationMode.FORCED_EIR

        return

    def test_get_eir_before_initialisation(self, nonvector_model):
        transmission = nonvector_model.transmission
        transmission.simulation_mode = SimulationMode.PRE_INIT

        with pytest.raises(SimulationStateError):
            transmission.get_eir(0, 0, 30.0)
        with pytest.raises(SimulationStateError):
            transmission.base_eir(0)

        return


class TestKappa:
    def test_empty_population(self, nonvector_model, make_hosts):
        transmission = nonvector_model.transmission

        assert transmission.update_kappa(make_hosts(0), 0) == 0.0
        assert transmission.lagged_kappa[0] == 0.0
        assert transmission.num_transmitting_humans == 0

        return

    def test_zero_availability(self, nonvector_model, make_hosts):
        with pytest.raises(SimulationStateError):
            nonvector_model.transmission.update_kappa(make_hosts(3, availability=0.0, p_transmit=0.5), 0)

        return

    def test_weighted_mean(self, nonvector_model, make_hosts):
        hosts = make_hosts(4)
        hosts.availability[:4] = [1.0, 1.0, 2.0, 0.0]
        hosts.p_transmit[:4] = [0.0, 0.5, 0.25, 1.0]

        assert nonvector_model.transmission.update_kappa(hosts, 0) == pytest.approx(1.0 / 4.0)
        assert nonvector_model.transmission.num_transmitting_humans == 2

        return

    def test_lagged_kappa(self, nonvector_model, make_hosts):
        transmission = nonvector_model.transmission
        lag = transmission.eip_steps + 1
        assert len(transmission.lagged_kappa) == lag

        transmission.update_kappa(make_hosts(2, p_transmit=0.3), 5)

        assert transmission.lagged_kappa[5 + lag] == pytest.approx(0.3)
        assert transmission.lagged_kappa[6 + lag] == 0.0

        return

    def test_annual_average_kappa(self, nonvector_model, make_hosts):
        transmission = nonvector_model.transmission
        hosts = make_hosts(10, p_transmit=0.5)
        assert math.isnan(transmission.annual_average_kappa)

        for tick in range(transmission.steps_per_year - 1):
            transmission.update_kappa(hosts, tick)
        assert math.isnan(transmission.annual_average_kappa)

        transmission.update_kappa(hosts, transmission.steps_per_year - 1)
        assert transmission.annual_average_kappa == pytest.approx(0.5)
        assert transmission.sum_annual_kappa == 0.0

        return

    def test_annual_average_kappa_without_eir(self, make_model, make_hosts):
        transmission = make_model(ento_model="nonvector", annual_eir=0.0).transmission
        hosts = make_hosts(10, p_transmit=0.5)

        for tick in range(transmission.steps_per_year):
            transmission.update_kappa(hosts, tick)

        assert math.isnan(transmission.annual_average_kappa)

        return


class TestEirDelivery:
    def test_forced_eir_to_adults(self, nonvector_model):
        model = nonvector_model
        transmission = model.transmission
        count = model.people.count
        transmission.step(0)

        adults = model.people.age_years[:count] >= transmission.adult_age
        assert np.any(adults)
        assert np.allclose(model.people.eir[:count][adults], transmission.initialisation_eir[0])
        assert np.all(model.people.eir[:count][~adults] <= transmission.initialisation_eir[0])

        transmission.update(0)
        assert transmission.ts_adult_eir == pytest.approx(transmission.initialisation_eir[0])
        assert len(transmission.kappa_history) == 1

        return

    def test_no_adults(self, make_model, make_hosts):
        transmission = make_model(ento_model="nonvector").transmission
        transmission.update_kappa(make_hosts(3), 0)

        assert math.isnan(transmission.ts_adult_eir)

        return

    def test_get_eir(self, nonvector_model):
        transmission = nonvector_model.transmission
        transmission.current_base_eir = 0.2

        per_genotype, total = transmission.get_eir(0, 0, 40.0)
        assert total == pytest.approx(0.2)
        assert per_genotype.shape == (1,)
        assert transmission.ts_num_adults == 1

        _, child = transmission.get_eir(0, 0, 1.0)
        assert child < total
        assert transmission.ts_num_adults == 1

        return

    def test_initialisation_eir_sums_to_annual_eir(self, nonvector_model):
        transmission = nonvector_model.transmission

        assert transmission.initialisation_eir.shape == (transmission.steps_per_year,)
        assert transmission.initialisation_eir.sum() == pytest.approx(nonvector_model.params.annual_eir)

        return


class TestInitialisation:
    def test_nonvector_waits_one_year(self, nonvector_model):
        transmission = nonvector_model.transmission
        spy = transmission.steps_per_year

        assert transmission.min_preinit_duration() == spy
        assert transmission.init_iterate(0) == spy
        assert transmission.init_iterate(spy) == 0
        assert transmission.simulation_mode == SimulationMode.DYNAMIC_EIR

        return

    def test_vector_needs_five_years(self, vector_model):
        transmission = vector_model.transmission
        spy = transmission.steps_per_year

        assert transmission.min_preinit_duration() == 5 * spy
        assert transmission.expected_init_duration() == 6 * spy
        assert transmission.init_iterate(spy) == 4 * spy

        return

    def test_forced_mode_needs_no_warm_up(self, make_model):
        transmission = make_model(mode="forced").transmission

        assert transmission.min_preinit_duration() == 0
        assert transmission.init_iterate(0) == 0
        assert transmission.simulation_mode == SimulationMode.FORCED_EIR

        return

    def test_fitting_gives_up(self, make_model):
        transmission = make_model(max_init_iterations=1).transmission
        transmission.strategy.fit = lambda tolerance: False
        start = transmission.min_preinit_duration()

        assert transmission.init_iterate(start) == transmission.strategy.refit_duration()
        with pytest.raises(SimulationStateError):
            transmission.init_iterate(start + transmission.strategy.refit_duration())

        return

    def test_dynamic_eir_needs_annual_kappa(self, nonvector_model):
        transmission = nonvector_model.transmission
        transmission.simulation_mode = SimulationMode.DYNAMIC_EIR

        with pytest.raises(SimulationStateError):
            transmission.base_eir(0)

        transmission.annual_average_kappa = 0.25
        transmission.lagged_kappa[3] = 0.5
        assert transmission.base_eir(3) == pytest.approx(2.0 * transmission.initialisation_eir[3])

        return


class TestInterventions:
    def test_change_eir(self, nonvector_model):
        transmission = nonvector_model.transmission
        transmission.change_eir(10, np.full(50, 0.1))

        assert transmission.simulation_mode == SimulationMode.TRANSIENT_EIR_KNOWN
        assert transmission.base_eir(10) == pytest.approx(0.5)
        assert transmission.base_eir(19) == pytest.approx(0.5)
        with pytest.raises(SimulationStateError):
            transmission.base_eir(20)

        return

    def test_change_eir_needs_nonvector(self, vector_model):
        with pytest.raises(ConfigurationError):
            vector_model.transmission.change_eir(0, np.ones(365))

        return

    def test_scale_eir(self, vector_model):
        transmission = vector_model.transmission
        species = transmission.strategy.species[0]
        eir = transmission.initialisation_eir.copy()
        forced = species.forced_s_v.copy()

        transmission.scale_eir(0, 0.5)
        transmission.scale_eir(0, 0.5)

        assert np.allclose(transmission.initialisation_eir, 0.25 * eir)
        assert transmission.eir_scale == pytest.approx(0.25)
        assert np.allclose(species.forced_s_v, 0.25 * forced)

        return

    def test_vector_interventions_need_vectors(self, nonvector_model):
        with pytest.raises(ConfigurationError):
            nonvector_model.transmission.deploy_vector_pop_interv(0, 0)
        with pytest.raises(ConfigurationError):
            nonvector_model.transmission.deploy_vector_trap(0, 0, 1.0, 10)

        return

    def test_invalid_trap_ignored(self, make_model):
        transmission = make_model(vector_traps=[{"availability": 0.01}]).transmission

        with pytest.warns(UserWarning):
            transmission.deploy_vector_trap(0, 0, 0.0, 10)
        with pytest.warns(UserWarning):
            transmission.deploy_vector_trap(0, 0, 10.0, 0)
        assert len(transmission.strategy.species[0].traps) == 0

        transmission.deploy_vector_trap(0, 0, 10.0, 10)
        assert len(transmission.strategy.species[0].traps) == 1

        return

    def test_uninfect_vectors(self, vector_model, nonvector_model):
        vector_model.transmission.uninfect_vectors(0)
        assert vector_model.transmission.strategy.species[0].s_v.sum() == 0.0

        nonvector_model.transmission.lagged_kappa.fill(0.5)
        with pytest.warns(UserWarning):
            nonvector_model.transmission.uninfect_vectors(0)
        assert nonvector_model.transmission.lagged_kappa.sum() == 0.0

        return


class TestReporting:
    def test_summarize(self, nonvector_model, make_hosts):
        transmission = nonvector_model.transmission
        hosts = make_hosts(5, p_transmit=0.2)
        for tick in range(transmission.steps_per_year):
            transmission.update_kappa(hosts, tick)

        summary = transmission.summarize(transmission.steps_per_year - 1)
        assert summary["input EIR"] == pytest.approx(nonvector_model.params.annual_eir / transmission.steps_per_year)
        assert summary["kappa"] == pytest.approx(0.2)
        assert summary["annual average kappa"] == pytest.approx(0.2)
        assert transmission.last_survey_time == transmission.steps_per_year

        with pytest.warns(UserWarning):
            summary = transmission.summarize(transmission.steps_per_year - 1)
        assert math.isnan(summary["input EIR"])

        return

    def test_vector_summary(self, vector_model):
        summary = vector_model.transmission.summarize(0)

        assert "gambiae N_v" in summary
        assert "gambiae S_v" in summary
        assert math.isnan(summary["gambiae resource requirements"])

        return


class TestCheckpoint:
    def test_round_trip(self, make_model, make_hosts):
        model = make_model(ento_model="nonvector")
        transmission = model.transmission
        hosts = make_hosts(4, p_transmit=0.1)
        for tick in range(80):
            transmission.update_kappa(hosts, tick)
        transmission.init_iterate(80)
        transmission.change_eir(80, np.full(30, 0.2))

        stream = io.BytesIO()
        transmission.serialize(stream)
        stream.seek(0)
        other = make_model(ento_model="nonvector").transmission
        other.deserialize(stream)

        assert other.simulation_mode == SimulationMode.TRANSIENT_EIR_KNOWN
        assert type(other.simulation_mode) is SimulationMode
        assert other.annual_average_kappa == pytest.approx(transmission.annual_average_kappa)
        assert np.array_equal(other.lagged_kappa.values, transmission.lagged_kappa.values)
        assert other.base_eir(85) == transmission.base_eir(85)

        return
