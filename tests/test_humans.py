import numpy as np
import pytest

from laser.malaria.humans import AVAILABILITY_BY_AGE
from laser.malaria.humans import age_availability


class TestAvailability:
    def test_adults_have_unit_availability(self):
        assert age_availability(20.0) == pytest.approx(1.0)
        assert age_availability(65.0) == pytest.approx(1.0)

        return

    def test_availability_increases_with_age(self):
        assert np.all(np.diff(AVAILABILITY_BY_AGE) > 0.0)
        assert age_availability(0.5) == pytest.approx(0.5 * (AVAILABILITY_BY_AGE[0] + AVAILABILITY_BY_AGE[1]))

        return


class TestHumans:
    def test_initial_cohort(self, nonvector_model):
        people = nonvector_model.people
        count = people.count

        assert count == 100
        assert np.all(people.dob[:count] <= 0)
        assert np.all(people.age_years[:count] >= 0.0)
        assert np.all(people.avail_het[:count] == 1.0)
        assert np.allclose(people.availability[:count], age_availability(people.age_years[:count]))
        assert np.all(people.pev_factor[:count] == 1.0)

        return

    def test_heterogeneous_availability(self, make_model):
        people = make_model(ento_model="nonvector", population=2_000, avail_het_shape=2.0).people

        assert people.avail_het[: people.count].mean() == pytest.approx(1.0, abs=0.1)
        assert people.avail_het[: people.count].std() > 0.3

        return

    def test_custom_age_pyramid(self, make_model):
        pyramid = np.zeros(90)
        pyramid[30] = 1.0
        people = make_model(ento_model="nonvector", age_pyramid=pyramid).people

        assert np.all((people.age_years[: people.count] >= 30.0) & (people.age_years[: people.count] < 31.0))

        return

    def test_ages_advance(self, nonvector_model):
        humans = nonvector_model.humans
        people = nonvector_model.people
        ages = people.age_years[: people.count].copy()
        humans.update_ages(73)

        assert np.allclose(people.age_years[: people.count], ages + 1.0)

        return

    def test_infections_from_eir(self, nonvector_model):
        model = nonvector_model
        people = model.people
        count = people.count
        people.eir[:count] = 5.0

        expected = model.humans.expected_infections()
        assert np.all(expected > 0.0)

        model.humans.step(0)
        assert np.all(people.cum_eir[:count] == 5.0)
        assert model.withinhost.total_infections > 0
        assert model.humans.incidence[0] == (0, model.withinhost.total_infections)

        return

    def test_pre_erythrocytic_vaccine_blocks_infection(self, nonvector_model):
        model = nonvector_model
        people = model.people
        count = people.count
        people.eir[:count] = 5.0
        people.pev_factor[:count] = 0.0

        model.humans.step(0)
        assert model.withinhost.total_infections == 0

        return

    def test_exposure_reduces_infection_probability(self, nonvector_model):
        people = nonvector_model.people
        count = people.count
        people.eir[:count] = 0.1
        naive = nonvector_model.humans.expected_infections().copy()
        people.cum_eir[:count] = 10_000.0

        assert np.all(nonvector_model.humans.expected_infections() < naive)

        return
