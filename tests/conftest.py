import numpy as np
import pytest
from laser.core.laserframe import LaserFrame

from laser.malaria.model import Model
from laser.malaria.params import get_default_parameters


def small_parameters(**overrides):
    return get_default_parameters() | {"seed": 20241107, "population": 100, "nticks": 73} | overrides


@pytest.fixture
def make_model():
    """Factory for small, seeded models: ``make_model(ento_model="nonvector", nticks=10)``."""

    def _make_model(**overrides) -> Model:
        return Model(small_parameters(**overrides))

    return _make_model


@pytest.fixture
def make_hosts():
    """Factory for a bare host frame with only the properties kappa aggregation reads."""

    def _make_hosts(count: int, availability: float = 1.0, p_transmit: float = 0.0) -> LaserFrame:
        frame = LaserFrame(capacity=max(count, 1), initial_count=count)
        frame.add_scalar_property("availability", dtype=np.float64, default=availability)
        frame.add_scalar_property("p_transmit", dtype=np.float64, default=p_transmit)

        return frame

    return _make_hosts


@pytest.fixture
def nonvector_model(make_model):
    return make_model(ento_model="nonvector")


@pytest.fixture
def vector_model(make_model):
    return make_model(ento_model="vector")
