"""
Intervention actions.

Interventions are named by an ``InterventionAction`` and applied with ``deploy``, which looks the
action up in a table of handlers. Deciding *when* to deploy is left to the caller (a script, a
scenario runner, a test).

    deploy(model, tick, InterventionAction.VECTOR_TRAP, instance=0, pop_size=10.0, lifespan=73)
    deploy(model, tick, InterventionAction.TREAT_SIMPLE, indices=patients, liver_steps=0, blood_steps=1)

Host-targeted actions take ``indices`` (default: every host).
"""

from enum import IntEnum

import numpy as np

from laser.malaria.errors import ConfigurationError
from laser.malaria.withinhost import Stage

__all__ = ["InterventionAction", "deploy"]


class InterventionAction(IntEnum):
    SCALE_EIR = 0
    CHANGE_EIR = 1
    VECTOR_POP = 2
    VECTOR_TRAP = 3
    UNINFECT_VECTORS = 4
    CLEAR_INFECTIONS = 5
    TREAT_SIMPLE = 6
    CLEAR_IMMUNITY = 7
    IMPORTED_INFECTIONS = 8
    VACCINE = 9
    SCALE_VECTORS = 10


def _hosts(model, indices):
    if indices is None:
        return np.arange(model.people.count)
    return np.atleast_1d(np.asarray(indices, dtype=np.int64))


def _scale_eir(model, tick, factor):
    model.transmission.scale_eir(tick, factor)


def _change_eir(model, tick, eir_daily):
    model.transmission.change_eir(tick, eir_daily)


def _vector_pop(model, tick, instance):
    model.transmission.deploy_vector_pop_interv(tick, instance)


def _vector_trap(model, tick, instance, pop_size, lifespan):
    model.transmission.deploy_vector_trap(tick, instance, pop_size, lifespan)


def _uninfect_vectors(model, tick):
    model.transmission.uninfect_vectors(tick)


def _scale_vectors(model, tick, factor):
    model.transmission.scale_vectors(tick, factor)


def _clear_infections(model, tick, indices=None, stage=Stage.BOTH):
    for index in _hosts(model, indices):
        model.withinhost.clear_infections(index, stage)


def _treat_simple(model, tick, liver_steps, blood_steps, indices=None):
    for index in _hosts(model, indices):
        model.withinhost.treat_simple(index, tick, liver_steps, blood_steps)


def _clear_immunity(model, tick, indices=None):
    for index in _hosts(model, indices):
        model.withinhost.clear_immunity(index)


def _imported_infections(model, tick, indices):
    for index in _hosts(model, indices):
        model.withinhost.import_infection(index, tick)


def _vaccine(model, tick, indices=None, pev=None, bsv=None, tbv=None):
    hosts = _hosts(model, indices)
    # efficacy e leaves a factor of (1 - e)
    for name, efficacy in (("pev_factor", pev), ("bsv_factor", bsv), ("tbv_factor", tbv)):
        if efficacy is not None:
            if not (0.0 <= efficacy <= 1.0):
                raise ConfigurationError(f"vaccine {name[:3]} efficacy must be in [0, 1] (got {efficacy})")
            getattr(model.people, name)[hosts] = 1.0 - efficacy


HANDLERS = {
    InterventionAction.SCALE_EIR: _scale_eir,
    InterventionAction.CHANGE_EIR: _change_eir,
    InterventionAction.VECTOR_POP: _vector_pop,
    InterventionAction.VECTOR_TRAP: _vector_trap,
    InterventionAction.UNINFECT_VECTORS: _uninfect_vectors,
    InterventionAction.CLEAR_INFECTIONS: _clear_infections,
    InterventionAction.TREAT_SIMPLE: _treat_simple,
    InterventionAction.CLEAR_IMMUNITY: _clear_immunity,
    InterventionAction.IMPORTED_INFECTIONS: _imported_infections,
    InterventionAction.VACCINE: _vaccine,
    InterventionAction.SCALE_VECTORS: _scale_vectors,
}


def deploy(model, tick: int, action: InterventionAction, **kwargs) -> None:
    """Apply ``action`` to ``model`` at step ``tick``; ``kwargs`` are the action's arguments."""
    HANDLERS[InterventionAction(action)](model, tick, **kwargs)

    return
