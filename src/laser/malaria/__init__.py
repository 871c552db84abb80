__version__ = "0.1.0"

from .anopheles import AnophelesModel
from .anopheles import SimpleMPDAnophelesModel
from .errors import ConfigurationError
from .errors import FeatureUnsupportedError
from .errors import SimulationStateError
from .humans import Humans
from .interventions import InterventionAction
from .interventions import deploy
from .model import Model
from .params import get_default_parameters
from .reporting import ContinuousReporter
from .ringbuffer import RingBuffer
from .transmission import SimulationMode
from .transmission import TransmissionModel
from .withinhost import MAX_INFECTIONS
from .withinhost import DescriptiveWithinHost
from .withinhost import Stage

# 'promoting' some classes from laser-core for documentation
from laser.core.laserframe import LaserFrame
from laser.core.propertyset import PropertySet

__all__ = [
    "MAX_INFECTIONS",
    "AnophelesModel",
    "ConfigurationError",
    "ContinuousReporter",
    "DescriptiveWithinHost",
    "FeatureUnsupportedError",
    "Humans",
    "InterventionAction",
    "LaserFrame",
    "Model",
    "PropertySet",
    "RingBuffer",
    "SimpleMPDAnophelesModel",
    "SimulationMode",
    "SimulationStateError",
    "Stage",
    "TransmissionModel",
    "deploy",
    "get_default_parameters",
]
