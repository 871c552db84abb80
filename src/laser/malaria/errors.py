"""
Error classification for laser-malaria.

Three kinds of fatal error are distinguished to aid triage:

- ``ConfigurationError``: a parameter is out of range or inconsistent. Raised at construction.
- ``SimulationStateError``: a numerical invariant of the running simulation was violated.
- ``FeatureUnsupportedError``: the selected model variant does not implement the requested feature.

Capacity clamping (e.g. the superinfection cap) is *not* an error and is only counted.
"""


class ConfigurationError(ValueError):
    """Invalid or inconsistent model parameters."""


class SimulationStateError(RuntimeError):
    """A numerical or temporal invariant of the simulation state does not hold."""


class FeatureUnsupportedError(NotImplementedError):
    """The requested feature is not available with the configured model variant."""
