"""Continuous (per interval) reporting of scalar model outputs through registered callbacks."""

import matplotlib.pyplot as plt
import pandas as pd

__all__ = ["ContinuousReporter"]


class ContinuousReporter:
    """
    Pull-based reporter: components register named callbacks and the model calls ``record(now)``
    once per reporting interval.

    Callbacks take the number of steps completed (``now``) and return a scalar.
    """

    def __init__(self, period: int = 1, enabled=None) -> None:
        assert period > 0, "reporting period must be positive"
        self.period = int(period)
        self.enabled = None if enabled is None else set(enabled)
        self.callbacks = {}
        self.rows = []

        return

    def register(self, name: str, callback) -> None:
        assert name not in self.callbacks, f"reporting tap '{name}' is already registered"
        if self.enabled is None or name in self.enabled:
            self.callbacks[name] = callback

        return

    def record(self, now: int) -> None:
        if now % self.period != 0:
            return
        row = {"step": now}
        for name, callback in self.callbacks.items():
            row[name] = callback(now)
        self.rows.append(row)

        return

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=["step", *self.callbacks])

    def plot(self):
        frame = self.to_dataframe()
        if len(frame) == 0:
            return
        for name in self.callbacks:
            _fig, ax = plt.subplots()
            ax.plot(frame["step"], frame[name])
            ax.set_xlabel("Step")
            ax.set_ylabel(name)
            ax.set_title(f"{name} over Time")

            yield

        return
