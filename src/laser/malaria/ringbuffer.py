"""
A circular buffer with a fixed period.

Mosquito population dynamics keep several histories with mismatched periods (five years, one year,
the development duration, the incubation period). All of them are ``RingBuffer`` instances so the
wrap-around arithmetic lives in exactly one place.
"""

import numpy as np

__all__ = ["RingBuffer"]


class RingBuffer:
    """
    A numpy-backed buffer of ``period`` values where every index is taken modulo ``period``.

    Negative indices wrap to the non-negative residue, e.g. ``buffer[-1]`` is ``buffer[period - 1]``.
    Integer arrays may be used as indices.

    Arguments:
        period (int): Number of slots (the periodicity of the data).
        dtype: numpy dtype of the values. Default ``np.float64``.
        fill (float): Initial value of every slot. Default 0.0.
    """

    def __init__(self, period: int, dtype=np.float64, fill: float = 0.0):
        assert period > 0, "period must be greater than 0"
        self._period = int(period)
        self._data = np.full(self._period, fill, dtype=dtype)

        return

    @staticmethod
    def from_array(data: np.ndarray) -> "RingBuffer":
        """
        Create a RingBuffer holding a copy of ``data``; the period is ``len(data)``.

        Args:
            data (np.ndarray): 1D array of values.

        Returns:
            RingBuffer: The created RingBuffer instance.
        """
        assert len(data.shape) == 1, "data must be a 1D array"
        assert data.shape[0] > 0, "data must have at least one element"
        instance = RingBuffer(data.shape[0], dtype=data.dtype)
        instance._data[:] = data

        return instance

    def index(self, i):
        """Wrap ``i`` (int or integer array) into ``[0, period)``."""
        return np.mod(i, self._period) if isinstance(i, np.ndarray) else int(i) % self._period

    def __getitem__(self, i):
        return self._data[self.index(i)]

    def __setitem__(self, i, value) -> None:
        self._data[self.index(i)] = value

        return

    def __len__(self) -> int:
        return self._period

    def __repr__(self) -> str:
        return f"RingBuffer(period={self._period}, dtype={self._data.dtype})"

    @property
    def period(self) -> int:
        """Number of slots."""
        return self._period

    @property
    def values(self) -> np.ndarray:
        """Underlying array (slot ``i`` holds every index congruent to ``i``)."""
        return self._data

    def fill(self, value: float) -> None:
        self._data[:] = value

        return

    def scale(self, factor: float) -> None:
        self._data *= factor

        return

    def sum(self) -> float:
        return float(self._data.sum())
