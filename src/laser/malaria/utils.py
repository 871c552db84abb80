import time
from typing import ClassVar

import numpy as np

__all__ = ["TimingStats", "exp_idft", "validate"]


def exp_idft(coefficients: np.ndarray, rotate_angle: float, nsteps: int) -> np.ndarray:
    """
    Evaluate exp() of a real Fourier series at ``nsteps`` equally spaced points of one period.

    The coefficients are ``[a0, a1, b1, a2, b2, ...]`` so that, with ``w = 2 pi / nsteps``,

        result[t] = exp(a0 + sum_n a_n cos(n w t + rotate_angle) + b_n sin(n w t + rotate_angle))

    Args:
        coefficients (np.ndarray): Odd-length array of Fourier coefficients of the log series.
        rotate_angle (float): Phase shift in radians applied to every harmonic.
        nsteps (int): Number of output points.

    Returns:
        np.ndarray: ``nsteps`` positive values.
    """
    assert len(coefficients) % 2 == 1, "Fourier coefficients must be [a0, a1, b1, a2, b2, ...]"
    w = 2.0 * np.pi / nsteps
    t = np.arange(nsteps, dtype=np.float64)
    log_series = np.full(nsteps, coefficients[0], dtype=np.float64)
    for n in range(1, (len(coefficients) - 1) // 2 + 1):
        angle = n * w * t + rotate_angle
        log_series += coefficients[2 * n - 1] * np.cos(angle) + coefficients[2 * n] * np.sin(angle)

    return np.exp(log_series)


class TimingContext:
    """Accumulated wall time for one label; nests under the context that was open when it started."""

    def __init__(self, label: str, stats: "_TimingStats", parent: dict) -> None:
        self.label = label
        self.stats = stats
        self.parent = parent
        self.children = {}
        self.ncalls = 0
        self.elapsed = 0
        self._start = 0

        return

    def __enter__(self):
        self.ncalls += 1
        self.stats._enter(self)
        self._start = time.perf_counter_ns()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed += time.perf_counter_ns() - self._start
        self.stats._exit(self)

        return

    @property
    def exclusive(self) -> int:
        return self.elapsed - sum(child.elapsed for child in self.children.values())


class _TimingStats:
    """Hierarchical timers: ``with TimingStats.start("label"): ...``."""

    _scale_factors: ClassVar[dict[str, float]] = {
        "ns": 1,
        "us": 1e3,
        "ms": 1e6,
        "s": 1e9,
    }

    def __init__(self) -> None:
        self.reset()

        return

    def reset(self) -> None:
        self.frozen = False
        self.context = {}
        self.root = self.start("root")
        self.root.__enter__()

        return

    def start(self, label: str) -> TimingContext:
        if self.frozen:
            raise RuntimeError("Cannot start new timers after freeze()")

        if label not in self.context:
            self.context[label] = TimingContext(label, self, self.context)

        return self.context[label]

    def _enter(self, context: TimingContext) -> None:
        self.context = context.children
        return

    def _exit(self, context: TimingContext) -> None:
        assert self.context is context.children, f"timer '{context.label}' closed out of order"
        self.context = context.parent
        return

    def freeze(self) -> None:
        assert self.frozen is False
        self.root.__exit__(None, None, None)
        self.frozen = True

        return

    def to_string(self, scale: str = "ms") -> str:
        if not self.frozen:
            raise RuntimeError("Must call freeze() before reporting")
        if scale not in self._scale_factors:
            raise ValueError(f"Invalid scale '{scale}', expected one of {list(self._scale_factors)}")
        factor = self._scale_factors[scale]

        lines = []

        def _recurse(node: TimingContext, depth: int) -> None:
            average = node.elapsed / node.ncalls / factor if node.ncalls > 0 else 0
            lines.append(
                f"{'    ' * depth}{node.label}: {node.ncalls} calls, total {node.elapsed / factor:.3f} {scale}, "
                f"avg {average:.3f} {scale}, excl {node.exclusive / factor:.3f} {scale}"
            )
            for child in node.children.values():
                _recurse(child, depth + 1)

            return

        _recurse(self.root, 0)
        return "\n".join(lines)


TimingStats = _TimingStats()


def validate(pre, post):
    """
    Decorator adding pre- and post-step validation to a component's ``step(tick)`` method.

    The named validation methods only run when ``self.model.validating`` is truthy.
    """

    def decorator(func):
        def wrapper(self, tick: int, *args, **kwargs):
            validating = getattr(self.model, "validating", False)
            if pre and validating:
                with TimingStats.start(pre.__name__):
                    getattr(self, pre.__name__)(tick)
            result = func(self, tick, *args, **kwargs)
            if post and validating:
                with TimingStats.start(post.__name__):
                    getattr(self, post.__name__)(tick)
            return result

        return wrapper

    return decorator
