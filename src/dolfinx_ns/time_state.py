"""Simulation clock with output and refinement cadence."""

from __future__ import annotations

from dolfinx_ns.config import TimeParams


class TimeState:
    """
    Current time, step size and step index.

    Advanced exactly once per completed nonlinear solve. Cadence intervals
    are given in time units and converted to whole numbers of steps; an
    interval shorter than one step (including 0) disables that cadence.
    """

    def __init__(
        self,
        end: float,
        delta_t: float,
        output_interval: float = 0.0,
        refinement_interval: float = 0.0,
    ) -> None:
        if delta_t <= 0.0:
            raise ValueError(f"delta_t must be positive, got {delta_t}")
        self.end = float(end)
        self.delta_t = float(delta_t)
        self.output_interval = float(output_interval)
        self.refinement_interval = float(refinement_interval)
        self.current = 0.0
        self.timestep = 0

    @classmethod
    def from_params(cls, params: TimeParams) -> "TimeState":
        return cls(
            params.end_time,
            params.time_step,
            params.output_interval,
            params.refinement_interval,
        )

    def _cadence(self, interval: float) -> int:
        return int(round(interval / self.delta_t)) if interval >= self.delta_t else 0

    def _due(self, interval: float) -> bool:
        n = self._cadence(interval)
        return n > 0 and self.timestep >= n and self.timestep % n == 0

    def increment(self) -> None:
        self.current += self.delta_t
        self.timestep += 1

    def time_to_output(self) -> bool:
        return self._due(self.output_interval)

    def time_to_refine(self) -> bool:
        return self._due(self.refinement_interval)

    def finished(self) -> bool:
        return self.end - self.current <= 1e-12

    def __repr__(self) -> str:
        return f"TimeState(step={self.timestep}, t={self.current:.6e}, dt={self.delta_t:.3e}, end={self.end})"
