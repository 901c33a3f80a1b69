"""
Result structures of a coupled simulation.

Provides the residual log written during the outer iteration and the final
result record returned by the driver.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging
import os

import numpy as np

logger = logging.getLogger(__name__)


RESIDUAL_HEADER = (
    "Iteration\tSolution Residual\tMass Conservation Residual\tHematocrit Residual"
)


class ConvergenceStatus(Enum):
    """Terminal state of the outer iteration."""
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass(frozen=True)
class ResidualEntry:
    iteration: int
    solution: float
    mass: float
    hematocrit: float

    def as_row(self) -> str:
        return f"{self.iteration}\t{self.solution:.10e}\t{self.mass:.10e}\t{self.hematocrit:.10e}"


class ResidualLog:
    """
    Append-only record of the outer iteration residuals.

    Iterations must be appended in increasing order.
    """

    def __init__(self):
        self._entries: List[ResidualEntry] = []

    def append(self, iteration: int, solution: float, mass: float, hematocrit: float) -> ResidualEntry:
        if self._entries and iteration <= self._entries[-1].iteration:
            raise ValueError(
                f"Residual log iteration {iteration} does not follow {self._entries[-1].iteration}"
            )
        entry = ResidualEntry(int(iteration), float(solution), float(mass), float(hematocrit))
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[ResidualEntry, ...]:
        return tuple(self._entries)

    @property
    def last(self) -> Optional[ResidualEntry]:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def write(self, path: str) -> str:
        """Write the log as a tab separated table with a header line."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            f.write(RESIDUAL_HEADER + "\n")
            for entry in self._entries:
                f.write(entry.as_row() + "\n")
        return path

    def to_list(self) -> List[Dict[str, float]]:
        return [
            {
                "iteration": e.iteration,
                "solution": e.solution,
                "mass": e.mass,
                "hematocrit": e.hematocrit,
            }
            for e in self._entries
        ]


@dataclass
class FlowRates:
    """Fluid balance of the tissue."""

    total_exchange: float = 0.0
    lymphatic: float = 0.0

    @property
    def net_outflow(self) -> float:
        """Fluid leaving the tissue through its box faces."""
        return self.total_exchange - self.lymphatic


@dataclass
class SimulationResult:
    """Final state of a coupled simulation."""

    status: ConvergenceStatus
    iterations: int
    residuals: ResidualLog
    tissue_pressure: np.ndarray
    vessel_velocity: np.ndarray
    vessel_pressure: np.ndarray
    hematocrit: np.ndarray
    viscosity: np.ndarray
    radius: np.ndarray
    area: np.ndarray
    branch_flow_rates: np.ndarray
    flow_rates: FlowRates = field(default_factory=FlowRates)
    elapsed_seconds: float = 0.0
    output_files: List[str] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == ConvergenceStatus.CONVERGED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "iterations": self.iterations,
            "residuals": self.residuals.to_list(),
            "flow_rates": {
                "total_exchange": self.flow_rates.total_exchange,
                "lymphatic": self.flow_rates.lymphatic,
                "net_outflow": self.flow_rates.net_outflow,
            },
            "branch_flow_rates": self.branch_flow_rates.tolist(),
            "hematocrit": {
                "min": float(np.min(self.hematocrit)) if len(self.hematocrit) else 0.0,
                "max": float(np.max(self.hematocrit)) if len(self.hematocrit) else 0.0,
            },
            "vessel_pressure": {
                "min": float(np.min(self.vessel_pressure)),
                "max": float(np.max(self.vessel_pressure)),
            },
            "elapsed_seconds": self.elapsed_seconds,
            "output_files": list(self.output_files),
        }
