"""
Microcirculation - coupled vessel network / tissue blood flow.

Solves steady blood flow in a 1D network of compliant vessels embedded in a
3D porous tissue, coupled through fluid exchange across the vessel walls, and
transports the discharge hematocrit along the network with phase separation
at bifurcations.

Main Entry Points:
    - read_pts(): Load a vessel network from a ``.pts`` arc file
    - load_config(): Load a JSON simulation configuration
    - CoupledSolver / run_simulation(): Run the fixed-point coupling

Example:
    >>> from microcirculation import load_config, read_pts, run_simulation
    >>> mesh = read_pts("network.pts")
    >>> result = run_simulation(mesh, load_config("run.json"))
    >>> result.status.value
    'converged'
"""

from .config import (
    ConfigError,
    CouplingConfig,
    ImportConfig,
    OutputConfig,
    PhysicsConfig,
    SimulationConfig,
    TissueConfig,
    load_config,
    save_config,
)
from .core.network import BoundaryVertex, NetworkMesh
from .core.topology import NetworkTopology, build_topology
from .io.pts import read_pts
from .results import ConvergenceStatus, ResidualLog, SimulationResult
from .solvers.fixed_point import CoupledSolver, run_simulation

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "CouplingConfig",
    "ImportConfig",
    "OutputConfig",
    "PhysicsConfig",
    "SimulationConfig",
    "TissueConfig",
    "load_config",
    "save_config",
    "BoundaryVertex",
    "NetworkMesh",
    "NetworkTopology",
    "build_topology",
    "read_pts",
    "ConvergenceStatus",
    "ResidualLog",
    "SimulationResult",
    "CoupledSolver",
    "run_simulation",
]
