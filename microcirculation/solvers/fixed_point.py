"""
Fixed-point coupling of vessel flow, wall compliance and hematocrit.

The driver owns one explicit ``SimulationState`` and advances it through a
fixed sequence of phases per outer iteration:

1. compliance: deform the vessel cross sections from the last pressures
2. viscosity: apparent blood viscosity from the last hematocrit
3. assembly: rebuild the state dependent flow blocks
4. flow solve, under-relaxed with ``alpha_flow``
5. hematocrit solve for the new velocity, under-relaxed with
   ``alpha_hematocrit``
6. residuals, logging and periodic output
7. accept the new iterate

Iteration stops when the solution, mass conservation and hematocrit
residuals all fall below their tolerances, or after ``max_iterations``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple
import logging
import os
import time

import numpy as np

from ..assembly.flow import (
    ExchangeOperators,
    assemble_constant_blocks,
    assemble_flow_system,
    exchange_coefficients,
    oncotic_jump,
    tissue_residual,
    total_exchange_flow,
)
from ..assembly.hematocrit import assemble_hematocrit_system
from ..assembly.system import MonolithicSystem
from ..assembly.tissue import TissueGrid
from ..config import SimulationConfig
from ..core.geometry import GeometryState, InitializationError, build_geometry
from ..core.layout import DofLayout, HematocritLayout
from ..core.network import NetworkMesh
from ..core.topology import NetworkTopology, build_topology
from ..io.vtk import export_fields
from ..physics.compliance import update_geometry
from ..physics.lymphatics import lymphatic_flow
from ..physics.viscosity import ViscosityError, blood_viscosity
from ..results import ConvergenceStatus, FlowRates, ResidualEntry, ResidualLog, SimulationResult
from .linear import solve_sparse

logger = logging.getLogger(__name__)


class DriverState(Enum):
    """Life cycle of the coupling driver."""
    INIT = "init"
    ITERATE = "iterate"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass
class SimulationState:
    """Everything the outer iteration reads and writes."""

    geometry: GeometryState
    viscosity: np.ndarray
    flow: np.ndarray
    hematocrit: np.ndarray
    flow_system: MonolithicSystem
    hematocrit_system: MonolithicSystem
    iteration: int = 0
    phase: DriverState = DriverState.INIT
    flow_rcond: float = 1.0
    hematocrit_rcond: float = 1.0
    output_files: List[str] = field(default_factory=list)


def relax(new: np.ndarray, old: np.ndarray, alpha: float) -> np.ndarray:
    """Under-relaxation ``alpha * new + (1 - alpha) * old``."""
    if alpha == 1.0:
        return new.copy()
    return alpha * new + (1.0 - alpha) * old


def relative_change(new: np.ndarray, old: np.ndarray) -> float:
    """``|new - old| / |old|``, or the absolute change when ``old`` vanishes."""
    norm_old = np.linalg.norm(old)
    change = np.linalg.norm(new - old)
    if norm_old == 0.0:
        return float(change)
    return float(change / norm_old)


class CoupledSolver:
    """
    Outer fixed-point driver of a coupled simulation.

    Parameters
    ----------
    mesh : NetworkMesh
        The vessel network with its boundary records.
    config : SimulationConfig
        Validated simulation settings.

    Examples
    --------
    >>> solver = CoupledSolver(read_pts("network.pts"), load_config("run.json"))
    >>> result = solver.run()
    >>> result.status
    <ConvergenceStatus.CONVERGED: 'converged'>
    """

    def __init__(self, mesh: NetworkMesh, config: Optional[SimulationConfig] = None):
        self.mesh = mesh
        self.config = config or SimulationConfig()
        self.config.validate()

        self.grid = TissueGrid.from_config(self.config.tissue)
        self.layout = DofLayout.for_network(mesh, self.grid.n_cells)
        self.hematocrit_layout = HematocritLayout.for_network(mesh)
        self.operators = ExchangeOperators.build(mesh, self.grid)
        self.residuals = ResidualLog()
        self.topology: Optional[NetworkTopology] = None
        self.state: Optional[SimulationState] = None

    # ------------------------------------------------------------------
    # initialization
    # ------------------------------------------------------------------

    def initialize(self) -> SimulationState:
        """
        Build the topology and constant blocks, then solve flow and
        hematocrit once on the reference geometry.
        """
        physics = self.config.physics
        coupling = self.config.coupling

        if physics.tissue_conductivity <= 0:
            raise InitializationError("Tissue conductivity must be positive")
        if physics.blood_viscosity <= 0 or physics.plasma_viscosity <= 0:
            raise InitializationError("Blood and plasma viscosity must be positive")

        geometry = build_geometry(self.mesh, physics, self.config.imports)
        self.topology = build_topology(self.mesh, geometry.branch_reference_radii(self.mesh))

        flow_system = MonolithicSystem(self.layout.total, name="flow")
        assemble_constant_blocks(
            flow_system, self.mesh, self.topology, self.layout, self.grid,
            physics, self.config.tissue,
        )
        hematocrit_system = MonolithicSystem(self.hematocrit_layout.total, name="hematocrit")

        h_start = np.full(self.hematocrit_layout.total, coupling.start_hematocrit)
        state = SimulationState(
            geometry=geometry,
            viscosity=np.empty(self.mesh.n_elements),
            flow=np.zeros(self.layout.total),
            hematocrit=h_start,
            flow_system=flow_system,
            hematocrit_system=hematocrit_system,
        )
        state.viscosity = self._phase_viscosity(state)

        state.flow = self._phase_flow_solve(state, flow_old=None)
        state.hematocrit = self._phase_hematocrit_solve(state, state.flow, h_start)

        logger.info(
            f"Initialized coupled problem: {self.layout.n_tissue} tissue, "
            f"{self.layout.n_velocity} velocity, {self.layout.n_pressure} vessel pressure and "
            f"{self.hematocrit_layout.total} hematocrit unknowns"
        )
        self.state = state
        return state

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def _phase_compliance(self, state: SimulationState) -> None:
        if not self.config.coupling.compliant_vessels:
            return
        physics = self.config.physics
        update_geometry(
            state.geometry,
            self.operators.vessel_pressure(self.layout, state.flow),
            self.operators.tissue_pressure(self.layout, state.flow),
            physics.velocity_profile_order,
            physics.conductance_scale,
        )

    def _phase_viscosity(self, state: SimulationState) -> np.ndarray:
        physics = self.config.physics
        if not self.config.coupling.hematocrit_coupling:
            return np.full(self.mesh.n_elements, physics.blood_viscosity)

        hematocrit = self.hematocrit_layout.element_average(self.mesh, state.hematocrit)
        diameter = state.geometry.radius * physics.diameter_to_micrometers
        viscosity = np.asarray(
            blood_viscosity(hematocrit, diameter, physics.plasma_viscosity, physics.viscosity_law),
            dtype=float,
        )
        if not np.all(np.isfinite(viscosity) & (viscosity > 0)):
            raise ViscosityError(
                f"Iteration {state.iteration}: apparent viscosity is not finite and positive; "
                f"vessel diameters may be below 1.1 um"
            )
        return viscosity

    def _phase_flow_solve(self, state: SimulationState, flow_old: Optional[np.ndarray]) -> np.ndarray:
        assemble_flow_system(
            state.flow_system, self.mesh, self.topology, self.layout, self.grid,
            self.operators, state.geometry, state.viscosity, self.config.physics,
            flow_old=flow_old,
        )
        flow, state.flow_rcond = solve_sparse(
            state.flow_system.matrix(), state.flow_system.rhs(), name="flow"
        )
        return flow

    def _phase_hematocrit_solve(
        self,
        state: SimulationState,
        flow: np.ndarray,
        h_old: np.ndarray,
    ) -> np.ndarray:
        diffusivity = assemble_hematocrit_system(
            state.hematocrit_system, self.mesh, self.topology, self.hematocrit_layout,
            state.geometry, flow[self.layout.velocity], h_old,
            self.config.coupling, self.config.physics,
        )
        logger.debug(f"Hematocrit artificial diffusivity: {diffusivity:.6e}")
        hematocrit, state.hematocrit_rcond = solve_sparse(
            state.hematocrit_system.matrix(), state.hematocrit_system.rhs(), name="hematocrit"
        )
        return hematocrit

    def flow_rates(self, state: SimulationState, flow: np.ndarray) -> FlowRates:
        """Total exchange and lymphatic flow rates at ``flow``."""
        physics = self.config.physics
        coefficients = exchange_coefficients(self.mesh, state.geometry, physics)
        exchange = total_exchange_flow(
            self.layout, self.operators, coefficients,
            oncotic_jump(state.geometry, physics), flow,
        )
        lymph = lymphatic_flow(flow[self.layout.tissue], physics) * self.grid.cell_volume
        return FlowRates(total_exchange=float(exchange.sum()), lymphatic=float(lymph.sum()))

    def _mass_residual(self, state: SimulationState, flow: np.ndarray, rates: FlowRates) -> float:
        residual = tissue_residual(
            state.flow_system, self.layout, self.grid, self.config.physics, flow
        )
        if rates.total_exchange == 0.0:
            logger.warning("Total exchange flow rate is zero; mass residual set to 0")
            return 0.0
        return float(abs(residual.sum() / rates.total_exchange))

    def _phase_residuals(
        self,
        state: SimulationState,
        flow_new: np.ndarray,
        hematocrit_new: np.ndarray,
    ) -> Tuple[ResidualEntry, FlowRates]:
        rates = self.flow_rates(state, flow_new)
        entry = self.residuals.append(
            state.iteration + 1,
            relative_change(flow_new, state.flow),
            self._mass_residual(state, flow_new, rates),
            relative_change(hematocrit_new, state.hematocrit),
        )

        report = logger.info if self.config.output.print_residuals else logger.debug
        report(
            f"Iteration {entry.iteration}: solution {entry.solution:.3e}, "
            f"mass {entry.mass:.3e}, hematocrit {entry.hematocrit:.3e}"
        )
        report(
            f"Iteration {entry.iteration}: TFR {rates.total_exchange:.6e}, "
            f"lymphatic flow {rates.lymphatic:.6e}, net outflow {rates.net_outflow:.6e}"
        )

        h_min, h_max = float(hematocrit_new.min()), float(hematocrit_new.max())
        if h_min < 0.0 or h_max > 1.0:
            logger.warning(
                f"Iteration {entry.iteration}: hematocrit outside [0, 1] "
                f"(min {h_min:.4f}, max {h_max:.4f})"
            )
        return entry, rates

    def _converged(self, entry: ResidualEntry) -> bool:
        coupling = self.config.coupling
        return (
            entry.solution <= coupling.tol_solution
            and abs(entry.mass) <= coupling.tol_mass
            and entry.hematocrit <= coupling.tol_hematocrit
        )

    def step(self, state: SimulationState) -> ResidualEntry:
        """Run one outer iteration and accept its result."""
        coupling = self.config.coupling
        state.phase = DriverState.ITERATE

        self._phase_compliance(state)
        state.viscosity = self._phase_viscosity(state)

        raw_flow = self._phase_flow_solve(state, flow_old=state.flow)
        flow_new = relax(raw_flow, state.flow, coupling.alpha_flow)

        raw_hematocrit = self._phase_hematocrit_solve(state, flow_new, state.hematocrit)
        hematocrit_new = relax(raw_hematocrit, state.hematocrit, coupling.alpha_hematocrit)

        entry, _ = self._phase_residuals(state, flow_new, hematocrit_new)

        save_every = self.config.output.save_every
        if save_every and entry.iteration % save_every == 0:
            state.output_files.extend(self._dump(
                state, flow_new, hematocrit_new, f"iteration_{entry.iteration:04d}"
            ))

        state.flow = flow_new
        state.hematocrit = hematocrit_new
        state.iteration = entry.iteration
        return entry

    # ------------------------------------------------------------------
    # output
    # ------------------------------------------------------------------

    def _dump(
        self,
        state: SimulationState,
        flow: np.ndarray,
        hematocrit: np.ndarray,
        subdirectory: str = "",
    ) -> List[str]:
        output = self.config.output
        if not output.output_dir or not output.write_vtk:
            return []
        physics = self.config.physics
        coefficients = exchange_coefficients(self.mesh, state.geometry, physics)
        exchange = total_exchange_flow(
            self.layout, self.operators, coefficients,
            oncotic_jump(state.geometry, physics), flow,
        )
        return export_fields(
            os.path.join(output.output_dir, subdirectory),
            self.mesh,
            self.grid,
            self.hematocrit_layout,
            tissue_pressure=flow[self.layout.tissue],
            vessel_pressure=flow[self.layout.pressure],
            velocity=flow[self.layout.velocity],
            hematocrit=hematocrit,
            viscosity=state.viscosity,
            radius=state.geometry.radius,
            area=state.geometry.area,
            exchange_flow=exchange,
        )

    def branch_flow_rates(self, state: SimulationState) -> np.ndarray:
        """Mean blood flow rate ``A u`` of every branch."""
        flux = state.geometry.area * state.flow[self.layout.velocity]
        return np.array([float(np.mean(flux[branch.elements])) for branch in self.mesh.branches])

    # ------------------------------------------------------------------
    # driver
    # ------------------------------------------------------------------

    def run(self) -> SimulationResult:
        """
        Initialize and iterate until convergence or ``max_iterations``.

        Returns
        -------
        SimulationResult
            Final iterate. Reaching the iteration limit is not an error; the
            status then reads ``MAX_ITERATIONS_REACHED``.
        """
        start = time.perf_counter()
        state = self.state or self.initialize()
        coupling = self.config.coupling

        converged = False
        while state.iteration < coupling.max_iterations:
            entry = self.step(state)
            if self._converged(entry):
                converged = True
                break

        if converged:
            state.phase = DriverState.CONVERGED
            status = ConvergenceStatus.CONVERGED
            logger.info(f"Coupled problem converged in {state.iteration} iterations")
        else:
            state.phase = DriverState.MAX_ITERATIONS_REACHED
            status = ConvergenceStatus.MAX_ITERATIONS_REACHED
            logger.warning(
                f"Coupled problem did not converge within {coupling.max_iterations} iterations"
            )

        state.output_files.extend(self._dump(state, state.flow, state.hematocrit))
        output = self.config.output
        if output.output_dir:
            state.output_files.append(
                self.residuals.write(os.path.join(output.output_dir, output.residual_file))
            )

        rates = self.flow_rates(state, state.flow)
        logger.info(
            f"Total exchange flow rate {rates.total_exchange:.6e}, "
            f"lymphatic flow rate {rates.lymphatic:.6e}"
        )

        return SimulationResult(
            status=status,
            iterations=state.iteration,
            residuals=self.residuals,
            tissue_pressure=state.flow[self.layout.tissue].copy(),
            vessel_velocity=state.flow[self.layout.velocity].copy(),
            vessel_pressure=state.flow[self.layout.pressure].copy(),
            hematocrit=state.hematocrit.copy(),
            viscosity=state.viscosity.copy(),
            radius=state.geometry.radius.copy(),
            area=state.geometry.area.copy(),
            branch_flow_rates=self.branch_flow_rates(state),
            flow_rates=rates,
            elapsed_seconds=time.perf_counter() - start,
            output_files=list(state.output_files),
        )


def run_simulation(mesh: NetworkMesh, config: Optional[SimulationConfig] = None) -> SimulationResult:
    """Convenience wrapper: build a ``CoupledSolver`` and run it."""
    return CoupledSolver(mesh, config).run()
