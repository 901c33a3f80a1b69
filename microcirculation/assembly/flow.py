"""
Assembly of the coupled tissue / vessel flow system.

Unknowns are ordered ``[p_t | u_v | p_v]`` (see ``DofLayout``). Block rows:

    tissue:   (A_t + B_tt) p_t                - B_tv p_v = f_t - oncotic_t - lymph
    velocity:                 M u_v - (D + J)^T p_v      = 0
    pressure: -B_vt p_t  + (D + J) u_v   + B_vv p_v      = oncotic_v + inflow

``M`` is the Poiseuille friction block (viscosity * conductance * length),
``D`` the per-branch divergence block, ``J`` the junction continuity block
and ``B`` the vessel-tissue exchange blocks weighted by the wall filtration
coefficient ``Lp * perimeter * length``. The tissue Darcy operator, its
boundary terms, the linear lymphatic sink and the vessel boundary conditions
are constant and assembled once; everything else is rebuilt each iteration.
"""

from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
from scipy import sparse

from ..config import PhysicsConfig, TissueConfig
from ..core.geometry import GeometryState
from ..core.layout import DofLayout
from ..core.network import NetworkMesh
from ..core.topology import NetworkTopology
from ..physics.lymphatics import lymphatic_flow
from .system import MonolithicSystem
from .tissue import (
    TissueGrid,
    assemble_darcy_operator,
    vertex_to_element_average,
    vessel_to_tissue_interpolation,
)

logger = logging.getLogger(__name__)


TISSUE_BLOCK = "tissue"
LYMPHATIC_BLOCK = "lymphatics"
VESSEL_BOUNDARY_BLOCK = "vessel_boundary"
POISEUILLE_BLOCK = "poiseuille"
DIVERGENCE_BLOCK = "divergence"
JUNCTION_BLOCK = "junctions"
EXCHANGE_BLOCK = "exchange"
ONCOTIC_BLOCK = "oncotic"
LYMPHATIC_RHS_BLOCK = "lymphatic_rhs"


@dataclass(frozen=True)
class ExchangeOperators:
    """Constant transfer operators between vessel elements and the tissue."""

    tissue_interpolation: sparse.csr_matrix
    vertex_average: sparse.csr_matrix

    @classmethod
    def build(cls, mesh: NetworkMesh, grid: TissueGrid) -> "ExchangeOperators":
        return cls(
            tissue_interpolation=vessel_to_tissue_interpolation(mesh, grid),
            vertex_average=vertex_to_element_average(mesh),
        )

    def vessel_pressure(self, layout: DofLayout, flow: np.ndarray) -> np.ndarray:
        """Mean vessel pressure on every element."""
        return self.vertex_average @ flow[layout.pressure]

    def tissue_pressure(self, layout: DofLayout, flow: np.ndarray) -> np.ndarray:
        """Tissue pressure around every element."""
        return self.tissue_interpolation @ flow[layout.tissue]


def exchange_coefficients(mesh: NetworkMesh, geometry: GeometryState, physics: PhysicsConfig) -> np.ndarray:
    """Wall filtration coefficient ``Lp * P/U * perimeter * length`` per element."""
    return geometry.permeability * physics.exchange_scale * geometry.perimeter * mesh.element_lengths


def oncotic_jump(geometry: GeometryState, physics: PhysicsConfig) -> np.ndarray:
    """``sigma * (pi_v - pi_t)`` per element."""
    return geometry.reflection * physics.oncotic_gradient


def assemble_constant_blocks(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: DofLayout,
    grid: TissueGrid,
    physics: PhysicsConfig,
    tissue: TissueConfig,
) -> None:
    """
    Assemble the blocks that never change: tissue Darcy operator with its
    boundary terms, the linear lymphatic sink and the vessel boundary
    conditions.
    """
    darcy, darcy_rhs = assemble_darcy_operator(
        grid, physics.tissue_conductivity, tissue.boundary_type, tissue.boundary_value
    )
    with system.assemble(TISSUE_BLOCK, constant=True):
        system.add(TISSUE_BLOCK, darcy, layout.tissue_offset, layout.tissue_offset)
        system.add_rhs(TISSUE_BLOCK, darcy_rhs, layout.tissue_offset)

    if physics.lymphatic_model == "linear" and physics.lymphatic_coefficient != 0.0:
        coefficient = physics.lymphatic_coefficient * grid.cell_volume
        with system.assemble(LYMPHATIC_BLOCK, constant=True):
            system.add(
                LYMPHATIC_BLOCK,
                sparse.identity(grid.n_cells) * coefficient,
                layout.tissue_offset,
                layout.tissue_offset,
            )
            system.add_rhs(
                LYMPHATIC_BLOCK,
                np.full(grid.n_cells, coefficient * physics.lymphatic_pressure),
                layout.tissue_offset,
            )

    rows, values = [], []
    with system.assemble(VESSEL_BOUNDARY_BLOCK, constant=True):
        inflow = np.zeros(layout.n_pressure)
        for extremum in topology.extrema:
            if extremum.label == "DIR":
                rows.append(layout.pressure_offset + extremum.vertex)
                values.append(extremum.value)
            else:
                inflow[extremum.vertex] += extremum.value
        system.add_rhs(VESSEL_BOUNDARY_BLOCK, inflow, layout.pressure_offset)
    system.constrain_rows(rows, values)

    if not rows:
        logger.warning("No vessel pressure is prescribed; the flow problem may be singular")


def assemble_poiseuille(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    layout: DofLayout,
    geometry: GeometryState,
    viscosity: np.ndarray,
    junction_vertices: set,
) -> None:
    """
    Per-branch friction and divergence blocks.

    Branch ``b`` is inserted at velocity offset ``branch.element_offset``,
    the prefix sum of the element counts of the branches before it.
    Junction vertices are left to the junction block.
    """
    lengths = mesh.element_lengths
    system.open_block(POISEUILLE_BLOCK)
    system.open_block(DIVERGENCE_BLOCK)
    for branch in mesh.branches:
        elements = np.asarray(branch.elements)
        n = branch.n_elements
        offset = layout.velocity_offset + branch.element_offset

        friction = viscosity[elements] * geometry.conductance[elements] * lengths[elements]
        system.add(POISEUILLE_BLOCK, sparse.diags(friction), offset, offset)

        divergence = sparse.lil_matrix((layout.n_pressure, n))
        for k, e in enumerate(elements):
            tail, head = mesh.elements[e]
            if tail not in junction_vertices:
                divergence[tail, k] = geometry.area[e]
            if head not in junction_vertices:
                divergence[head, k] = -geometry.area[e]
        system.add(DIVERGENCE_BLOCK, divergence, layout.pressure_offset, offset)
        system.add(DIVERGENCE_BLOCK, divergence.T, offset, layout.pressure_offset, scale=-1.0)
    system.close_block(POISEUILLE_BLOCK)
    system.close_block(DIVERGENCE_BLOCK)


def assemble_junctions(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: DofLayout,
    geometry: GeometryState,
) -> None:
    """Flow continuity at junctions, from the signed branch lists."""
    junction = sparse.lil_matrix((layout.n_pressure, layout.n_velocity))
    for record in topology.junctions:
        for branch_id, sign in record.branches:
            e = mesh.branches[branch_id].end_element(sign)
            junction[record.vertex, e] += sign * geometry.area[e]
    with system.assemble(JUNCTION_BLOCK):
        system.add(JUNCTION_BLOCK, junction, layout.pressure_offset, layout.velocity_offset)
        system.add(JUNCTION_BLOCK, junction.T, layout.velocity_offset, layout.pressure_offset, scale=-1.0)


def assemble_exchange(
    system: MonolithicSystem,
    layout: DofLayout,
    operators: ExchangeOperators,
    coefficients: np.ndarray,
) -> None:
    """Vessel-tissue exchange blocks."""
    q = sparse.diags(coefficients)
    m_bar = operators.tissue_interpolation
    m_lin = operators.vertex_average
    b_tt = m_bar.T @ q @ m_bar
    b_tv = m_bar.T @ q @ m_lin
    b_vv = m_lin.T @ q @ m_lin
    with system.assemble(EXCHANGE_BLOCK):
        system.add(EXCHANGE_BLOCK, b_tt, layout.tissue_offset, layout.tissue_offset)
        system.add(EXCHANGE_BLOCK, b_tv, layout.tissue_offset, layout.pressure_offset, scale=-1.0)
        system.add(EXCHANGE_BLOCK, b_tv.T, layout.pressure_offset, layout.tissue_offset, scale=-1.0)
        system.add(EXCHANGE_BLOCK, b_vv, layout.pressure_offset, layout.pressure_offset)


def oncotic_sources(operators: ExchangeOperators, coefficients: np.ndarray, jump: np.ndarray):
    """Oncotic filtration moved to the tissue and vessel right-hand sides."""
    flux = coefficients * jump
    return operators.tissue_interpolation.T @ flux, operators.vertex_average.T @ flux


def assemble_oncotic(
    system: MonolithicSystem,
    layout: DofLayout,
    operators: ExchangeOperators,
    coefficients: np.ndarray,
    jump: np.ndarray,
) -> None:
    tissue_source, vessel_source = oncotic_sources(operators, coefficients, jump)
    with system.assemble(ONCOTIC_BLOCK):
        system.add_rhs(ONCOTIC_BLOCK, tissue_source, layout.tissue_offset, scale=-1.0)
        system.add_rhs(ONCOTIC_BLOCK, vessel_source, layout.pressure_offset)


def assemble_lymphatic_rhs(
    system: MonolithicSystem,
    layout: DofLayout,
    grid: TissueGrid,
    physics: PhysicsConfig,
    tissue_pressure: np.ndarray,
) -> None:
    """Sigmoid drainage evaluated at the previous tissue pressure."""
    with system.assemble(LYMPHATIC_RHS_BLOCK):
        if physics.lymphatic_model == "sigmoid":
            drainage = lymphatic_flow(tissue_pressure, physics) * grid.cell_volume
            system.add_rhs(LYMPHATIC_RHS_BLOCK, drainage, layout.tissue_offset, scale=-1.0)


def assemble_flow_system(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: DofLayout,
    grid: TissueGrid,
    operators: ExchangeOperators,
    geometry: GeometryState,
    viscosity: np.ndarray,
    physics: PhysicsConfig,
    flow_old: Optional[np.ndarray] = None,
) -> None:
    """
    Rebuild every state-dependent block of the flow system.

    Parameters
    ----------
    flow_old : np.ndarray, optional
        Previous flow iterate, needed by the sigmoid lymphatic drainage.
    """
    coefficients = exchange_coefficients(mesh, geometry, physics)
    assemble_poiseuille(system, mesh, layout, geometry, viscosity, set(topology.junction_vertices))
    assemble_junctions(system, mesh, topology, layout, geometry)
    assemble_exchange(system, layout, operators, coefficients)
    assemble_oncotic(system, layout, operators, coefficients, oncotic_jump(geometry, physics))

    if flow_old is None:
        tissue_pressure = np.zeros(layout.n_tissue)
    else:
        tissue_pressure = flow_old[layout.tissue]
    assemble_lymphatic_rhs(system, layout, grid, physics, tissue_pressure)


def total_exchange_flow(
    layout: DofLayout,
    operators: ExchangeOperators,
    coefficients: np.ndarray,
    jump: np.ndarray,
    flow: np.ndarray,
) -> np.ndarray:
    """Fluid filtered from every vessel element into the tissue."""
    return coefficients * (
        operators.vessel_pressure(layout, flow)
        - operators.tissue_pressure(layout, flow)
        - jump
    )


def tissue_residual(
    system: MonolithicSystem,
    layout: DofLayout,
    grid: TissueGrid,
    physics: PhysicsConfig,
    flow: np.ndarray,
) -> np.ndarray:
    """
    Residual of the tissue mass balance at ``flow``.

    Includes the oncotic sources, and the sigmoid drainage evaluated at the
    tissue pressure of ``flow`` itself.
    """
    matrix = system.raw_matrix()
    rhs = system.raw_rhs()
    residual = (matrix[layout.tissue, :] @ flow) - rhs[layout.tissue]
    if physics.lymphatic_model == "sigmoid":
        # the rhs block holds -F(old) V; cancel it before adding F(new) V
        residual += system.block_rhs(LYMPHATIC_RHS_BLOCK)[layout.tissue]
        residual += lymphatic_flow(flow[layout.tissue], physics) * grid.cell_volume
    return residual
