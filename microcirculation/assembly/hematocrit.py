"""
Assembly of the hematocrit transport system.

Steady advection of the discharge hematocrit along every branch, with P1
nodes private to each branch:

    d(F H)/ds - d/ds(D A dH/ds) = 0,    F = A u

stabilized by a single artificial diffusivity ``D``. Branch ends are
coupled through mixed conditions: inflow extrema impose the inlet
hematocrit weakly, and at junctions and mixed points every outgoing branch
receives the red cell flux the phase separation law assigns to it.
"""

from typing import List, Tuple
import logging

import numpy as np
from scipy import sparse

from ..config import CouplingConfig, PhysicsConfig
from ..core.geometry import GeometryState
from ..core.layout import HematocritLayout
from ..core.network import NetworkMesh
from ..core.topology import NetworkTopology
from ..physics.phase_separation import split_red_cell_flux
from .system import MonolithicSystem

logger = logging.getLogger(__name__)


ADVECTION_BLOCK = "advection"
DIFFUSION_BLOCK = "diffusion"
JUNCTION_BLOCK = "junctions"
BOUNDARY_BLOCK = "boundary"

FLOW_FRACTION_EPS = 1.0e-12


def artificial_diffusivity(mesh: NetworkMesh, velocity: np.ndarray, theta: float) -> float:
    """``theta / 2 * max_e |u_e| L_e`` over the whole network."""
    if mesh.n_elements == 0:
        return 0.0
    return float(np.max(np.abs(velocity) * mesh.element_lengths) * theta / 2.0)


def nodal_areas(mesh: NetworkMesh, layout: HematocritLayout, area: np.ndarray) -> np.ndarray:
    """
    Cross-section area at every hematocrit node.

    Interior nodes average their two elements, end nodes take the area of
    their only element.
    """
    result = np.empty(layout.total)
    for branch in mesh.branches:
        element_area = area[branch.elements]
        nodes = np.empty(branch.n_elements + 1)
        nodes[0] = element_area[0]
        nodes[-1] = element_area[-1]
        nodes[1:-1] = 0.5 * (element_area[:-1] + element_area[1:])
        result[layout.branch_slice(branch.id)] = nodes
    return result


def _advection_and_diffusion(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    layout: HematocritLayout,
    flux: np.ndarray,
    node_area: np.ndarray,
    diffusivity: float,
) -> None:
    lengths = mesh.element_lengths
    system.open_block(ADVECTION_BLOCK)
    system.open_block(DIFFUSION_BLOCK)
    for branch in mesh.branches:
        for k, e in enumerate(branch.elements):
            first, _ = layout.element_nodes(branch, k)
            advection = 0.5 * flux[e] * np.array([[-1.0, 1.0], [-1.0, 1.0]])
            system.add(ADVECTION_BLOCK, advection, first, first)

            mean_area = 0.5 * (node_area[first] + node_area[first + 1])
            stiffness = diffusivity * mean_area / lengths[e]
            system.add(DIFFUSION_BLOCK, stiffness * np.array([[1.0, -1.0], [-1.0, 1.0]]), first, first)
    system.close_block(ADVECTION_BLOCK)
    system.close_block(DIFFUSION_BLOCK)


def _inlet_boundaries(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: HematocritLayout,
    flux: np.ndarray,
    node_area: np.ndarray,
    beta: float,
    inlet_hematocrit: float,
) -> int:
    n_inlets = 0
    with system.assemble(BOUNDARY_BLOCK):
        for extremum in topology.extrema:
            branch = mesh.branches[extremum.branch]
            element = branch.end_element(extremum.sign)
            # outflow ends keep the natural condition
            if extremum.sign * flux[element] < 0:
                continue
            node = layout.end_node(extremum.branch, extremum.sign)
            weight = beta * node_area[node]
            system.add(BOUNDARY_BLOCK, np.array([[weight]]), node, node)
            system.add_rhs(BOUNDARY_BLOCK, [weight * inlet_hematocrit], node)
            n_inlets += 1
    return n_inlets


def _junction_split(
    entries: Tuple[Tuple[int, int], ...],
    mesh: NetworkMesh,
    layout: HematocritLayout,
    geometry: GeometryState,
    flux: np.ndarray,
    h_old: np.ndarray,
    physics: PhysicsConfig,
):
    """
    Incoming and outgoing branch ends of one junction.

    Returns
    -------
    incoming : list of (node, inflow)
    outgoing : list of (node, flow_fraction, red_cell_fraction)
    total_outflow : float
    """
    incoming: List[Tuple[int, float, int]] = []
    outgoing: List[Tuple[int, float, int]] = []
    for branch_id, sign in entries:
        element = mesh.branches[branch_id].end_element(sign)
        phi = sign * flux[element]
        node = layout.end_node(branch_id, sign)
        if phi < 0:
            incoming.append((node, -phi, element))
        elif phi > 0:
            outgoing.append((node, phi, element))

    if not incoming or not outgoing:
        return [], [], 0.0

    total_out = sum(phi for _, phi, _ in outgoing)
    flow_fractions = [phi / total_out for _, phi, _ in outgoing]

    if len(incoming) == 1 and len(outgoing) == 2:
        parent_node, _, parent_element = incoming[0]
        to_um = physics.diameter_to_micrometers
        red_cell = split_red_cell_flux(
            flow_fractions,
            geometry.radius[parent_element] * to_um,
            [geometry.radius[element] * to_um for _, _, element in outgoing],
            h_old[parent_node],
        )
    else:
        red_cell = list(flow_fractions)

    return (
        [(node, f_in) for node, f_in, _ in incoming],
        [(node, fqb, fqe) for (node, _, _), fqb, fqe in zip(outgoing, flow_fractions, red_cell)],
        total_out,
    )


def _junction_conditions(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: HematocritLayout,
    geometry: GeometryState,
    flux: np.ndarray,
    node_area: np.ndarray,
    h_old: np.ndarray,
    beta: float,
    physics: PhysicsConfig,
) -> None:
    records = [(j.vertex, j.branches) for j in topology.junctions]
    records += [(m.vertex, m.branches) for m in topology.mixed_points]

    rows, cols, vals = [], [], []
    for vertex, entries in records:
        incoming, outgoing, total_out = _junction_split(
            entries, mesh, layout, geometry, flux, h_old, physics
        )
        if not outgoing:
            logger.debug(f"No through-flow at vertex {vertex}, hematocrit junction skipped")
            continue
        for node, fqb, fqe in outgoing:
            weight = beta * node_area[node]
            ratio = fqe / fqb if fqb >= FLOW_FRACTION_EPS else 1.0
            rows.append(node)
            cols.append(node)
            vals.append(weight)
            for in_node, f_in in incoming:
                rows.append(node)
                cols.append(in_node)
                vals.append(-weight * ratio * f_in / total_out)

    local = sparse.coo_matrix((vals, (rows, cols)), shape=(layout.total, layout.total))
    with system.assemble(JUNCTION_BLOCK):
        system.add(JUNCTION_BLOCK, local)


def assemble_hematocrit_system(
    system: MonolithicSystem,
    mesh: NetworkMesh,
    topology: NetworkTopology,
    layout: HematocritLayout,
    geometry: GeometryState,
    velocity: np.ndarray,
    h_old: np.ndarray,
    coupling: CouplingConfig,
    physics: PhysicsConfig,
) -> float:
    """
    Rebuild every block of the hematocrit system for the given velocity.

    Parameters
    ----------
    system : MonolithicSystem
        System of size ``layout.total``.
    velocity : np.ndarray
        Mean velocity of every vessel element.
    h_old : np.ndarray
        Previous hematocrit iterate, used by the phase separation law.

    Returns
    -------
    float
        The artificial diffusivity used.
    """
    flux = geometry.area * velocity
    node_area = nodal_areas(mesh, layout, geometry.area)
    diffusivity = artificial_diffusivity(mesh, velocity, coupling.theta)

    _advection_and_diffusion(system, mesh, layout, flux, node_area, diffusivity)
    n_inlets = _inlet_boundaries(
        system, mesh, topology, layout, flux, node_area, coupling.beta, coupling.inlet_hematocrit
    )
    if n_inlets == 0:
        logger.warning("No network extremum receives inflow; hematocrit is undetermined")
    _junction_conditions(
        system, mesh, topology, layout, geometry, flux, node_area, h_old, coupling.beta, physics
    )
    return diffusivity
