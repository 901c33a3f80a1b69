"""
Tissue discretization and vessel-tissue transfer operators.

The interstitium is a box split into a structured grid of cells with one
pressure unknown each (cell-centred finite volumes, two-point fluxes).
Vessel elements exchange fluid with the cell containing their midpoint.
"""

from dataclasses import dataclass
from typing import Tuple
import logging

import numpy as np
from scipy import sparse

from ..config import TissueConfig
from ..core.network import NetworkMesh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TissueGrid:
    """Structured grid of the tissue box."""

    origin: Tuple[float, float, float]
    size: Tuple[float, float, float]
    shape: Tuple[int, int, int]

    @classmethod
    def from_config(cls, config: TissueConfig) -> "TissueGrid":
        return cls(
            origin=tuple(float(v) for v in config.origin),
            size=tuple(float(v) for v in config.size),
            shape=tuple(int(v) for v in config.cells),
        )

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.shape))

    @property
    def spacing(self) -> np.ndarray:
        return np.asarray(self.size) / np.asarray(self.shape)

    @property
    def cell_volume(self) -> float:
        return float(np.prod(self.spacing))

    def cell_centers(self) -> np.ndarray:
        axes = [
            self.origin[k] + (np.arange(self.shape[k]) + 0.5) * self.spacing[k]
            for k in range(3)
        ]
        grid = np.meshgrid(*axes, indexing="ij")
        return np.stack([g.ravel() for g in grid], axis=1)

    def locate(self, points: np.ndarray) -> np.ndarray:
        """
        Flat index of the cell containing every point.

        Points outside the box are attributed to the nearest cell.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        ijk = np.floor((points - np.asarray(self.origin)) / self.spacing).astype(int)
        outside = np.any((ijk < 0) | (ijk >= np.asarray(self.shape)), axis=1)
        if np.any(outside):
            logger.warning(f"{int(outside.sum())} vessel points lie outside the tissue box")
        ijk = np.clip(ijk, 0, np.asarray(self.shape) - 1)
        return np.ravel_multi_index(ijk.T, self.shape)


def assemble_darcy_operator(
    grid: TissueGrid,
    conductivity: float,
    boundary_type: str = "dirichlet",
    boundary_value: float = 0.0,
) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """
    Two-point flux Darcy operator of the tissue.

    Row ``i`` of ``A @ p`` is the net fluid flux leaving cell ``i``.

    Parameters
    ----------
    grid : TissueGrid
        The tissue grid.
    conductivity : float
        Hydraulic conductivity of the interstitium.
    boundary_type : str
        ``"dirichlet"`` fixes the pressure on every box face to
        ``boundary_value``; ``"neumann"`` imposes zero flux.

    Returns
    -------
    matrix : sparse.csr_matrix
        Operator of shape (n_cells, n_cells).
    rhs : np.ndarray
        Boundary contribution to the right-hand side.
    """
    n = grid.n_cells
    index = np.arange(n).reshape(grid.shape)
    h = grid.spacing
    rows, cols, vals = [], [], []
    diag = np.zeros(n)
    rhs = np.zeros(n)

    for axis in range(3):
        face_area = np.prod(np.delete(h, axis))
        transmissibility = conductivity * face_area / h[axis]

        lower = np.take(index, np.arange(grid.shape[axis] - 1), axis=axis).ravel()
        upper = np.take(index, np.arange(1, grid.shape[axis]), axis=axis).ravel()
        rows.extend([lower, upper])
        cols.extend([upper, lower])
        vals.extend([np.full(len(lower), -transmissibility)] * 2)
        np.add.at(diag, lower, transmissibility)
        np.add.at(diag, upper, transmissibility)

        if boundary_type == "dirichlet":
            boundary_transmissibility = 2.0 * transmissibility
            for face in (0, grid.shape[axis] - 1):
                cells = np.take(index, face, axis=axis).ravel()
                np.add.at(diag, cells, boundary_transmissibility)
                np.add.at(rhs, cells, boundary_transmissibility * boundary_value)

    rows.append(np.arange(n))
    cols.append(np.arange(n))
    vals.append(diag)
    matrix = sparse.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n, n),
    ).tocsr()
    return matrix, rhs


def vessel_to_tissue_interpolation(mesh: NetworkMesh, grid: TissueGrid) -> sparse.csr_matrix:
    """
    Operator picking the tissue pressure around every vessel element.

    Shape (n_elements, n_cells); row ``e`` selects the cell containing the
    midpoint of element ``e``.
    """
    cells = grid.locate(mesh.element_midpoints)
    n = mesh.n_elements
    return sparse.csr_matrix(
        (np.ones(n), (np.arange(n), cells)), shape=(n, grid.n_cells)
    )


def vertex_to_element_average(mesh: NetworkMesh) -> sparse.csr_matrix:
    """Operator averaging the two end-vertex values of every element."""
    n = mesh.n_elements
    rows = np.repeat(np.arange(n), 2)
    cols = mesh.elements.ravel()
    return sparse.csr_matrix(
        (np.full(2 * n, 0.5), (rows, cols)), shape=(n, mesh.n_vertices)
    )
