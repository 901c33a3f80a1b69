"""
Legacy ASCII VTK export of the simulation fields.

Vessel fields are written as POLYDATA line sets, the tissue pressure as
STRUCTURED_POINTS cell data.
"""

from typing import Dict, List, Optional, Sequence
import logging
import os

import numpy as np

from ..assembly.tissue import TissueGrid
from ..core.layout import HematocritLayout
from ..core.network import NetworkMesh

logger = logging.getLogger(__name__)


def _write_header(f, title: str, dataset: str) -> None:
    f.write("# vtk DataFile Version 3.0\n")
    f.write(f"{title}\n")
    f.write("ASCII\n")
    f.write(f"DATASET {dataset}\n")


def _write_scalars(f, name: str, values: np.ndarray) -> None:
    f.write(f"SCALARS {name} float 1\n")
    f.write("LOOKUP_TABLE default\n")
    for v in values:
        f.write(f"{v}\n")


def write_polydata(
    output_path: str,
    points: np.ndarray,
    lines: Sequence[Sequence[int]],
    point_data: Optional[Dict[str, np.ndarray]] = None,
    cell_data: Optional[Dict[str, np.ndarray]] = None,
    title: str = "Vessel network",
) -> str:
    """
    Write a POLYDATA file made of polylines.

    Parameters
    ----------
    output_path : str
        Path to the output file.
    points : np.ndarray
        Point coordinates, shape (n_points, 3).
    lines : sequence of index lists
        One entry per VTK line cell.
    point_data, cell_data : dict, optional
        Scalar fields by name, one value per point / per line cell.

    Returns
    -------
    str
        Path to the exported file.
    """
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    size = sum(len(line) + 1 for line in lines)
    with open(output_path, "w") as f:
        _write_header(f, title, "POLYDATA")
        f.write(f"POINTS {len(points)} float\n")
        for p in points:
            f.write(f"{p[0]} {p[1]} {p[2]}\n")

        f.write(f"LINES {len(lines)} {size}\n")
        for line in lines:
            f.write(f"{len(line)} " + " ".join(str(int(i)) for i in line) + "\n")

        if cell_data:
            f.write(f"CELL_DATA {len(lines)}\n")
            for name, values in cell_data.items():
                _write_scalars(f, name, np.asarray(values, dtype=float))

        if point_data:
            f.write(f"POINT_DATA {len(points)}\n")
            for name, values in point_data.items():
                _write_scalars(f, name, np.asarray(values, dtype=float))
    return output_path


def write_structured_points(
    output_path: str,
    grid: TissueGrid,
    cell_data: Dict[str, np.ndarray],
    title: str = "Tissue",
) -> str:
    """Write cell fields of the tissue grid as STRUCTURED_POINTS."""
    nx, ny, nz = grid.shape
    spacing = grid.spacing
    with open(output_path, "w") as f:
        _write_header(f, title, "STRUCTURED_POINTS")
        f.write(f"DIMENSIONS {nx + 1} {ny + 1} {nz + 1}\n")
        f.write(f"ORIGIN {grid.origin[0]} {grid.origin[1]} {grid.origin[2]}\n")
        f.write(f"SPACING {spacing[0]} {spacing[1]} {spacing[2]}\n")
        f.write(f"CELL_DATA {grid.n_cells}\n")
        for name, values in cell_data.items():
            # VTK orders cells with x varying fastest
            ordered = np.asarray(values, dtype=float).reshape(grid.shape).ravel(order="F")
            _write_scalars(f, name, ordered)
    return output_path


def export_fields(
    directory: str,
    mesh: NetworkMesh,
    grid: TissueGrid,
    hematocrit_layout: HematocritLayout,
    tissue_pressure: np.ndarray,
    vessel_pressure: np.ndarray,
    velocity: np.ndarray,
    hematocrit: np.ndarray,
    viscosity: np.ndarray,
    radius: np.ndarray,
    area: np.ndarray,
    exchange_flow: np.ndarray,
) -> List[str]:
    """
    Dump every field of the current state into ``directory``.

    Returns
    -------
    list of str
        Paths of the written files.
    """
    os.makedirs(directory, exist_ok=True)
    elements = [list(e) for e in mesh.elements]
    written = []

    for branch in mesh.branches:
        path = os.path.join(directory, f"Ht{branch.id}.vtk")
        written.append(write_polydata(
            path,
            mesh.points[branch.vertices],
            [list(range(len(branch.vertices)))],
            point_data={"hematocrit": hematocrit[hematocrit_layout.branch_slice(branch.id)]},
            title=f"Hematocrit of branch {branch.id}",
        ))

    written.append(write_polydata(
        os.path.join(directory, "MU.vtk"), mesh.points, elements,
        cell_data={"viscosity": viscosity}, title="Blood viscosity",
    ))
    written.append(write_polydata(
        os.path.join(directory, "radius_def.vtk"), mesh.points, elements,
        cell_data={"radius": radius, "area": area}, title="Deformed vessel radius",
    ))
    written.append(write_polydata(
        os.path.join(directory, "Q_rvar.vtk"), mesh.points, elements,
        cell_data={"exchange_flow": exchange_flow}, title="Vessel to tissue flow rate",
    ))
    written.append(write_polydata(
        os.path.join(directory, "Pv.vtk"), mesh.points, elements,
        point_data={"pressure": vessel_pressure},
        cell_data={"velocity": velocity},
        title="Vessel pressure and velocity",
    ))
    written.append(write_structured_points(
        os.path.join(directory, "Pt.vtk"), grid, {"pressure": tissue_pressure},
        title="Tissue pressure",
    ))

    logger.debug(f"Wrote {len(written)} VTK files to {directory}")
    return written
