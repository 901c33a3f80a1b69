"""
Reader for ``.pts`` vessel network files.

A network is a list of arcs, one arc per branch::

    BEGIN_LIST
    BEGIN_ARC
    BC DIR 1.0          # condition at the start point
    BC INT 0            # condition at the end point
    0  0.0 0.0 0.0  start
    1  1.0 0.0 0.0  end
    2  0.5 0.0 0.0  point
    END_ARC
    ...
    END_LIST

Each arc lists its ``start`` and ``end`` points and any number of interior
``point`` lines in order. ``INT`` marks an end with no boundary condition.
Points of different arcs that coincide become shared vertices.
"""

from typing import List, Optional, Tuple
import logging
import os

import numpy as np

from ..core.network import BOUNDARY_LABELS, INTERIOR_LABEL, NetworkError, NetworkMesh
from .dof_files import InputFileError

logger = logging.getLogger(__name__)


EndCondition = Optional[Tuple[str, float]]


class _Arc:
    def __init__(self, line_no: int):
        self.line_no = line_no
        self.conditions: List[EndCondition] = []
        self.start = None
        self.end = None
        self.interior: List[np.ndarray] = []

    def polyline(self, path: str) -> np.ndarray:
        if self.start is None or self.end is None:
            raise InputFileError(
                f"{path}:{self.line_no}: arc needs both a start and an end point"
            )
        return np.vstack([self.start] + self.interior + [self.end])

    def end_conditions(self) -> Tuple[EndCondition, EndCondition]:
        conditions = list(self.conditions) + [None] * (2 - len(self.conditions))
        return conditions[0], conditions[1]


def _parse_condition(tokens: List[str], path: str, line_no: int) -> EndCondition:
    if len(tokens) < 2:
        raise InputFileError(f"{path}:{line_no}: BC line needs a label")
    label = tokens[1].upper()
    if label == INTERIOR_LABEL:
        return None
    if label not in BOUNDARY_LABELS:
        raise InputFileError(f"{path}:{line_no}: unknown boundary label {tokens[1]!r}")
    if len(tokens) < 3:
        raise InputFileError(f"{path}:{line_no}: BC {label} needs a value")
    try:
        return label, float(tokens[2])
    except ValueError as e:
        raise InputFileError(f"{path}:{line_no}: invalid boundary value {tokens[2]!r}") from e


def parse_arcs(path: str) -> List[_Arc]:
    """Parse the arcs of a ``.pts`` file without building a mesh."""
    if not os.path.isfile(path):
        raise InputFileError(f"Network file not found: {path}")

    arcs: List[_Arc] = []
    current: Optional[_Arc] = None
    in_list = False

    with open(path, "r") as f:
        for line_no, raw in enumerate(f, start=1):
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            tokens = line.split()
            keyword = tokens[0].upper()

            if keyword == "BEGIN_LIST":
                in_list = True
            elif keyword == "END_LIST":
                in_list = False
            elif keyword == "BEGIN_ARC":
                if not in_list or current is not None:
                    raise InputFileError(f"{path}:{line_no}: unexpected BEGIN_ARC")
                current = _Arc(line_no)
            elif keyword == "END_ARC":
                if current is None:
                    raise InputFileError(f"{path}:{line_no}: END_ARC without BEGIN_ARC")
                arcs.append(current)
                current = None
            elif current is None:
                raise InputFileError(f"{path}:{line_no}: data outside of an arc")
            elif keyword == "BC":
                if len(current.conditions) == 2:
                    raise InputFileError(f"{path}:{line_no}: an arc has at most two BC lines")
                current.conditions.append(_parse_condition(tokens, path, line_no))
            else:
                if len(tokens) != 5:
                    raise InputFileError(
                        f"{path}:{line_no}: expected '<id> x y z start|end|point'"
                    )
                try:
                    point = np.array([float(t) for t in tokens[1:4]])
                except ValueError as e:
                    raise InputFileError(f"{path}:{line_no}: invalid coordinates") from e
                kind = tokens[4].lower()
                if kind == "start":
                    current.start = point
                elif kind == "end":
                    current.end = point
                elif kind == "point":
                    current.interior.append(point)
                else:
                    raise InputFileError(f"{path}:{line_no}: unknown point kind {tokens[4]!r}")

    if current is not None:
        raise InputFileError(f"{path}: arc starting at line {current.line_no} is not closed")
    if not arcs:
        raise InputFileError(f"{path}: no arcs found")
    return arcs


def read_pts(path: str, subdivisions: int = 1) -> NetworkMesh:
    """
    Read a ``.pts`` file into a network mesh.

    Parameters
    ----------
    path : str
        Path to the network file.
    subdivisions : int
        Number of elements every polyline segment is split into.

    Returns
    -------
    NetworkMesh
        One branch per arc, in file order.
    """
    arcs = parse_arcs(path)
    try:
        mesh = NetworkMesh.from_branches(
            [arc.polyline(path) for arc in arcs],
            end_conditions=[arc.end_conditions() for arc in arcs],
            subdivisions=subdivisions,
        )
    except NetworkError as e:
        raise InputFileError(f"{path}: {e}") from e

    logger.info(
        f"Read {len(arcs)} arcs from {path}: {mesh.n_vertices} vertices, "
        f"{mesh.n_elements} elements"
    )
    return mesh
