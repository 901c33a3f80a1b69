"""
Vessel network mesh.

A network mesh is a set of vertices joined by straight line elements. The
elements are partitioned a priori into branches: maximal non-branching runs
of elements between two topological features. Branch ``b`` owns the
contiguous element range ``[branch.element_offset, branch.element_offset +
branch.n_elements)`` and its elements are oriented from the branch's first
vertex towards its last one.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import logging

import networkx as nx
import numpy as np

logger = logging.getLogger(__name__)


BOUNDARY_LABELS = ("DIR", "NEU")
INTERIOR_LABEL = "INT"


class NetworkError(Exception):
    """Raised when a network mesh is malformed."""


@dataclass(frozen=True)
class BoundaryVertex:
    """
    Boundary record of a network extremum.

    ``DIR`` prescribes the vessel pressure, ``NEU`` the blood flow rate
    entering the network at the vertex.
    """

    label: str
    value: float
    vertex: int

    def to_dict(self) -> Dict:
        return {"label": self.label, "value": self.value, "vertex": self.vertex}


@dataclass
class Branch:
    """A maximal non-branching run of elements."""

    id: int
    vertices: List[int]
    element_offset: int

    @property
    def n_elements(self) -> int:
        return len(self.vertices) - 1

    @property
    def first_vertex(self) -> int:
        return self.vertices[0]

    @property
    def last_vertex(self) -> int:
        return self.vertices[-1]

    @property
    def elements(self) -> range:
        return range(self.element_offset, self.element_offset + self.n_elements)

    def end_element(self, sign: int) -> int:
        """Element touching the branch start (``sign=+1``) or end (``sign=-1``)."""
        if sign > 0:
            return self.element_offset
        return self.element_offset + self.n_elements - 1


@dataclass
class NetworkMesh:
    """
    Line-element mesh of the vessel network.

    Parameters
    ----------
    points : np.ndarray
        Vertex coordinates, shape (n_vertices, 3).
    elements : np.ndarray
        Vertex index pairs (tail, head), shape (n_elements, 2).
    element_branch : np.ndarray
        Branch id of every element, shape (n_elements,).
    boundary : list of BoundaryVertex
        Boundary records of the primary flow problem.
    """

    points: np.ndarray
    elements: np.ndarray
    element_branch: np.ndarray
    boundary: List[BoundaryVertex] = field(default_factory=list)
    branches: List[Branch] = field(init=False)
    graph: nx.MultiGraph = field(init=False, repr=False)

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        self.elements = np.asarray(self.elements, dtype=int).reshape(-1, 2)
        self.element_branch = np.asarray(self.element_branch, dtype=int).ravel()

        if len(self.element_branch) != len(self.elements):
            raise NetworkError(
                f"element_branch has {len(self.element_branch)} entries "
                f"for {len(self.elements)} elements"
            )
        if len(self.elements) == 0:
            raise NetworkError("Network mesh has no elements")
        if self.elements.min() < 0 or self.elements.max() >= len(self.points):
            raise NetworkError("Element references a vertex that does not exist")
        if np.any(self.elements[:, 0] == self.elements[:, 1]):
            raise NetworkError("Zero-length element (identical end vertices)")
        for record in self.boundary:
            if record.label not in BOUNDARY_LABELS:
                raise NetworkError(f"Unknown boundary label {record.label!r}")

        self.branches = self._partition_branches()
        self.graph = self._build_graph()

        if not nx.is_connected(self.graph):
            logger.warning(
                f"Network has {nx.number_connected_components(self.graph)} "
                "disconnected components"
            )

    def _partition_branches(self) -> List[Branch]:
        n_branches = int(self.element_branch.max()) + 1
        if self.element_branch.min() < 0:
            raise NetworkError("Negative branch id")
        if np.any(np.diff(self.element_branch) < 0):
            raise NetworkError("Elements must be grouped by increasing branch id")

        branches = []
        offsets = np.searchsorted(self.element_branch, np.arange(n_branches + 1))
        for b in range(n_branches):
            start, stop = int(offsets[b]), int(offsets[b + 1])
            if stop == start:
                raise NetworkError(f"Branch {b} has no elements")
            chain = [int(self.elements[start, 0])]
            for e in range(start, stop):
                tail, head = self.elements[e]
                if tail != chain[-1]:
                    raise NetworkError(
                        f"Element {e} of branch {b} does not continue the branch chain"
                    )
                chain.append(int(head))
            branches.append(Branch(id=b, vertices=chain, element_offset=start))
        return branches

    def _build_graph(self) -> nx.MultiGraph:
        graph = nx.MultiGraph()
        graph.add_nodes_from(range(self.n_vertices))
        for e, (tail, head) in enumerate(self.elements):
            graph.add_edge(int(tail), int(head), key=e, branch=int(self.element_branch[e]))
        return graph

    @property
    def n_vertices(self) -> int:
        return len(self.points)

    @property
    def n_elements(self) -> int:
        return len(self.elements)

    @property
    def n_branches(self) -> int:
        return len(self.branches)

    @property
    def element_lengths(self) -> np.ndarray:
        tails = self.points[self.elements[:, 0]]
        heads = self.points[self.elements[:, 1]]
        return np.linalg.norm(heads - tails, axis=1)

    @property
    def element_midpoints(self) -> np.ndarray:
        return 0.5 * (self.points[self.elements[:, 0]] + self.points[self.elements[:, 1]])

    def degree(self, vertex: int) -> int:
        """Number of elements touching ``vertex``."""
        return self.graph.degree(vertex)

    def incident_elements(self, vertex: int) -> List[int]:
        """Sorted ids of the elements touching ``vertex``."""
        return sorted(key for _, _, key in self.graph.edges(vertex, keys=True))

    def boundary_by_vertex(self) -> Dict[int, BoundaryVertex]:
        return {record.vertex: record for record in self.boundary}

    def element_curvature(self) -> np.ndarray:
        """
        Curvature of every element estimated from the branch polyline.

        The curvature at an interior branch vertex is the turning angle
        divided by the mean length of the two adjacent elements; an element
        takes the mean of its two end values. Branch ends have zero curvature.
        """
        lengths = self.element_lengths
        curvature = np.zeros(self.n_elements)
        for branch in self.branches:
            vertex_curv = np.zeros(len(branch.vertices))
            for k in range(1, len(branch.vertices) - 1):
                e_prev = branch.element_offset + k - 1
                e_next = branch.element_offset + k
                t_prev = self.points[branch.vertices[k]] - self.points[branch.vertices[k - 1]]
                t_next = self.points[branch.vertices[k + 1]] - self.points[branch.vertices[k]]
                cos_angle = np.dot(t_prev, t_next) / (lengths[e_prev] * lengths[e_next])
                angle = np.arccos(np.clip(cos_angle, -1.0, 1.0))
                vertex_curv[k] = angle / (0.5 * (lengths[e_prev] + lengths[e_next]))
            for k in range(branch.n_elements):
                curvature[branch.element_offset + k] = 0.5 * (vertex_curv[k] + vertex_curv[k + 1])
        return curvature

    def summary(self) -> Dict:
        return {
            "n_vertices": self.n_vertices,
            "n_elements": self.n_elements,
            "n_branches": self.n_branches,
            "n_boundary": len(self.boundary),
            "total_length": float(self.element_lengths.sum()),
        }

    @classmethod
    def from_branches(
        cls,
        branch_points: Sequence[Sequence[Sequence[float]]],
        end_conditions: Optional[Sequence[Tuple[Optional[Tuple[str, float]], Optional[Tuple[str, float]]]]] = None,
        subdivisions: int = 1,
        merge_tolerance: float = 1e-9,
    ) -> "NetworkMesh":
        """
        Build a mesh from one polyline per branch.

        Coincident points (within ``merge_tolerance``) are merged into shared
        vertices, which is how branches get connected at junctions.

        Parameters
        ----------
        branch_points : sequence of point lists
            Ordered polyline of every branch, at least two points each.
        end_conditions : sequence, optional
            For every branch a pair ``(start_bc, end_bc)``; each entry is
            ``(label, value)`` with label ``DIR``/``NEU``, or None / ``INT``
            for a non-boundary end.
        subdivisions : int
            Number of elements each polyline segment is split into.
        merge_tolerance : float
            Distance below which points are the same vertex.

        Returns
        -------
        NetworkMesh
        """
        if subdivisions < 1:
            raise NetworkError("subdivisions must be at least 1")

        points: List[np.ndarray] = []
        lookup: Dict[Tuple[int, ...], int] = {}

        def vertex_of(p: np.ndarray) -> int:
            key = tuple(np.round(p / merge_tolerance).astype(np.int64))
            if key not in lookup:
                lookup[key] = len(points)
                points.append(p)
            return lookup[key]

        elements = []
        element_branch = []
        boundary: Dict[int, BoundaryVertex] = {}

        for b, polyline in enumerate(branch_points):
            polyline = np.asarray(polyline, dtype=float).reshape(-1, 3)
            if len(polyline) < 2:
                raise NetworkError(f"Branch {b} needs at least two points")

            chain = [vertex_of(polyline[0])]
            for p0, p1 in zip(polyline[:-1], polyline[1:]):
                for s in range(1, subdivisions + 1):
                    if s == subdivisions:
                        chain.append(vertex_of(p1))
                    else:
                        # interior subdivision points are never shared
                        points.append(p0 + (p1 - p0) * s / subdivisions)
                        chain.append(len(points) - 1)
            for tail, head in zip(chain[:-1], chain[1:]):
                elements.append((tail, head))
                element_branch.append(b)

            if end_conditions is not None:
                for vertex, bc in zip((chain[0], chain[-1]), end_conditions[b]):
                    if bc is None or bc[0] == INTERIOR_LABEL:
                        continue
                    boundary[vertex] = BoundaryVertex(label=bc[0], value=float(bc[1]), vertex=vertex)

        return cls(
            points=np.array(points),
            elements=np.array(elements),
            element_branch=np.array(element_branch),
            boundary=sorted(boundary.values(), key=lambda r: r.vertex),
        )
