"""
Network topology builder.

Classifies the vertices of a network mesh into extrema (boundary vertices),
junctions (three or more incident elements) and mixed points (degree-2
vertices joining two different branches), and gives each of them a private
region id. Region ids start at the branch count, since ids below it name the
branches themselves.

Incident branches of a junction carry a sign: -1 when the branch ends at the
junction (its flow enters the junction), +1 when the branch starts there.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np

from .network import BoundaryVertex, NetworkMesh

logger = logging.getLogger(__name__)


INFLOW = -1
OUTFLOW = 1


class TopologyError(Exception):
    """Raised when the network topology is inconsistent. Always fatal."""


@dataclass(frozen=True)
class Extremum:
    """Boundary vertex of the network."""

    label: str
    value: float
    vertex: int
    region: int
    branch: int
    sign: int


@dataclass(frozen=True)
class Junction:
    """
    Vertex where three or more branch ends meet.

    ``branches`` lists ``(branch_id, sign)`` once per incident element, in
    increasing element order. ``scale`` is the sum of the reference radii of
    the incident branches.
    """

    vertex: int
    region: int
    branches: Tuple[Tuple[int, int], ...]
    scale: float

    @property
    def inflow_branches(self) -> List[int]:
        return [b for b, s in self.branches if s == INFLOW]

    @property
    def outflow_branches(self) -> List[int]:
        return [b for b, s in self.branches if s == OUTFLOW]


@dataclass(frozen=True)
class MixedPoint:
    """Degree-2 vertex where one branch hands over to another."""

    vertex: int
    region: int
    branches: Tuple[Tuple[int, int], ...]


@dataclass(frozen=True)
class RegionMap:
    """
    Immutable bidirectional vertex <-> region id map.

    Built once from the ordered list of vertices that need a region.
    """

    first_region: int
    vertex_to_region: Mapping[int, int]
    region_to_vertex: Mapping[int, int]

    @classmethod
    def from_vertices(cls, vertices: Sequence[int], first_region: int) -> "RegionMap":
        """
        Allocate consecutive region ids starting at ``first_region``.

        Raises
        ------
        TopologyError
            If a vertex is listed twice or an id is already taken.
        """
        vertex_to_region: Dict[int, int] = {}
        region_to_vertex: Dict[int, int] = {}
        for offset, vertex in enumerate(vertices):
            region = first_region + offset
            if region in region_to_vertex or region < first_region:
                raise TopologyError(f"Region id {region} is already in use")
            if vertex in vertex_to_region:
                raise TopologyError(
                    f"Vertex {vertex} already owns region {vertex_to_region[vertex]}"
                )
            vertex_to_region[vertex] = region
            region_to_vertex[region] = vertex
        return cls(
            first_region=first_region,
            vertex_to_region=MappingProxyType(vertex_to_region),
            region_to_vertex=MappingProxyType(region_to_vertex),
        )

    def region_of(self, vertex: int) -> int:
        return self.vertex_to_region[vertex]

    def vertex_of(self, region: int) -> int:
        return self.region_to_vertex[region]

    @property
    def region_ids(self) -> Tuple[int, ...]:
        return tuple(sorted(self.region_to_vertex))

    def __len__(self) -> int:
        return len(self.vertex_to_region)


@dataclass(frozen=True)
class NetworkTopology:
    """Result of the topology build. Never mutated afterwards."""

    n_branches: int
    extrema: Tuple[Extremum, ...]
    junctions: Tuple[Junction, ...]
    mixed_points: Tuple[MixedPoint, ...]
    regions: RegionMap
    element_branch: np.ndarray = field(repr=False, compare=False)

    def branch_of_element(self, element: int) -> int:
        return int(self.element_branch[element])

    @property
    def junction_vertices(self) -> List[int]:
        return [j.vertex for j in self.junctions]

    def to_dict(self) -> Dict:
        return {
            "n_branches": self.n_branches,
            "extrema": [
                {
                    "label": x.label, "value": x.value, "vertex": x.vertex,
                    "region": x.region, "branch": x.branch, "sign": x.sign,
                }
                for x in self.extrema
            ],
            "junctions": [
                {
                    "vertex": j.vertex, "region": j.region,
                    "branches": [list(entry) for entry in j.branches],
                    "scale": j.scale,
                }
                for j in self.junctions
            ],
            "mixed_points": [
                {"vertex": m.vertex, "region": m.region, "branches": [list(entry) for entry in m.branches]}
                for m in self.mixed_points
            ],
        }


def _element_sign(mesh: NetworkMesh, element: int, vertex: int) -> int:
    """-1 if the element ends at ``vertex``, +1 if it starts there."""
    tail, head = mesh.elements[element]
    if head == vertex:
        return INFLOW
    if tail == vertex:
        return OUTFLOW
    raise TopologyError(f"Element {element} does not touch vertex {vertex}")


def _branch_of(element_branch: np.ndarray, element: int, n_branches: int) -> int:
    branch = int(element_branch[element])
    if not 0 <= branch < n_branches:
        raise TopologyError(f"No branch contains element {element}")
    return branch


def build_topology(
    mesh: NetworkMesh,
    branch_radii: Optional[Sequence[float]] = None,
    boundary: Optional[Sequence[BoundaryVertex]] = None,
) -> NetworkTopology:
    """
    Classify the vertices of ``mesh`` and allocate their regions.

    Every element is visited once and each of its end vertices is classified
    from its degree the first time it is seen.

    Parameters
    ----------
    mesh : NetworkMesh
        The partitioned network mesh.
    branch_radii : sequence of float, optional
        Reference radius of every branch, used for the junction scale.
        Defaults to zeros.
    boundary : sequence of BoundaryVertex, optional
        Boundary records; defaults to ``mesh.boundary``.

    Returns
    -------
    NetworkTopology

    Raises
    ------
    TopologyError
        If a degree-1 vertex has no boundary record, an element has no
        containing branch or a region id collides.
    """
    n_branches = mesh.n_branches
    if branch_radii is None:
        branch_radii = np.zeros(n_branches)
    branch_radii = np.asarray(branch_radii, dtype=float)
    if len(branch_radii) != n_branches:
        raise TopologyError(
            f"Expected {n_branches} branch radii, got {len(branch_radii)}"
        )

    records = boundary if boundary is not None else mesh.boundary
    boundary_by_vertex = {r.vertex: r for r in records}

    element_branch = np.asarray(mesh.element_branch, dtype=int).copy()
    element_branch.setflags(write=False)

    seen = set()
    # (kind, vertex, payload) in visit order; regions follow this order
    features: List[Tuple[str, int, object]] = []

    for element in range(mesh.n_elements):
        _branch_of(element_branch, element, n_branches)
        for vertex in (int(v) for v in mesh.elements[element]):
            if vertex in seen:
                continue
            seen.add(vertex)
            degree = mesh.degree(vertex)

            if degree == 1:
                record = boundary_by_vertex.get(vertex)
                if record is None:
                    raise TopologyError(
                        f"Vertex {vertex} is a network end but has no boundary record"
                    )
                branch = _branch_of(element_branch, element, n_branches)
                features.append(("extremum", vertex, (record, branch, _element_sign(mesh, element, vertex))))

            elif degree == 2:
                incident = mesh.incident_elements(vertex)
                branches = [_branch_of(element_branch, e, n_branches) for e in incident]
                if branches[0] != branches[1]:
                    entries = tuple(
                        (b, _element_sign(mesh, e, vertex)) for b, e in zip(branches, incident)
                    )
                    features.append(("mixed", vertex, entries))

            else:
                entries = tuple(
                    (_branch_of(element_branch, e, n_branches), _element_sign(mesh, e, vertex))
                    for e in mesh.incident_elements(vertex)
                )
                features.append(("junction", vertex, entries))

    regions = RegionMap.from_vertices([vertex for _, vertex, _ in features], first_region=n_branches)

    extrema, junctions, mixed_points = [], [], []
    for kind, vertex, payload in features:
        region = regions.region_of(vertex)
        if kind == "extremum":
            record, branch, sign = payload
            extrema.append(Extremum(
                label=record.label, value=record.value, vertex=vertex,
                region=region, branch=branch, sign=sign,
            ))
        elif kind == "junction":
            scale = float(sum(branch_radii[b] for b, _ in payload))
            junctions.append(Junction(vertex=vertex, region=region, branches=payload, scale=scale))
        else:
            mixed_points.append(MixedPoint(vertex=vertex, region=region, branches=payload))

    unused = set(boundary_by_vertex) - {x.vertex for x in extrema}
    for vertex in sorted(unused):
        logger.warning(f"Boundary record at vertex {vertex} is not a network end and is ignored")

    logger.info(
        f"Network topology: {n_branches} branches, {len(extrema)} extrema, "
        f"{len(junctions)} junctions, {len(mixed_points)} mixed points"
    )
    for j in junctions:
        logger.debug(f"Junction at vertex {j.vertex} (region {j.region}): branches {j.branches}")

    return NetworkTopology(
        n_branches=n_branches,
        extrema=tuple(extrema),
        junctions=tuple(junctions),
        mixed_points=tuple(mixed_points),
        regions=regions,
        element_branch=element_branch,
    )
