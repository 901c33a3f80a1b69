"""
Degree-of-freedom layouts of the two monolithic systems.

The flow vector is ``[tissue pressure | vessel velocity | vessel pressure]``:
one tissue pressure per finite-volume cell, one velocity per vessel element
(branch blocks at prefix-sum offsets) and one pressure per network vertex.

The hematocrit vector holds one P1 node per branch vertex; branches do not
share nodes, so branch ``b`` owns ``n_elements(b) + 1`` consecutive dofs.
"""

from dataclasses import dataclass
from typing import List

import numpy as np

from .network import Branch, NetworkMesh


@dataclass(frozen=True)
class DofLayout:
    """Fixed sub-ranges of the flow unknowns."""

    n_tissue: int
    n_velocity: int
    n_pressure: int

    @property
    def total(self) -> int:
        return self.n_tissue + self.n_velocity + self.n_pressure

    @property
    def tissue_offset(self) -> int:
        return 0

    @property
    def velocity_offset(self) -> int:
        return self.n_tissue

    @property
    def pressure_offset(self) -> int:
        return self.n_tissue + self.n_velocity

    @property
    def tissue(self) -> slice:
        return slice(self.tissue_offset, self.velocity_offset)

    @property
    def velocity(self) -> slice:
        return slice(self.velocity_offset, self.pressure_offset)

    @property
    def pressure(self) -> slice:
        return slice(self.pressure_offset, self.total)

    @classmethod
    def for_network(cls, mesh: NetworkMesh, n_cells: int) -> "DofLayout":
        return cls(n_tissue=n_cells, n_velocity=mesh.n_elements, n_pressure=mesh.n_vertices)


@dataclass(frozen=True)
class HematocritLayout:
    """Per-branch P1 hematocrit nodes."""

    offsets: tuple
    counts: tuple

    @property
    def total(self) -> int:
        return int(sum(self.counts))

    def branch_slice(self, branch: int) -> slice:
        return slice(self.offsets[branch], self.offsets[branch] + self.counts[branch])

    def end_node(self, branch: int, sign: int) -> int:
        """Global node at the branch start (``sign=+1``) or end (``sign=-1``)."""
        if sign > 0:
            return self.offsets[branch]
        return self.offsets[branch] + self.counts[branch] - 1

    def element_nodes(self, branch: Branch, local_element: int) -> tuple:
        first = self.offsets[branch.id] + local_element
        return first, first + 1

    def element_average(self, mesh: NetworkMesh, values: np.ndarray) -> np.ndarray:
        """Mean of the two end-node values of every element."""
        result = np.empty(mesh.n_elements)
        for branch in mesh.branches:
            nodes = values[self.branch_slice(branch.id)]
            result[branch.elements] = 0.5 * (nodes[:-1] + nodes[1:])
        return result

    @classmethod
    def for_network(cls, mesh: NetworkMesh) -> "HematocritLayout":
        counts: List[int] = [branch.n_elements + 1 for branch in mesh.branches]
        offsets = np.concatenate([[0], np.cumsum(counts)[:-1]]).astype(int)
        return cls(offsets=tuple(int(o) for o in offsets), counts=tuple(counts))
