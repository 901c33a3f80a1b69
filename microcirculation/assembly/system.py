"""
Monolithic sparse system made of named blocks.

Every contribution to the global matrix and right-hand side belongs to a
named block. A block is opened (which discards its previous content),
filled with local pieces at global offsets, and closed. Adding into a block
that is not open is an error, so a block can never be accumulated twice
without being cleared first. Constant blocks can only be assembled once.

Rows listed as constrained (strong Dirichlet conditions) are replaced by
identity rows when the global matrix is built.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Union
import logging

import numpy as np
from scipy import sparse

logger = logging.getLogger(__name__)

LocalMatrix = Union[np.ndarray, sparse.spmatrix]


class AssemblyError(Exception):
    """Raised when the assembly protocol of a monolithic system is violated."""


@dataclass
class _Block:
    constant: bool
    rows: List[np.ndarray] = field(default_factory=list)
    cols: List[np.ndarray] = field(default_factory=list)
    vals: List[np.ndarray] = field(default_factory=list)
    rhs: Optional[np.ndarray] = None
    is_open: bool = True
    assemblies: int = 1


class MonolithicSystem:
    """
    Global sparse linear system assembled from named blocks.

    Parameters
    ----------
    size : int
        Number of unknowns.
    name : str
        Label used in messages.
    """

    def __init__(self, size: int, name: str = "system"):
        self.size = int(size)
        self.name = name
        self._blocks: Dict[str, _Block] = {}
        self._constrained_rows = np.zeros(0, dtype=int)
        self._constrained_values = np.zeros(0)

    def open_block(self, name: str, constant: bool = False) -> None:
        """
        Open ``name`` for assembly, discarding its previous content.

        Raises
        ------
        AssemblyError
            If the block is already open, or is a constant block that has
            already been assembled.
        """
        block = self._blocks.get(name)
        if block is not None:
            if block.is_open:
                raise AssemblyError(f"{self.name}: block '{name}' is already open")
            if block.constant:
                raise AssemblyError(
                    f"{self.name}: constant block '{name}' cannot be reassembled"
                )
            assemblies = block.assemblies + 1
        else:
            assemblies = 1
        self._blocks[name] = _Block(constant=constant, assemblies=assemblies)

    def close_block(self, name: str) -> None:
        self._open(name).is_open = False

    @contextmanager
    def assemble(self, name: str, constant: bool = False) -> Iterator["MonolithicSystem"]:
        """Open ``name``, yield the system for ``add`` calls, then close it."""
        self.open_block(name, constant=constant)
        try:
            yield self
        finally:
            self.close_block(name)

    def clear_block(self, name: str) -> None:
        """Drop a state-dependent block entirely."""
        block = self._blocks.get(name)
        if block is None:
            return
        if block.constant:
            raise AssemblyError(f"{self.name}: constant block '{name}' cannot be cleared")
        del self._blocks[name]

    def _open(self, name: str) -> _Block:
        block = self._blocks.get(name)
        if block is None or not block.is_open:
            raise AssemblyError(
                f"{self.name}: block '{name}' must be opened (and thereby cleared) before adding"
            )
        return block

    def add(
        self,
        name: str,
        local: LocalMatrix,
        row_offset: int = 0,
        col_offset: int = 0,
        scale: float = 1.0,
    ) -> None:
        """Add a local matrix into the open block at the given offsets."""
        block = self._open(name)
        coo = sparse.coo_matrix(local)
        n_rows, n_cols = coo.shape
        if row_offset < 0 or col_offset < 0 or row_offset + n_rows > self.size or col_offset + n_cols > self.size:
            raise AssemblyError(
                f"{self.name}: local block of shape {coo.shape} at ({row_offset}, {col_offset}) "
                f"does not fit a system of size {self.size}"
            )
        block.rows.append(coo.row.astype(int) + row_offset)
        block.cols.append(coo.col.astype(int) + col_offset)
        block.vals.append(coo.data.astype(float) * scale)

    def add_rhs(self, name: str, values: Sequence[float], offset: int = 0, scale: float = 1.0) -> None:
        """Add a local right-hand side vector into the open block."""
        block = self._open(name)
        values = np.asarray(values, dtype=float).ravel()
        if offset < 0 or offset + len(values) > self.size:
            raise AssemblyError(
                f"{self.name}: rhs piece of length {len(values)} at {offset} "
                f"does not fit a system of size {self.size}"
            )
        if block.rhs is None:
            block.rhs = np.zeros(self.size)
        block.rhs[offset:offset + len(values)] += scale * values

    def constrain_rows(self, rows: Sequence[int], values: Sequence[float]) -> None:
        """Impose ``x[rows] = values`` strongly."""
        rows = np.asarray(rows, dtype=int)
        values = np.asarray(values, dtype=float)
        if rows.shape != values.shape:
            raise AssemblyError(f"{self.name}: constrained rows and values differ in length")
        self._constrained_rows = rows
        self._constrained_values = values

    def has_block(self, name: str) -> bool:
        return name in self._blocks

    def assembly_count(self, name: str) -> int:
        """How many times ``name`` has been (re)assembled."""
        block = self._blocks.get(name)
        return block.assemblies if block is not None else 0

    def _check_closed(self) -> None:
        open_blocks = [n for n, b in self._blocks.items() if b.is_open]
        if open_blocks:
            raise AssemblyError(f"{self.name}: blocks still open: {open_blocks}")

    def block_matrix(self, name: str) -> sparse.csr_matrix:
        """The global-size matrix of one block."""
        block = self._blocks[name]
        if not block.rows:
            return sparse.csr_matrix((self.size, self.size))
        return sparse.coo_matrix(
            (np.concatenate(block.vals), (np.concatenate(block.rows), np.concatenate(block.cols))),
            shape=(self.size, self.size),
        ).tocsr()

    def block_rhs(self, name: str) -> np.ndarray:
        """The global-size right-hand side of one block."""
        block = self._blocks[name]
        if block.rhs is None:
            return np.zeros(self.size)
        return block.rhs.copy()

    def raw_matrix(self) -> sparse.csr_matrix:
        """Sum of all blocks, without row constraints."""
        self._check_closed()
        rows, cols, vals = [], [], []
        for block in self._blocks.values():
            rows.extend(block.rows)
            cols.extend(block.cols)
            vals.extend(block.vals)
        if not rows:
            return sparse.csr_matrix((self.size, self.size))
        return sparse.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.size, self.size),
        ).tocsr()

    def raw_rhs(self) -> np.ndarray:
        """Sum of all right-hand side pieces, without row constraints."""
        self._check_closed()
        rhs = np.zeros(self.size)
        for block in self._blocks.values():
            if block.rhs is not None:
                rhs += block.rhs
        return rhs

    def matrix(self) -> sparse.csc_matrix:
        """Global matrix with constrained rows replaced by identity rows."""
        matrix = self.raw_matrix()
        if len(self._constrained_rows):
            keep = np.ones(self.size)
            keep[self._constrained_rows] = 0.0
            unit = np.zeros(self.size)
            unit[self._constrained_rows] = 1.0
            matrix = sparse.diags(keep) @ matrix + sparse.diags(unit)
        return sparse.csc_matrix(matrix)

    def rhs(self) -> np.ndarray:
        rhs = self.raw_rhs()
        rhs[self._constrained_rows] = self._constrained_values
        return rhs
