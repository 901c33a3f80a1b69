"""
Direct sparse solves with a condition estimate.
"""

from typing import Tuple
import logging

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, onenormest, splu

logger = logging.getLogger(__name__)


class SingularSystemError(Exception):
    """Raised when a linear system cannot be factorized."""


def estimate_rcond(matrix: sparse.csc_matrix, lu) -> float:
    """
    Reciprocal 1-norm condition number estimate ``1 / (|A|_1 |A^-1|_1)``.

    Both norms are estimated with Hager's method, the inverse through the
    LU factors.
    """
    n = matrix.shape[0]
    inverse = LinearOperator(
        (n, n),
        matvec=lu.solve,
        rmatvec=lambda x: lu.solve(x, trans="T"),
        dtype=float,
    )
    norm_a = onenormest(matrix)
    norm_inv = onenormest(inverse)
    if norm_a == 0.0 or norm_inv == 0.0:
        return 0.0
    return float(1.0 / (norm_a * norm_inv))


def solve_sparse(matrix: sparse.spmatrix, rhs: np.ndarray, name: str = "system") -> Tuple[np.ndarray, float]:
    """
    Solve ``matrix @ x = rhs`` with a sparse LU factorization.

    Parameters
    ----------
    matrix : sparse matrix
        Square system matrix.
    rhs : np.ndarray
        Right-hand side.
    name : str
        Label used in messages.

    Returns
    -------
    solution : np.ndarray
    rcond : float
        Reciprocal condition number estimate.

    Raises
    ------
    SingularSystemError
        If the matrix is exactly singular or the solution is not finite.
    """
    matrix = sparse.csc_matrix(matrix, dtype=float)
    try:
        lu = splu(matrix)
    except RuntimeError as e:
        raise SingularSystemError(f"{name}: matrix is singular ({e})") from e

    solution = lu.solve(np.asarray(rhs, dtype=float))
    if not np.all(np.isfinite(solution)):
        raise SingularSystemError(f"{name}: solution contains non-finite values")

    rcond = estimate_rcond(matrix, lu) if matrix.shape[0] > 1 else 1.0
    logger.debug(f"{name}: solved {matrix.shape[0]} unknowns, rcond ~ {rcond:.3e}")
    if rcond < np.finfo(float).eps:
        logger.warning(f"{name}: matrix is close to singular (rcond ~ {rcond:.3e})")
    return solution, rcond
