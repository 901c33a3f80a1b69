"""
Readers for per-element data files.

A per-element file is an ordered stream of whitespace separated numbers,
one value per vessel element in global element order (branch by branch).
"""

from typing import Optional
import logging
import os

import numpy as np

logger = logging.getLogger(__name__)


class InputFileError(Exception):
    """Raised when a required input file is missing, unreadable or malformed."""


def read_token_stream(path: str) -> np.ndarray:
    """
    Read every numeric token of ``path`` into a flat float array.

    Raises
    ------
    InputFileError
        If the file cannot be read or contains non-numeric tokens.
    """
    if not os.path.isfile(path):
        raise InputFileError(f"Input file not found: {path}")
    try:
        with open(path, "r") as f:
            tokens = f.read().split()
        return np.array(tokens, dtype=float)
    except OSError as e:
        raise InputFileError(f"Cannot read {path}: {e}") from e
    except ValueError as e:
        raise InputFileError(f"Non-numeric token in {path}: {e}") from e


def read_element_values(path: str, n_elements: int, name: str = "values") -> np.ndarray:
    """
    Read one value per vessel element.

    Parameters
    ----------
    path : str
        Token stream file.
    n_elements : int
        Expected number of values.
    name : str
        Quantity name used in messages.

    Returns
    -------
    np.ndarray
        Array of shape (n_elements,).
    """
    values = read_token_stream(path)
    if len(values) != n_elements:
        raise InputFileError(
            f"{name} file {path} has {len(values)} values, expected {n_elements}"
        )
    logger.info(f"Imported {name} for {n_elements} elements from {path}")
    return values


def read_optional_element_values(
    path: Optional[str],
    n_elements: int,
    name: str = "values",
) -> Optional[np.ndarray]:
    """
    Like :func:`read_element_values` but a missing file returns None.

    The caller decides the fallback and is expected to log it.
    """
    if not path or not os.path.isfile(path):
        return None
    return read_element_values(path, n_elements, name)
