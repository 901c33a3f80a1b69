"""
Apparent blood viscosity.

Empirical laws of Pries et al. for the apparent viscosity of blood in a tube
as a function of the discharge hematocrit and the tube diameter (in
micrometers):

- ``in_vitro``: glass-tube law (Pries 1992)
- ``in_vivo``: microvascular law with the endothelial surface layer
  correction (Pries 1994)

Both return the plasma viscosity exactly when the hematocrit is zero.
"""

from typing import Callable, Dict, Union
import logging

import numpy as np

logger = logging.getLogger(__name__)

ArrayLike = Union[float, np.ndarray]

REFERENCE_HEMATOCRIT = 0.45


class ViscosityError(Exception):
    """Raised when an apparent viscosity is not finite and positive."""


def _shape_exponent(diameter: np.ndarray) -> np.ndarray:
    """Diameter dependent exponent C of the hematocrit dependence."""
    tail = 1.0 / (1.0 + 1.0e-11 * np.power(diameter, 12))
    return (0.8 + np.exp(-0.075 * diameter)) * (-1.0 + tail) + tail


def _hematocrit_factor(hematocrit: np.ndarray, diameter: np.ndarray) -> np.ndarray:
    c = _shape_exponent(diameter)
    return (np.power(1.0 - hematocrit, c) - 1.0) / (
        np.power(1.0 - REFERENCE_HEMATOCRIT, c) - 1.0
    )


def _finish(result: np.ndarray, hematocrit: np.ndarray, plasma_viscosity: float) -> ArrayLike:
    result = np.where(hematocrit == 0.0, plasma_viscosity, result)
    if result.ndim == 0:
        return float(result)
    return result


def in_vitro_viscosity(hematocrit: ArrayLike, diameter: ArrayLike, plasma_viscosity: float) -> ArrayLike:
    """
    Glass-tube viscosity law.

    Parameters
    ----------
    hematocrit : float or np.ndarray
        Discharge hematocrit.
    diameter : float or np.ndarray
        Tube diameter in micrometers.
    plasma_viscosity : float
        Viscosity of plasma.
    """
    h = np.asarray(hematocrit, dtype=float)
    d = np.asarray(diameter, dtype=float)
    mu_045 = 220.0 * np.exp(-1.3 * d) + 3.2 - 2.44 * np.exp(-0.06 * np.power(d, 0.645))
    with np.errstate(divide="ignore", invalid="ignore"):
        relative = 1.0 + (mu_045 - 1.0) * _hematocrit_factor(h, d)
    return _finish(plasma_viscosity * relative, h, plasma_viscosity)


def in_vivo_viscosity(hematocrit: ArrayLike, diameter: ArrayLike, plasma_viscosity: float) -> ArrayLike:
    """
    Microvascular viscosity law.

    Only meaningful for diameters above 1.1 micrometers.
    """
    h = np.asarray(hematocrit, dtype=float)
    d = np.asarray(diameter, dtype=float)
    mu_045 = 6.0 * np.exp(-0.085 * d) + 3.2 - 2.44 * np.exp(-0.06 * np.power(d, 0.645))
    with np.errstate(divide="ignore", invalid="ignore"):
        wall = (d / (d - 1.1)) ** 2
        relative = (1.0 + (mu_045 - 1.0) * _hematocrit_factor(h, d) * wall) * wall
    return _finish(plasma_viscosity * relative, h, plasma_viscosity)


VISCOSITY_LAWS: Dict[str, Callable[..., ArrayLike]] = {
    "in_vivo": in_vivo_viscosity,
    "in_vitro": in_vitro_viscosity,
}


def blood_viscosity(
    hematocrit: ArrayLike,
    diameter: ArrayLike,
    plasma_viscosity: float,
    law: str = "in_vivo",
) -> ArrayLike:
    """Evaluate the named viscosity law."""
    try:
        func = VISCOSITY_LAWS[law]
    except KeyError:
        raise ValueError(f"Unknown viscosity law {law!r}, expected one of {list(VISCOSITY_LAWS)}")
    return func(hematocrit, diameter, plasma_viscosity)
