"""
Vessel wall compliance.

Maps the pressures acting on a vessel wall to the deformed cross section.
Three regimes are distinguished by the wall thickness ratio h/R0 and, for
thin walls, by the buckling threshold of the transmural pressure:

- thick arterioles (h/R0 >= 0.1) stay circular and follow Lame's solution
  for a thick-walled cylinder
- thin venules stay circular while the collapsing pressure is below the
  buckling threshold
- above it they buckle and the cross section follows empirical collapse laws
  in the normalized pressure p*, saturated at p* = 5

The conductance returned here is the friction coefficient of the momentum
balance ``mu * conductance * u + area * dp/ds = 0``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Tuple
import logging

import numpy as np

logger = logging.getLogger(__name__)


THICK_WALL_RATIO = 0.1
SATURATION_PRESSURE = 5.0

# Empirical collapsed-tube laws: area = A_COEF * exp(A_EXP * p*) * R0^2 and
# resistance integral = I_COEF * exp(I_EXP * p*)
COLLAPSE_AREA_COEF = 15.95
COLLAPSE_AREA_EXP = -0.545
COLLAPSE_RESISTANCE_COEF = 69.56
COLLAPSE_RESISTANCE_EXP = -1.74


class ComplianceError(Exception):
    """Raised when a deformed cross section is not physical."""


class WallRegime(Enum):
    """Constitutive regime of a vessel wall."""
    THICK_ARTERIOLE = "thick_arteriole"
    THIN_CIRCULAR_VENULE = "thin_circular_venule"
    BUCKLED_VENULE = "buckled_venule"


@dataclass(frozen=True)
class CrossSection:
    """Deformed cross section of a vessel element."""

    radius: float
    area: float
    perimeter: float
    conductance: float


def poiseuille_conductance(
    radius: float,
    area: float,
    curvature: float = 0.0,
    profile_order: float = 2.0,
    scale: float = 1.0,
) -> float:
    """
    Friction coefficient of a circular section.

    ``scale * area^2 * 2 (gamma + 2) / (pi R^4) * (1 + kappa^2 R^2)``;
    for ``area = pi R^2`` this reduces to ``2 pi (gamma + 2)`` times the
    curvature correction.
    """
    return (
        scale * area * area * 2.0 * (profile_order + 2.0)
        / (np.pi * radius ** 4)
        * (1.0 + curvature * curvature * radius * radius)
    )


def buckling_threshold(ratio: float, young: float, poisson: float) -> float:
    """Transmural pressure at which a thin circular wall buckles."""
    return 3.0 * young * ratio ** 3 / (12.0 * (1.0 - poisson * poisson))


def collapse_pressure(delta_p: float, ratio: float, young: float, poisson: float) -> float:
    """Normalized collapse pressure p* (not clipped)."""
    return delta_p * 12.0 * (1.0 - poisson * poisson) / (young * ratio ** 3)


def select_regime(ratio: float, delta_p: float, young: float, poisson: float) -> WallRegime:
    """
    Select the wall regime.

    Parameters
    ----------
    ratio : float
        Wall thickness over reference radius.
    delta_p : float
        Transmural pressure ``p_ext - p_int``.
    young : float
        Dimensionless Young modulus.
    poisson : float
        Poisson ratio.
    """
    if ratio >= THICK_WALL_RATIO:
        return WallRegime.THICK_ARTERIOLE
    if delta_p <= buckling_threshold(ratio, young, poisson):
        return WallRegime.THIN_CIRCULAR_VENULE
    return WallRegime.BUCKLED_VENULE


def _circular_section(radius, curvature, profile_order, scale) -> CrossSection:
    if not radius > 0:
        raise ComplianceError(f"Deformed radius {radius} is not positive")
    area = np.pi * radius * radius
    return CrossSection(
        radius=float(radius),
        area=float(area),
        perimeter=float(2.0 * np.pi * radius),
        conductance=float(poiseuille_conductance(radius, area, curvature, profile_order, scale)),
    )


def thick_arteriole(r0, h, delta_p, young, poisson, curvature=0.0, profile_order=2.0, scale=1.0) -> CrossSection:
    """Lame solution in transmural form: no deformation at ``delta_p = 0``."""
    outer = r0 + h
    den = outer * outer - r0 * r0
    b1 = -delta_p * r0 * r0 / den
    b2 = delta_p * r0 * r0 * outer * outer / den
    radius = r0 * (1.0 + (1.0 - poisson) / young * b1 - (1.0 + poisson) / young * b2 / (r0 * r0))
    return _circular_section(radius, curvature, profile_order, scale)


def thin_circular_venule(r0, h, delta_p, young, poisson, curvature=0.0, profile_order=2.0, scale=1.0) -> CrossSection:
    """Thin circular shell below the buckling threshold."""
    ratio = h / r0
    radius = r0 * (1.0 - (1.0 - poisson * poisson) / (ratio * young) * delta_p)
    return _circular_section(radius, curvature, profile_order, scale)


def buckled_venule(r0, h, delta_p, young, poisson, curvature=0.0, profile_order=2.0, scale=1.0) -> CrossSection:
    """
    Collapsed thin shell above the buckling threshold.

    Curvature is neglected. The reported radius is the radius of the circle
    with the same area.
    """
    ratio = h / r0
    p_star = min(collapse_pressure(delta_p, ratio, young, poisson), SATURATION_PRESSURE)
    area = COLLAPSE_AREA_COEF * np.exp(COLLAPSE_AREA_EXP * p_star) * r0 * r0
    resistance = COLLAPSE_RESISTANCE_COEF * np.exp(COLLAPSE_RESISTANCE_EXP * p_star)
    return CrossSection(
        radius=float(np.sqrt(area / np.pi)),
        area=float(area),
        perimeter=float(2.0 * np.pi * r0),
        conductance=float(scale * area * area / r0 ** 4 / resistance),
    )


REGIME_LAWS: Dict[WallRegime, Callable[..., CrossSection]] = {
    WallRegime.THICK_ARTERIOLE: thick_arteriole,
    WallRegime.THIN_CIRCULAR_VENULE: thin_circular_venule,
    WallRegime.BUCKLED_VENULE: buckled_venule,
}


def deform_cross_section(
    r0: float,
    h: float,
    p_int: float,
    p_ext: float,
    young: float,
    poisson: float,
    curvature: float = 0.0,
    profile_order: float = 2.0,
    scale: float = 1.0,
) -> Tuple[WallRegime, CrossSection]:
    """
    Deformed cross section of one vessel element.

    Pure function of its arguments.

    Returns
    -------
    regime : WallRegime
    section : CrossSection
    """
    delta_p = p_ext - p_int
    regime = select_regime(h / r0, delta_p, young, poisson)
    section = REGIME_LAWS[regime](r0, h, delta_p, young, poisson, curvature, profile_order, scale)
    return regime, section


def update_geometry(
    geometry,
    p_int: np.ndarray,
    p_ext: np.ndarray,
    profile_order: float = 2.0,
    scale: float = 1.0,
) -> Dict[WallRegime, int]:
    """
    Deform every element of ``geometry`` in place.

    Deformation is always computed from the reference radius, never from the
    previously deformed one.

    Parameters
    ----------
    geometry : GeometryState
        Per-element geometry, overwritten in place.
    p_int : np.ndarray
        Mean vessel pressure on every element.
    p_ext : np.ndarray
        Tissue pressure around every element.

    Returns
    -------
    dict
        Number of elements in each regime.
    """
    counts = {regime: 0 for regime in WallRegime}
    for e in range(geometry.n_elements):
        regime, section = deform_cross_section(
            geometry.reference_radius[e],
            geometry.thickness[e],
            p_int[e],
            p_ext[e],
            geometry.young_modulus[e],
            geometry.poisson_ratio,
            geometry.curvature[e],
            profile_order,
            scale,
        )
        geometry.radius[e] = section.radius
        geometry.area[e] = section.area
        geometry.perimeter[e] = section.perimeter
        geometry.conductance[e] = section.conductance
        counts[regime] += 1

    logger.debug(
        "Wall regimes: " + ", ".join(f"{r.value}={n}" for r, n in counts.items())
    )
    return counts
