"""
Red blood cell phase separation at diverging bifurcations.

Empirical law of Pries et al.: the fraction of red cell flux entering a
daughter vessel is a logistic function of the fraction of blood flow it
receives, shifted by a plasma skimming threshold. Diameters are in
micrometers.
"""

from typing import Sequence
import logging

from scipy.special import expit, logit

logger = logging.getLogger(__name__)


def red_cell_fraction(
    flow_fraction: float,
    parent_diameter: float,
    daughter_diameter: float,
    sibling_diameter: float,
    parent_hematocrit: float,
) -> float:
    """
    Fraction of the parent red cell flux entering a daughter branch.

    Parameters
    ----------
    flow_fraction : float
        Daughter blood flow over parent blood flow.
    parent_diameter : float
        Parent vessel diameter.
    daughter_diameter : float
        Diameter of the daughter of interest.
    sibling_diameter : float
        Diameter of the other daughter.
    parent_hematocrit : float
        Discharge hematocrit of the parent vessel.

    Returns
    -------
    float
        Red cell flux fraction in [0, 1].
    """
    scale = (1.0 - parent_hematocrit) / parent_diameter
    ratio = daughter_diameter ** 2 / sibling_diameter ** 2
    a = -13.29 * ((ratio - 1.0) / (ratio + 1.0)) * scale
    b = 1.0 + 6.98 * scale
    x0 = 0.964 * scale

    if flow_fraction <= x0:
        return 0.0
    if flow_fraction >= 1.0 - x0:
        return 1.0
    reduced = (flow_fraction - x0) / (1.0 - 2.0 * x0)
    return float(expit(a + b * logit(reduced)))


def split_red_cell_flux(
    flow_fractions: Sequence[float],
    parent_diameter: float,
    daughter_diameters: Sequence[float],
    parent_hematocrit: float,
) -> list:
    """
    Red cell flux fractions of all daughters of a junction.

    A single parent feeding exactly two daughters uses the phase separation
    law; the second daughter takes the complement so that red cells are
    conserved. Any other configuration splits red cells in proportion to the
    blood flow.
    """
    if len(flow_fractions) != 2:
        return [float(f) for f in flow_fractions]
    first = red_cell_fraction(
        flow_fractions[0],
        parent_diameter,
        daughter_diameters[0],
        daughter_diameters[1],
        parent_hematocrit,
    )
    return [first, 1.0 - first]
