"""
Lymphatic drainage of the interstitium.

Drainage is a volumetric sink in the tissue mass balance, either linear in
the interstitial pressure or following a sigmoid pressure-flow curve.
"""

import numpy as np

from ..config import PhysicsConfig


def linear_lymphatic_flow(tissue_pressure: np.ndarray, coefficient: float, lymphatic_pressure: float) -> np.ndarray:
    """Drainage per unit volume ``Q_LF * (p_t - p_L)``."""
    return coefficient * (np.asarray(tissue_pressure, dtype=float) - lymphatic_pressure)


def sigmoid_lymphatic_flow(tissue_pressure: np.ndarray, a: float, b: float, c: float, d: float) -> np.ndarray:
    """Drainage per unit volume ``A - B / (1 + exp((p_t + D) / C))``."""
    p = np.asarray(tissue_pressure, dtype=float)
    return a - b / (1.0 + np.exp((p + d) / c))


def lymphatic_flow(tissue_pressure: np.ndarray, physics: PhysicsConfig) -> np.ndarray:
    """Drainage per unit volume for the configured model."""
    if physics.lymphatic_model == "sigmoid":
        return sigmoid_lymphatic_flow(tissue_pressure, *physics.lymphatic_sigmoid)
    return linear_lymphatic_flow(
        tissue_pressure, physics.lymphatic_coefficient, physics.lymphatic_pressure
    )
