"""
Per-element vessel geometry.

The geometry state holds, for every vessel element, the deformable cross
section (radius, area, perimeter, conductance) together with the immutable
reference data it is computed from.
"""

from dataclasses import dataclass
from typing import Dict, Optional
import logging

import numpy as np

from ..config import ImportConfig, PhysicsConfig
from ..io.dof_files import read_element_values, read_optional_element_values
from ..physics.compliance import poiseuille_conductance
from .network import NetworkMesh

logger = logging.getLogger(__name__)


class InitializationError(Exception):
    """Raised when the simulation setup is not physical."""


@dataclass
class GeometryState:
    """
    Mutable per-element geometry.

    ``radius``, ``area``, ``perimeter`` and ``conductance`` are overwritten in
    place by the compliance update; the other arrays never change.
    """

    reference_radius: np.ndarray
    thickness: np.ndarray
    curvature: np.ndarray
    young_modulus: np.ndarray
    permeability: np.ndarray
    reflection: np.ndarray
    poisson_ratio: float
    radius: np.ndarray
    area: np.ndarray
    perimeter: np.ndarray
    conductance: np.ndarray

    @property
    def n_elements(self) -> int:
        return len(self.reference_radius)

    def branch_reference_radii(self, mesh: NetworkMesh) -> np.ndarray:
        """Mean reference radius of every branch."""
        return np.array([
            float(np.mean(self.reference_radius[branch.elements])) for branch in mesh.branches
        ])

    def snapshot(self) -> Dict[str, np.ndarray]:
        """Copies of the deformable fields."""
        return {
            "radius": self.radius.copy(),
            "area": self.area.copy(),
            "perimeter": self.perimeter.copy(),
            "conductance": self.conductance.copy(),
        }

    def check_positive(self) -> None:
        for name in ("radius", "area", "perimeter", "conductance"):
            values = getattr(self, name)
            if not np.all(values > 0):
                raise InitializationError(f"Vessel {name} must be strictly positive")


def build_geometry(
    mesh: NetworkMesh,
    physics: PhysicsConfig,
    imports: Optional[ImportConfig] = None,
) -> GeometryState:
    """
    Build the reference geometry of every element.

    Radius, permeability, Young modulus and the oncotic reflection
    coefficient are constant unless imported.
    A missing thickness file is not fatal: the thickness falls back to
    ``thickness_ratio * radius``.

    Parameters
    ----------
    mesh : NetworkMesh
        The vessel network.
    physics : PhysicsConfig
        Physical constants.
    imports : ImportConfig, optional
        Per-element override files.

    Returns
    -------
    GeometryState
        Undeformed geometry with Poiseuille conductance.
    """
    imports = imports or ImportConfig()
    n = mesh.n_elements

    if imports.import_radius:
        radius = read_element_values(imports.radius_file, n, "radius")
    else:
        radius = np.full(n, physics.default_radius)
    if not np.all(radius > 0):
        raise InitializationError("Vessel radius must be strictly positive")

    thickness = None
    if imports.import_thickness:
        thickness = read_optional_element_values(imports.thickness_file, n, "thickness")
        if thickness is None:
            logger.warning(
                f"Thickness file {imports.thickness_file} not found, "
                f"using thickness = {physics.thickness_ratio} * radius"
            )
    if thickness is None:
        thickness = physics.thickness_ratio * radius

    if imports.import_permeability:
        permeability = read_element_values(imports.permeability_file, n, "permeability")
    else:
        permeability = np.full(n, physics.wall_permeability)

    if imports.import_young_modulus:
        young = read_element_values(imports.young_modulus_file, n, "Young modulus")
        young = young / physics.characteristic_pressure
    else:
        young = np.full(n, physics.dimensionless_young_modulus)

    if imports.import_reflection:
        reflection = read_element_values(imports.reflection_file, n, "reflection coefficient")
        if not np.all((reflection >= 0.0) & (reflection <= 1.0)):
            raise InitializationError("Oncotic reflection coefficients must lie in [0, 1]")
    else:
        reflection = np.full(n, physics.reflection_coefficient)

    curvature = mesh.element_curvature()
    area = np.pi * radius * radius
    conductance = np.array([
        poiseuille_conductance(
            radius[e], area[e], curvature[e],
            physics.velocity_profile_order, physics.conductance_scale,
        )
        for e in range(n)
    ])

    geometry = GeometryState(
        reference_radius=radius.copy(),
        thickness=np.asarray(thickness, dtype=float),
        curvature=curvature,
        young_modulus=np.asarray(young, dtype=float),
        permeability=np.asarray(permeability, dtype=float),
        reflection=np.asarray(reflection, dtype=float),
        poisson_ratio=physics.poisson_ratio,
        radius=radius.copy(),
        area=area,
        perimeter=2.0 * np.pi * radius,
        conductance=conductance,
    )
    geometry.check_positive()
    return geometry
