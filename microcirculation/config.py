"""
Simulation configuration.

Configuration is split into dataclass sections with sensible defaults.
Each section serializes with ``to_dict`` and is rebuilt with ``from_dict``,
which ignores unknown keys so that older parameter files keep loading.

All quantities are dimensionless model units unless stated otherwise. The
characteristic velocity, pressure and length convert between the two:

- conductance scale ``U / (P * d)`` multiplies the wall friction coefficient
- dimensionless Young modulus is ``E / P``
- vessel diameters are converted to micrometers with ``d * 1e6`` for the
  empirical blood rheology laws
- the exchange coefficient is ``Lp * P / U`` per unit wall surface
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import os

logger = logging.getLogger(__name__)


VISCOSITY_LAWS = ("in_vivo", "in_vitro")
LYMPHATIC_MODELS = ("linear", "sigmoid")
TISSUE_BOUNDARY_TYPES = ("dirichlet", "neumann")


class ConfigError(Exception):
    """Raised when configuration values are invalid or cannot be loaded."""


def _filter_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the keys that are dataclass fields of ``cls``."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class PhysicsConfig:
    """
    Physical constants of blood, vessel walls and tissue.

    Parameters
    ----------
    characteristic_velocity : float
        Characteristic flow speed U.
    characteristic_pressure : float
        Characteristic pressure P.
    characteristic_length : float
        Characteristic length d in meters.
    blood_viscosity : float
        Constant blood viscosity used when hematocrit coupling is disabled.
    plasma_viscosity : float
        Plasma viscosity, the zero-hematocrit limit of the rheology laws.
    viscosity_law : str
        Empirical rheology law, ``"in_vivo"`` or ``"in_vitro"``.
    velocity_profile_order : float
        Order of the axial velocity profile (2 is Poiseuille).
    young_modulus : float
        Young modulus of the vessel wall (same unit as P).
    poisson_ratio : float
        Poisson ratio of the vessel wall.
    wall_permeability : float
        Hydraulic permeability Lp of the vessel wall.
    reflection_coefficient : float
        Oncotic reflection coefficient sigma.
    oncotic_pressure_vessel : float
        Plasma oncotic pressure.
    oncotic_pressure_tissue : float
        Interstitial oncotic pressure.
    tissue_conductivity : float
        Hydraulic conductivity of the interstitium.
    lymphatic_model : str
        ``"linear"`` or ``"sigmoid"`` lymphatic drainage.
    lymphatic_coefficient : float
        Linear drainage coefficient per unit tissue volume.
    lymphatic_pressure : float
        Lymphatic pressure of the linear model.
    lymphatic_sigmoid : list of float
        Coefficients (A, B, C, D) of ``A - B / (1 + exp((p + D) / C))``.
    default_radius : float
        Vessel radius used when no radius file is imported.
    thickness_ratio : float
        Wall thickness as a fraction of the radius, used as fallback.
    """

    characteristic_velocity: float = 1.0
    characteristic_pressure: float = 1.0
    characteristic_length: float = 1.0e-4
    blood_viscosity: float = 3.0
    plasma_viscosity: float = 1.0
    viscosity_law: str = "in_vivo"
    velocity_profile_order: float = 2.0
    young_modulus: float = 1.0e4
    poisson_ratio: float = 0.49
    wall_permeability: float = 1.0e-2
    reflection_coefficient: float = 0.95
    oncotic_pressure_vessel: float = 0.0
    oncotic_pressure_tissue: float = 0.0
    tissue_conductivity: float = 1.0
    lymphatic_model: str = "linear"
    lymphatic_coefficient: float = 0.0
    lymphatic_pressure: float = 0.0
    lymphatic_sigmoid: List[float] = field(
        default_factory=lambda: [0.0, 0.0, 1.0, 0.0]
    )
    default_radius: float = 0.05
    thickness_ratio: float = 0.2

    @property
    def conductance_scale(self) -> float:
        """Scale U / (P d) of the wall friction coefficient."""
        return self.characteristic_velocity / (
            self.characteristic_pressure * self.characteristic_length
        )

    @property
    def exchange_scale(self) -> float:
        """Scale P / U of the vessel wall permeability."""
        return self.characteristic_pressure / self.characteristic_velocity

    @property
    def diameter_to_micrometers(self) -> float:
        """Factor converting a model radius into a diameter in micrometers."""
        return 2.0 * self.characteristic_length * 1.0e6

    @property
    def dimensionless_young_modulus(self) -> float:
        return self.young_modulus / self.characteristic_pressure

    @property
    def oncotic_gradient(self) -> float:
        """Oncotic pressure jump pi_v - pi_t (before sigma)."""
        return self.oncotic_pressure_vessel - self.oncotic_pressure_tissue

    def validate(self) -> List[str]:
        errors = []
        for name in ("characteristic_velocity", "characteristic_pressure", "characteristic_length"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.viscosity_law not in VISCOSITY_LAWS:
            errors.append(
                f"viscosity_law must be one of {VISCOSITY_LAWS}, got {self.viscosity_law!r}"
            )
        if self.lymphatic_model not in LYMPHATIC_MODELS:
            errors.append(
                f"lymphatic_model must be one of {LYMPHATIC_MODELS}, got {self.lymphatic_model!r}"
            )
        if len(self.lymphatic_sigmoid) != 4:
            errors.append("lymphatic_sigmoid needs exactly 4 coefficients (A, B, C, D)")
        elif self.lymphatic_model == "sigmoid" and self.lymphatic_sigmoid[2] == 0:
            errors.append("lymphatic_sigmoid C coefficient must be non-zero")
        if not 0.0 <= self.poisson_ratio < 1.0:
            errors.append("poisson_ratio must be in [0, 1)")
        if self.velocity_profile_order <= 0:
            errors.append("velocity_profile_order must be positive")
        if self.young_modulus <= 0:
            errors.append("young_modulus must be positive")
        if self.wall_permeability < 0:
            errors.append("wall_permeability must be non-negative")
        if self.thickness_ratio <= 0:
            errors.append("thickness_ratio must be positive")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhysicsConfig":
        return cls(**_filter_fields(cls, data))


@dataclass
class TissueConfig:
    """Structured finite-volume grid of the tissue box."""

    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    size: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    cells: Tuple[int, int, int] = (4, 4, 4)
    boundary_type: str = "dirichlet"
    boundary_value: float = 0.0

    def validate(self) -> List[str]:
        errors = []
        if len(self.origin) != 3 or len(self.size) != 3 or len(self.cells) != 3:
            errors.append("origin, size and cells must have 3 components")
            return errors
        if any(s <= 0 for s in self.size):
            errors.append("tissue size must be positive along every axis")
        if any(int(n) < 1 for n in self.cells):
            errors.append("tissue grid needs at least one cell per axis")
        if self.boundary_type not in TISSUE_BOUNDARY_TYPES:
            errors.append(
                f"boundary_type must be one of {TISSUE_BOUNDARY_TYPES}, got {self.boundary_type!r}"
            )
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin": list(self.origin),
            "size": list(self.size),
            "cells": list(self.cells),
            "boundary_type": self.boundary_type,
            "boundary_value": self.boundary_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TissueConfig":
        kwargs = _filter_fields(cls, data)
        for key in ("origin", "size"):
            if key in kwargs:
                kwargs[key] = tuple(float(v) for v in kwargs[key])
        if "cells" in kwargs:
            kwargs["cells"] = tuple(int(v) for v in kwargs["cells"])
        return cls(**kwargs)


@dataclass
class CouplingConfig:
    """
    Settings of the outer fixed-point iteration.

    ``alpha_flow`` and ``alpha_hematocrit`` are the under-relaxation factors,
    ``theta`` the artificial diffusion factor and ``beta`` the coefficient of
    the mixed hematocrit boundary condition.
    """

    compliant_vessels: bool = False
    hematocrit_coupling: bool = True
    theta: float = 1.0
    beta: float = 1.0
    start_hematocrit: float = 0.45
    inlet_hematocrit: float = 0.45
    alpha_flow: float = 1.0
    alpha_hematocrit: float = 1.0
    tol_solution: float = 1.0e-6
    tol_mass: float = 1.0e-6
    tol_hematocrit: float = 1.0e-6
    max_iterations: int = 50

    def validate(self) -> List[str]:
        errors = []
        for name in ("alpha_flow", "alpha_hematocrit"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                errors.append(f"{name} must be in (0, 1], got {value}")
        if self.theta < 0:
            errors.append("theta must be non-negative")
        if self.beta <= 0:
            errors.append("beta must be positive")
        if self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")
        for name in ("tol_solution", "tol_mass", "tol_hematocrit"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CouplingConfig":
        return cls(**_filter_fields(cls, data))


@dataclass
class ImportConfig:
    """Optional per-element override files (one value per vessel element)."""

    import_radius: bool = False
    radius_file: Optional[str] = None
    import_thickness: bool = False
    thickness_file: Optional[str] = None
    import_permeability: bool = False
    permeability_file: Optional[str] = None
    import_young_modulus: bool = False
    young_modulus_file: Optional[str] = None
    import_reflection: bool = False
    reflection_file: Optional[str] = None

    def validate(self) -> List[str]:
        errors = []
        for name in ("radius", "permeability", "young_modulus", "reflection"):
            if getattr(self, f"import_{name}") and not getattr(self, f"{name}_file"):
                errors.append(f"import_{name} is enabled but {name}_file is not set")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportConfig":
        return cls(**_filter_fields(cls, data))


@dataclass
class OutputConfig:
    """Output artifacts. ``save_every = 0`` only writes the final dump."""

    output_dir: Optional[str] = None
    residual_file: str = "Residuals.txt"
    write_vtk: bool = True
    save_every: int = 0
    print_residuals: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutputConfig":
        return cls(**_filter_fields(cls, data))


@dataclass
class SimulationConfig:
    """Complete configuration of a coupled simulation."""

    physics: PhysicsConfig = field(default_factory=PhysicsConfig)
    tissue: TissueConfig = field(default_factory=TissueConfig)
    coupling: CouplingConfig = field(default_factory=CouplingConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def validate(self) -> None:
        """
        Check every section.

        Raises
        ------
        ConfigError
            With all collected messages if any section is invalid.
        """
        errors = (
            self.physics.validate()
            + self.tissue.validate()
            + self.coupling.validate()
            + self.imports.validate()
        )
        if self.output.save_every < 0:
            errors.append("save_every must be non-negative")
        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "physics": self.physics.to_dict(),
            "tissue": self.tissue.to_dict(),
            "coupling": self.coupling.to_dict(),
            "imports": self.imports.to_dict(),
            "output": self.output.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        return cls(
            physics=PhysicsConfig.from_dict(data.get("physics", {})),
            tissue=TissueConfig.from_dict(data.get("tissue", {})),
            coupling=CouplingConfig.from_dict(data.get("coupling", {})),
            imports=ImportConfig.from_dict(data.get("imports", {})),
            output=OutputConfig.from_dict(data.get("output", {})),
        )


def load_config(path: str) -> SimulationConfig:
    """
    Load and validate a JSON configuration file.

    Relative import file paths are resolved against the directory of the
    configuration file.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    SimulationConfig
        The validated configuration.
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Malformed configuration file {path}: {e}") from e

    config = SimulationConfig.from_dict(data)

    base_dir = os.path.dirname(os.path.abspath(path))
    for name in (
        "radius_file", "thickness_file", "permeability_file", "young_modulus_file", "reflection_file",
    ):
        value = getattr(config.imports, name)
        if value and not os.path.isabs(value):
            setattr(config.imports, name, os.path.join(base_dir, value))

    config.validate()
    logger.info(f"Loaded configuration from {path}")
    return config


def save_config(config: SimulationConfig, path: str) -> str:
    """Write ``config`` as JSON and return the path."""
    with open(path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
    return path
