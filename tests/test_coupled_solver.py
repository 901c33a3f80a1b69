"""
Tests for the fixed-point coupling driver.

These run small end-to-end simulations: a straight vessel in a tissue cube
and a symmetric Y bifurcation with analytic Poiseuille flows.
"""

import os

import pytest
import numpy as np


def straight_vessel(subdivisions=4):
    from microcirculation.core.network import NetworkMesh

    return NetworkMesh.from_branches(
        [[(0.1, 0.5, 0.5), (0.9, 0.5, 0.5)]],
        end_conditions=[(("DIR", 1.0), ("DIR", 0.0))],
        subdivisions=subdivisions,
    )


def y_network():
    from microcirculation.core.network import NetworkMesh

    return NetworkMesh.from_branches(
        [
            [(0, 0, 0), (1, 0, 0)],
            [(1, 0, 0), (2, 1, 0)],
            [(1, 0, 0), (2, -1, 0)],
        ],
        end_conditions=[
            (("DIR", 1.0), None),
            (None, ("DIR", 0.0)),
            (None, ("DIR", 0.0)),
        ],
    )


def linear_config(**coupling):
    """Rigid vessels, constant viscosity, no relaxation."""
    from microcirculation.config import SimulationConfig

    config = SimulationConfig()
    config.coupling.compliant_vessels = False
    config.coupling.hematocrit_coupling = False
    config.coupling.alpha_flow = 1.0
    config.coupling.alpha_hematocrit = 1.0
    for key, value in coupling.items():
        setattr(config.coupling, key, value)
    return config


class TestLinearScenario:
    """Tests for the decoupled linear problem."""

    def test_converges_in_one_iteration(self):
        """Test that without compliance and hematocrit feedback one iteration suffices."""
        from microcirculation.results import ConvergenceStatus
        from microcirculation.solvers.fixed_point import CoupledSolver

        result = CoupledSolver(straight_vessel(), linear_config()).run()

        assert result.status == ConvergenceStatus.CONVERGED
        assert result.iterations == 1
        assert len(result.residuals) == 1
        entry = result.residuals.last
        assert entry.solution < 1e-12
        assert entry.hematocrit < 1e-12
        assert abs(entry.mass) < 1e-6

    def test_filtration_leaves_the_vessel(self):
        """Test that a pressurized permeable vessel loses fluid to the tissue."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        result = CoupledSolver(straight_vessel(), linear_config()).run()

        assert result.flow_rates.total_exchange > 0
        flux = result.area * result.vessel_velocity
        assert flux[0] > flux[-1]

    def test_uniform_inlet_hematocrit(self):
        """Test that a single vessel carries the inlet hematocrit unchanged."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config(inlet_hematocrit=0.3, start_hematocrit=0.3)
        result = CoupledSolver(straight_vessel(), config).run()

        np.testing.assert_allclose(result.hematocrit, 0.3, rtol=1e-8)

    def test_lymphatics_drain_all_filtration(self):
        """Test that an insulated tissue returns all filtered fluid through lymphatics."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.tissue.boundary_type = "neumann"
        config.physics.lymphatic_coefficient = 1.0
        result = CoupledSolver(straight_vessel(), config).run()

        assert result.flow_rates.lymphatic == pytest.approx(result.flow_rates.total_exchange, rel=1e-8)
        assert result.flow_rates.net_outflow == pytest.approx(0.0, abs=1e-10)

    def test_rigid_geometry_is_unchanged(self):
        """Test that the radius stays at its reference value without compliance."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        result = CoupledSolver(straight_vessel(), config).run()

        np.testing.assert_array_equal(result.radius, config.physics.default_radius)
        np.testing.assert_array_equal(result.viscosity, config.physics.blood_viscosity)


class TestYNetwork:
    """Tests for a symmetric bifurcation with impermeable walls."""

    def run(self):
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.physics.characteristic_length = 1.0
        config.physics.wall_permeability = 0.0
        config.physics.blood_viscosity = 2.0
        config.tissue.origin = (-0.5, -1.5, -0.5)
        config.tissue.size = (3.0, 3.0, 1.0)
        config.tissue.cells = (3, 3, 1)
        return CoupledSolver(y_network(), config).run(), config

    def test_poiseuille_flows(self):
        """Test the branch flows against the analytic Poiseuille network."""
        result, config = self.run()
        radius = config.physics.default_radius
        mu = config.physics.blood_viscosity

        lengths = np.array([1.0, np.sqrt(2.0), np.sqrt(2.0)])
        conductance = np.pi * radius ** 4 / (8.0 * mu * lengths)
        p_junction = conductance[0] / conductance.sum()
        q_parent = conductance[0] * (1.0 - p_junction)

        assert result.vessel_pressure[1] == pytest.approx(p_junction, rel=1e-8)
        assert result.branch_flow_rates[0] == pytest.approx(q_parent, rel=1e-8)
        assert result.branch_flow_rates[1] == pytest.approx(q_parent / 2.0, rel=1e-8)
        assert result.branch_flow_rates[2] == pytest.approx(q_parent / 2.0, rel=1e-8)

    def test_boundary_pressures(self):
        """Test that Dirichlet vertices hold their prescribed pressures."""
        result, _ = self.run()

        assert result.vessel_pressure[0] == pytest.approx(1.0, abs=1e-12)
        assert result.vessel_pressure[2] == pytest.approx(0.0, abs=1e-12)
        assert result.vessel_pressure[3] == pytest.approx(0.0, abs=1e-12)

    def test_symmetric_hematocrit_split(self):
        """Test that identical daughters receive the parent hematocrit."""
        result, config = self.run()

        np.testing.assert_allclose(result.hematocrit, config.coupling.inlet_hematocrit, rtol=1e-6)

    def test_zero_exchange_gives_zero_mass_residual(self, caplog):
        """Test the mass residual when no fluid crosses the vessel walls."""
        with caplog.at_level("WARNING"):
            result, _ = self.run()

        assert result.flow_rates.total_exchange == 0.0
        assert result.residuals.last.mass == 0.0
        assert "exchange flow rate is zero" in caplog.text


class TestIterationControl:
    """Tests for relaxation and the iteration limit."""

    def test_max_iterations_is_soft(self, caplog):
        """Test that hitting the iteration limit returns the last iterate."""
        from microcirculation.results import ConvergenceStatus
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config(compliant_vessels=True, max_iterations=2, tol_solution=1e-14)
        config.physics.young_modulus = 10.0

        with caplog.at_level("WARNING"):
            result = CoupledSolver(straight_vessel(), config).run()

        assert result.status == ConvergenceStatus.MAX_ITERATIONS_REACHED
        assert result.iterations == 2
        assert [e.iteration for e in result.residuals] == [1, 2]
        assert result.residuals.entries[0].solution > 0
        assert "did not converge" in caplog.text

    def test_compliance_inflates_pressurized_vessel(self):
        """Test that compliant thick-walled vessels widen under inner pressure."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config(compliant_vessels=True, max_iterations=20)
        config.physics.young_modulus = 100.0
        result = CoupledSolver(straight_vessel(), config).run()

        assert result.radius[0] > config.physics.default_radius
        assert result.radius[0] > result.radius[-1]

    def test_relax(self):
        """Test under-relaxation of an iterate."""
        from microcirculation.solvers.fixed_point import relax

        new = np.array([2.0, 4.0])
        old = np.array([0.0, 0.0])

        np.testing.assert_allclose(relax(new, old, 0.25), [0.5, 1.0])
        assert relax(new, old, 1.0) is not new

    def test_hematocrit_coupling_uses_viscosity_law(self):
        """Test that hematocrit coupling replaces the constant blood viscosity."""
        from microcirculation.physics.viscosity import in_vivo_viscosity
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config(hematocrit_coupling=True)
        result = CoupledSolver(straight_vessel(), config).run()

        diameter = config.physics.default_radius * config.physics.diameter_to_micrometers
        expected = in_vivo_viscosity(config.coupling.inlet_hematocrit, diameter, config.physics.plasma_viscosity)
        np.testing.assert_allclose(result.viscosity, expected, rtol=1e-6)


class TestOutputs:
    """Tests for files written during a run."""

    def test_residual_log_and_vtk_files(self, tmp_path):
        """Test that a run writes the residual table and the VTK dumps."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.output.output_dir = str(tmp_path)
        config.output.save_every = 1
        result = CoupledSolver(straight_vessel(), config).run()

        with open(tmp_path / "Residuals.txt") as f:
            lines = f.read().splitlines()
        assert lines[0] == "Iteration\tSolution Residual\tMass Conservation Residual\tHematocrit Residual"
        assert len(lines) == 2
        assert lines[1].split("\t")[0] == "1"

        for name in ("Ht0.vtk", "MU.vtk", "radius_def.vtk", "Q_rvar.vtk", "Pt.vtk", "Pv.vtk"):
            assert (tmp_path / name).exists()
            assert (tmp_path / "iteration_0001" / name).exists()
        assert str(tmp_path / "Residuals.txt") in result.output_files

    def test_vtk_content(self, tmp_path):
        """Test the structure of the vessel and tissue VTK files."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.output.output_dir = str(tmp_path)
        CoupledSolver(straight_vessel(), config).run()

        vessel = (tmp_path / "Pv.vtk").read_text()
        tissue = (tmp_path / "Pt.vtk").read_text()

        assert "DATASET POLYDATA" in vessel
        assert "LINES 4 12" in vessel
        assert "POINT_DATA 5" in vessel
        assert "DATASET STRUCTURED_POINTS" in tissue
        assert "DIMENSIONS 5 5 5" in tissue
        assert "CELL_DATA 64" in tissue

    def test_no_output_dir_writes_nothing(self, tmp_path):
        """Test that files are only written when an output directory is set."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        result = CoupledSolver(straight_vessel(), linear_config()).run()

        assert result.output_files == []

    def test_result_to_dict(self):
        """Test serialization of the result summary."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        data = CoupledSolver(straight_vessel(), linear_config()).run().to_dict()

        assert data["status"] == "converged"
        assert data["iterations"] == 1
        assert len(data["residuals"]) == 1
        assert len(data["branch_flow_rates"]) == 1
        assert "net_outflow" in data["flow_rates"]


class TestResidualLog:
    """Tests for the append-only residual log."""

    def test_iterations_must_increase(self):
        """Test that entries cannot be appended out of order."""
        from microcirculation.results import ResidualLog

        log = ResidualLog()
        log.append(1, 0.1, 0.2, 0.3)

        with pytest.raises(ValueError):
            log.append(1, 0.1, 0.2, 0.3)

    def test_write_creates_directory(self, tmp_path):
        """Test writing the log into a new directory."""
        from microcirculation.results import ResidualLog

        log = ResidualLog()
        log.append(1, 0.5, 0.25, 0.125)
        path = log.write(os.path.join(str(tmp_path), "out", "Residuals.txt"))

        with open(path) as f:
            rows = f.read().splitlines()
        assert len(rows) == 2
        assert [float(v) for v in rows[1].split("\t")[1:]] == [0.5, 0.25, 0.125]


class TestLinearSolver:
    """Tests for the sparse direct solve."""

    def test_solve(self):
        """Test a small well-conditioned system."""
        from scipy import sparse
        from microcirculation.solvers.linear import solve_sparse

        matrix = sparse.csc_matrix(np.array([[4.0, 1.0], [1.0, 3.0]]))
        solution, rcond = solve_sparse(matrix, np.array([1.0, 2.0]))

        np.testing.assert_allclose(matrix @ solution, [1.0, 2.0])
        assert 0.0 < rcond <= 1.0

    def test_singular_matrix_raises(self):
        """Test that an exactly singular matrix is rejected."""
        from scipy import sparse
        from microcirculation.solvers.linear import SingularSystemError, solve_sparse

        matrix = sparse.csc_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))

        with pytest.raises(SingularSystemError):
            solve_sparse(matrix, np.array([1.0, 2.0]), name="flow")


class TestTissueSources:
    """Tests for the tissue mass balance with lymphatic and oncotic sources."""

    def test_sigmoid_drainage_converges(self):
        """Test that a stationary sigmoid drainage gives a vanishing mass residual."""
        from microcirculation.results import ConvergenceStatus
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config(max_iterations=5)
        config.physics.wall_permeability = 1.0
        config.physics.lymphatic_model = "sigmoid"
        config.physics.lymphatic_sigmoid = [0.01, 0.0, 1.0, 0.0]
        result = CoupledSolver(straight_vessel(), config).run()

        assert result.status == ConvergenceStatus.CONVERGED
        assert result.iterations == 1
        assert result.residuals.last.mass < config.coupling.tol_mass
        assert result.flow_rates.lymphatic == pytest.approx(0.01)

    def test_oncotic_filtration_is_drained(self):
        """Test the tissue balance with an oncotic pressure jump across the wall."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.physics.wall_permeability = 1.0
        config.physics.oncotic_pressure_vessel = 0.2
        config.physics.oncotic_pressure_tissue = 0.1
        config.physics.lymphatic_coefficient = 1.0
        config.tissue.boundary_type = "neumann"
        result = CoupledSolver(straight_vessel(), config).run()

        assert result.converged
        assert result.flow_rates.lymphatic == pytest.approx(result.flow_rates.total_exchange, rel=1e-8)
        assert result.residuals.last.mass < config.coupling.tol_mass

    def test_oncotic_jump_reduces_filtration(self):
        """Test that a plasma oncotic excess pulls fluid back into the vessel."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        plain = CoupledSolver(straight_vessel(), linear_config()).run()
        config = linear_config()
        config.physics.oncotic_pressure_vessel = 0.3
        oncotic = CoupledSolver(straight_vessel(), config).run()

        assert oncotic.flow_rates.total_exchange < plain.flow_rates.total_exchange

    def test_absorbing_network_has_positive_mass_residual(self):
        """Test that the mass residual is an absolute value when fluid is absorbed."""
        from microcirculation.solvers.fixed_point import CoupledSolver

        config = linear_config()
        config.tissue.boundary_value = 2.0
        result = CoupledSolver(straight_vessel(), config).run()

        assert result.flow_rates.total_exchange < 0
        assert all(entry.mass >= 0 for entry in result.residuals)
        assert result.converged


class TestViscosityFailure:
    """Tests for non-physical apparent viscosities."""

    def test_non_positive_viscosity_raises(self, monkeypatch):
        """Test that a vanishing apparent viscosity stops the run."""
        from microcirculation.physics.viscosity import ViscosityError
        from microcirculation.solvers import fixed_point

        monkeypatch.setattr(
            fixed_point, "blood_viscosity",
            lambda hematocrit, diameter, plasma, law: np.zeros_like(diameter),
        )
        config = linear_config(hematocrit_coupling=True)

        with pytest.raises(ViscosityError):
            fixed_point.CoupledSolver(straight_vessel(), config).run()
