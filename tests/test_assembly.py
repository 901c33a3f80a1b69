"""
Tests for the block-structured monolithic systems and their assembly.
"""

import pytest
import numpy as np


class TestMonolithicSystem:
    """Tests for the named-block assembly protocol."""

    def test_add_without_open_raises(self):
        """Test that adding into a block that was never opened is an error."""
        from microcirculation.assembly.system import AssemblyError, MonolithicSystem

        system = MonolithicSystem(4)

        with pytest.raises(AssemblyError):
            system.add("poiseuille", np.eye(2))

    def test_add_after_close_raises(self):
        """Test that a closed block must be reopened (and cleared) before adding."""
        from microcirculation.assembly.system import AssemblyError, MonolithicSystem

        system = MonolithicSystem(4)
        with system.assemble("exchange"):
            system.add("exchange", np.eye(2))

        with pytest.raises(AssemblyError):
            system.add("exchange", np.eye(2))

    def test_reassembly_replaces_content(self):
        """Test that reopening a block discards its previous content."""
        from microcirculation.assembly.system import MonolithicSystem

        system = MonolithicSystem(3)
        for _ in range(3):
            with system.assemble("state"):
                system.add("state", np.eye(3) * 2.0)
                system.add_rhs("state", [1.0, 2.0, 3.0])

        np.testing.assert_allclose(system.raw_matrix().toarray(), np.eye(3) * 2.0)
        np.testing.assert_allclose(system.raw_rhs(), [1.0, 2.0, 3.0])
        assert system.assembly_count("state") == 3

    def test_failed_assembly_closes_block(self):
        """Test that an error inside an assembly leaves the block reopenable."""
        from microcirculation.assembly.system import MonolithicSystem

        system = MonolithicSystem(2)
        with pytest.raises(RuntimeError, match="viscosity"):
            with system.assemble("state"):
                system.add("state", np.eye(2))
                raise RuntimeError("viscosity evaluation failed")

        with system.assemble("state"):
            system.add("state", np.eye(2) * 3.0)

        np.testing.assert_allclose(system.raw_matrix().toarray(), np.eye(2) * 3.0)
        assert system.assembly_count("state") == 2

    def test_constant_block_cannot_be_reassembled(self):
        """Test that a constant block is assembled exactly once."""
        from microcirculation.assembly.system import AssemblyError, MonolithicSystem

        system = MonolithicSystem(2)
        with system.assemble("tissue", constant=True):
            system.add("tissue", np.eye(2))

        with pytest.raises(AssemblyError):
            system.open_block("tissue")
        with pytest.raises(AssemblyError):
            system.clear_block("tissue")
        assert system.assembly_count("tissue") == 1

    def test_open_block_blocks_matrix(self):
        """Test that the global matrix cannot be built while a block is open."""
        from microcirculation.assembly.system import AssemblyError, MonolithicSystem

        system = MonolithicSystem(2)
        system.open_block("partial")

        with pytest.raises(AssemblyError):
            system.matrix()

    def test_out_of_range_block_raises(self):
        """Test that a local block must fit inside the global system."""
        from microcirculation.assembly.system import AssemblyError, MonolithicSystem

        system = MonolithicSystem(3)
        with pytest.raises(AssemblyError):
            with system.assemble("bad"):
                system.add("bad", np.eye(2), row_offset=2, col_offset=0)

    def test_blocks_are_summed_at_offsets(self):
        """Test that blocks add up at their global offsets."""
        from microcirculation.assembly.system import MonolithicSystem

        system = MonolithicSystem(3)
        with system.assemble("a"):
            system.add("a", np.ones((2, 2)), 0, 0)
        with system.assemble("b"):
            system.add("b", np.ones((2, 2)), 1, 1, scale=-1.0)

        expected = np.array([[1, 1, 0], [1, 0, -1], [0, -1, -1]], dtype=float)
        np.testing.assert_allclose(system.matrix().toarray(), expected)

    def test_constrained_rows_become_identity(self):
        """Test strong imposition of prescribed values."""
        from microcirculation.assembly.system import MonolithicSystem

        system = MonolithicSystem(3)
        with system.assemble("a"):
            system.add("a", np.full((3, 3), 2.0))
            system.add_rhs("a", [1.0, 1.0, 1.0])
        system.constrain_rows([1], [7.0])

        matrix = system.matrix().toarray()
        np.testing.assert_allclose(matrix[1], [0.0, 1.0, 0.0])
        np.testing.assert_allclose(matrix[0], [2.0, 2.0, 2.0])
        np.testing.assert_allclose(system.rhs(), [1.0, 7.0, 1.0])
        assert system.matrix().format == "csc"


class TestTissueOperators:
    """Tests for the tissue finite-volume operators."""

    def test_single_cell_dirichlet(self):
        """Test the Darcy operator of one cell with Dirichlet faces."""
        from microcirculation.assembly.tissue import TissueGrid, assemble_darcy_operator

        grid = TissueGrid(origin=(0, 0, 0), size=(1, 1, 1), shape=(1, 1, 1))
        matrix, rhs = assemble_darcy_operator(grid, 2.0, "dirichlet", 3.0)

        # six half-cell faces with transmissibility 2 * kappa * area / h
        assert matrix.toarray()[0, 0] == pytest.approx(24.0)
        assert rhs[0] == pytest.approx(72.0)

    def test_neumann_rows_sum_to_zero(self):
        """Test that an insulated box conserves mass exactly."""
        from microcirculation.assembly.tissue import TissueGrid, assemble_darcy_operator

        grid = TissueGrid(origin=(0, 0, 0), size=(1, 2, 3), shape=(2, 3, 4))
        matrix, rhs = assemble_darcy_operator(grid, 1.5, "neumann")

        np.testing.assert_allclose(np.asarray(matrix.sum(axis=1)).ravel(), 0.0, atol=1e-12)
        np.testing.assert_allclose((matrix - matrix.T).toarray(), 0.0)
        np.testing.assert_allclose(rhs, 0.0)

    def test_two_cell_transmissibility(self):
        """Test the face transmissibility between two cells."""
        from microcirculation.assembly.tissue import TissueGrid, assemble_darcy_operator

        grid = TissueGrid(origin=(0, 0, 0), size=(1, 1, 1), shape=(2, 1, 1))
        matrix, _ = assemble_darcy_operator(grid, 1.0, "neumann")

        np.testing.assert_allclose(matrix.toarray(), [[2.0, -2.0], [-2.0, 2.0]])

    def test_locate_points(self):
        """Test the cell lookup of points, clipping those outside the box."""
        from microcirculation.assembly.tissue import TissueGrid

        grid = TissueGrid(origin=(0, 0, 0), size=(1, 1, 1), shape=(2, 2, 2))
        cells = grid.locate(np.array([[0.1, 0.1, 0.1], [0.9, 0.9, 0.9], [5.0, 0.1, 0.1]]))

        assert list(cells) == [0, 7, 4]

    def test_transfer_operators(self):
        """Test the vessel-to-tissue and vertex-average operators."""
        from microcirculation.assembly.tissue import (
            TissueGrid,
            vertex_to_element_average,
            vessel_to_tissue_interpolation,
        )
        from microcirculation.core.network import NetworkMesh

        mesh = NetworkMesh.from_branches([[(0.1, 0.5, 0.5), (0.9, 0.5, 0.5)]], subdivisions=2)
        grid = TissueGrid(origin=(0, 0, 0), size=(1, 1, 1), shape=(2, 1, 1))

        m_bar = vessel_to_tissue_interpolation(mesh, grid).toarray()
        m_lin = vertex_to_element_average(mesh)

        np.testing.assert_allclose(m_bar, [[1.0, 0.0], [0.0, 1.0]])
        np.testing.assert_allclose(m_lin @ np.array([0.0, 2.0, 1.0]), [1.0, 1.5])


class TestFlowAssembly:
    """Tests for the vessel flow blocks."""

    def build(self, wall_permeability=0.0):
        from microcirculation.assembly.flow import ExchangeOperators, assemble_constant_blocks, assemble_flow_system
        from microcirculation.assembly.system import MonolithicSystem
        from microcirculation.assembly.tissue import TissueGrid
        from microcirculation.config import PhysicsConfig, TissueConfig
        from microcirculation.core.geometry import build_geometry
        from microcirculation.core.layout import DofLayout
        from microcirculation.core.network import NetworkMesh
        from microcirculation.core.topology import build_topology

        mesh = NetworkMesh.from_branches(
            [[(0.1, 0.5, 0.5), (0.5, 0.5, 0.5)], [(0.5, 0.5, 0.5), (0.9, 0.8, 0.5)], [(0.5, 0.5, 0.5), (0.9, 0.2, 0.5)]],
            end_conditions=[(("DIR", 1.0), None), (None, ("DIR", 0.0)), (None, ("NEU", -0.1))],
            subdivisions=2,
        )
        physics = PhysicsConfig(characteristic_length=1.0, wall_permeability=wall_permeability)
        tissue = TissueConfig(cells=(2, 2, 1))
        grid = TissueGrid.from_config(tissue)
        layout = DofLayout.for_network(mesh, grid.n_cells)
        geometry = build_geometry(mesh, physics)
        topology = build_topology(mesh, geometry.branch_reference_radii(mesh))
        operators = ExchangeOperators.build(mesh, grid)

        system = MonolithicSystem(layout.total, name="flow")
        assemble_constant_blocks(system, mesh, topology, layout, grid, physics, tissue)
        viscosity = np.full(mesh.n_elements, 3.0)
        assemble_flow_system(system, mesh, topology, layout, grid, operators, geometry, viscosity, physics)
        return mesh, topology, layout, geometry, system

    def test_velocity_block_is_saddle_point(self):
        """Test that pressure-velocity coupling blocks are negative transposes."""
        mesh, topology, layout, geometry, system = self.build()
        matrix = system.raw_matrix().toarray()

        coupling_pv = matrix[layout.pressure, layout.velocity]
        coupling_vp = matrix[layout.velocity, layout.pressure]

        np.testing.assert_allclose(coupling_vp, -coupling_pv.T)

    def test_junction_row_is_signed_area_sum(self):
        """Test that the junction pressure row balances inflow and outflow areas."""
        mesh, topology, layout, geometry, system = self.build()
        matrix = system.raw_matrix().toarray()
        junction = topology.junctions[0]

        row = matrix[layout.pressure_offset + junction.vertex, layout.velocity]
        expected = np.zeros(mesh.n_elements)
        for branch_id, sign in junction.branches:
            e = mesh.branches[branch_id].end_element(sign)
            expected[e] = sign * geometry.area[e]

        np.testing.assert_allclose(row, expected)

    def test_friction_diagonal(self):
        """Test the momentum diagonal viscosity * conductance * length."""
        mesh, topology, layout, geometry, system = self.build()
        matrix = system.raw_matrix().toarray()

        diagonal = np.diag(matrix[layout.velocity, layout.velocity])

        np.testing.assert_allclose(diagonal, 3.0 * geometry.conductance * mesh.element_lengths)

    def test_boundary_conditions(self):
        """Test the Dirichlet rows and the Neumann right-hand side."""
        mesh, topology, layout, geometry, system = self.build()
        rhs = system.rhs()
        matrix = system.matrix().toarray()

        neumann = next(x for x in topology.extrema if x.label == "NEU")
        assert rhs[layout.pressure_offset + neumann.vertex] == pytest.approx(-0.1)

        for extremum in topology.extrema:
            if extremum.label == "DIR":
                row = layout.pressure_offset + extremum.vertex
                assert matrix[row, row] == 1.0
                assert np.count_nonzero(matrix[row]) == 1
                assert rhs[row] == extremum.value

    def test_exchange_blocks_vanish_without_permeability(self):
        """Test that an impermeable wall decouples tissue and vessels."""
        mesh, topology, layout, geometry, system = self.build(wall_permeability=0.0)
        matrix = system.raw_matrix().toarray()

        np.testing.assert_allclose(matrix[layout.tissue, layout.pressure], 0.0)
        np.testing.assert_allclose(matrix[layout.pressure, layout.tissue], 0.0)

    def test_exchange_blocks_are_symmetric(self):
        """Test the symmetry of the exchange coupling."""
        mesh, topology, layout, geometry, system = self.build(wall_permeability=0.1)
        exchange = system.block_matrix("exchange").toarray()

        np.testing.assert_allclose(exchange, exchange.T, atol=1e-14)
        assert np.abs(exchange[layout.tissue, layout.pressure]).sum() > 0

    def test_state_blocks_reassembled(self):
        """Test that state blocks can be rebuilt while constant blocks stay."""
        from microcirculation.assembly.flow import TISSUE_BLOCK

        mesh, topology, layout, geometry, system = self.build()

        assert system.assembly_count("poiseuille") == 1
        assert system.assembly_count(TISSUE_BLOCK) == 1


class TestHematocritAssembly:
    """Tests for the hematocrit transport system."""

    def test_artificial_diffusivity(self):
        """Test the single global diffusivity theta/2 max |u| L."""
        from microcirculation.assembly.hematocrit import artificial_diffusivity
        from microcirculation.core.network import NetworkMesh

        mesh = NetworkMesh.from_branches([[(0, 0, 0), (1, 0, 0), (3, 0, 0)]])
        diffusivity = artificial_diffusivity(mesh, np.array([2.0, -1.5]), theta=0.5)

        assert diffusivity == pytest.approx(0.25 * 3.0)

    def test_nodal_areas(self):
        """Test the node areas interpolated from the elements."""
        from microcirculation.assembly.hematocrit import nodal_areas
        from microcirculation.core.layout import HematocritLayout
        from microcirculation.core.network import NetworkMesh

        mesh = NetworkMesh.from_branches([[(0, 0, 0), (1, 0, 0)]], subdivisions=3)
        layout = HematocritLayout.for_network(mesh)

        areas = nodal_areas(mesh, layout, np.array([1.0, 2.0, 4.0]))

        np.testing.assert_allclose(areas, [1.0, 1.5, 3.0, 4.0])
