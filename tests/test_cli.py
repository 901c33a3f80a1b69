"""
Tests for the command-line interface.
"""

import json
import os

import pytest


STRAIGHT_PTS = """\
BEGIN_LIST
BEGIN_ARC
BC DIR 1.0
BC DIR 0.0
0 0.1 0.5 0.5 start
1 0.9 0.5 0.5 end
END_ARC
END_LIST
"""

Y_NETWORK_PTS = """\
BEGIN_LIST
BEGIN_ARC
BC DIR 1.0
BC INT 0
0 0.0 0.0 0.0 start
1 1.0 0.0 0.0 end
END_ARC
BEGIN_ARC
BC INT 0
BC DIR 0.0
2 1.0 0.0 0.0 start
3 2.0 1.0 0.0 end
END_ARC
BEGIN_ARC
BC INT 0
BC DIR 0.0
4 1.0 0.0 0.0 start
5 2.0 -1.0 0.0 end
END_ARC
END_LIST
"""


@pytest.fixture
def straight_network(tmp_path):
    path = tmp_path / "straight.pts"
    path.write_text(STRAIGHT_PTS)
    return str(path)


@pytest.fixture
def linear_config_file(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({
        "coupling": {
            "compliant_vessels": False,
            "hematocrit_coupling": False,
            "max_iterations": 5,
        },
    }))
    return str(path)


class TestParser:
    """Tests for argument parsing."""

    def test_run_arguments(self):
        """Test the run subcommand options."""
        from microcirculation.cli import build_parser

        args = build_parser().parse_args(
            ["run", "run.json", "--network", "net.pts", "--subdivisions", "3", "--max-iterations", "9"]
        )

        assert args.command == "run"
        assert args.config == "run.json"
        assert args.network == "net.pts"
        assert args.subdivisions == 3
        assert args.max_iterations == 9
        assert args.output is None

    def test_no_command_prints_help(self, capsys):
        """Test that calling without a command returns 1."""
        from microcirculation.cli import main

        assert main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestCommands:
    """Tests for the subcommands."""

    def test_topology(self, tmp_path, capsys):
        """Test that the topology command prints the junction census."""
        from microcirculation.cli import main

        path = tmp_path / "y.pts"
        path.write_text(Y_NETWORK_PTS)

        assert main(["topology", "--network", str(path)]) == 0

        summary = json.loads(capsys.readouterr().out)
        assert summary["mesh"]["n_branches"] == 3
        assert summary["mesh"]["n_boundary"] == 3
        assert len(summary["topology"]["extrema"]) == 3
        assert len(summary["topology"]["junctions"]) == 1
        assert len(summary["topology"]["junctions"][0]["branches"]) == 3
        assert summary["topology"]["junctions"][0]["scale"] == pytest.approx(3 * 0.05)

    def test_init_config(self, tmp_path):
        """Test that init-config writes a loadable default configuration."""
        from microcirculation.cli import main
        from microcirculation.config import SimulationConfig, load_config

        path = str(tmp_path / "default.json")

        assert main(["init-config", path]) == 0
        assert load_config(path) == SimulationConfig()

    def test_run(self, tmp_path, straight_network, linear_config_file, capsys):
        """Test a complete run with output files."""
        from microcirculation.cli import main

        output = str(tmp_path / "out")
        code = main([
            "run", linear_config_file,
            "--network", straight_network,
            "--output", output,
            "--subdivisions", "4",
        ])

        assert code == 0
        assert "Status: converged" in capsys.readouterr().out
        assert os.path.exists(os.path.join(output, "Residuals.txt"))
        assert os.path.exists(os.path.join(output, "Pv.vtk"))

        with open(os.path.join(output, "result.json")) as f:
            result = json.load(f)
        assert result["status"] == "converged"
        assert result["iterations"] == 1

    def test_missing_config_returns_error(self, tmp_path, straight_network, capsys):
        """Test that configuration errors give exit code 2."""
        from microcirculation.cli import main

        code = main(["run", str(tmp_path / "missing.json"), "--network", straight_network])

        assert code == 2
        assert "Error" in capsys.readouterr().err

    def test_malformed_network_returns_error(self, tmp_path, linear_config_file, capsys):
        """Test that a broken network file gives exit code 2."""
        from microcirculation.cli import main

        path = tmp_path / "broken.pts"
        path.write_text("BEGIN_LIST\nBEGIN_ARC\n0 0 0 0 start\n")

        assert main(["run", linear_config_file, "--network", str(path)]) == 2
        assert "Error" in capsys.readouterr().err
