"""
Command-Line Interface

Run coupled vessel / tissue flow simulations and inspect network topologies.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .config import ConfigError, SimulationConfig, load_config, save_config
from .core.geometry import build_geometry
from .core.topology import TopologyError, build_topology
from .io.dof_files import InputFileError
from .io.pts import read_pts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="microcirculation",
        description="Coupled 1D vessel network / 3D tissue blood flow with compliant walls "
                    "and hematocrit transport",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run a coupled simulation")
    run_parser.add_argument(
        "config",
        type=str,
        help="JSON configuration file",
    )
    run_parser.add_argument(
        "--network", "-n",
        type=str,
        required=True,
        help="Vessel network (.pts file)",
    )
    run_parser.add_argument(
        "--output", "-O",
        type=str,
        default=None,
        help="Output directory (overrides the configuration)",
    )
    run_parser.add_argument(
        "--subdivisions",
        type=int,
        default=1,
        help="Elements per polyline segment (default: 1)",
    )
    run_parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override the maximum number of outer iterations",
    )

    # Topology command
    topo_parser = subparsers.add_parser("topology", help="Print the network topology as JSON")
    topo_parser.add_argument(
        "--network", "-n",
        type=str,
        required=True,
        help="Vessel network (.pts file)",
    )
    topo_parser.add_argument(
        "--subdivisions",
        type=int,
        default=1,
        help="Elements per polyline segment (default: 1)",
    )

    # Config command
    cfg_parser = subparsers.add_parser("init-config", help="Write a default configuration file")
    cfg_parser.add_argument(
        "path",
        type=str,
        help="Destination JSON file",
    )
    return parser


def run_simulation_command(args) -> int:
    """Run the run command."""
    from .solvers.fixed_point import CoupledSolver

    config = load_config(args.config)
    if args.output is not None:
        config.output.output_dir = args.output
    if args.max_iterations is not None:
        config.coupling.max_iterations = args.max_iterations
    config.validate()

    mesh = read_pts(args.network, subdivisions=args.subdivisions)
    result = CoupledSolver(mesh, config).run()

    summary = result.to_dict()
    if config.output.output_dir:
        os.makedirs(config.output.output_dir, exist_ok=True)
        path = os.path.join(config.output.output_dir, "result.json")
        with open(path, "w") as f:
            json.dump(summary, f, indent=2)

    print(f"Status: {result.status.value}")
    print(f"Iterations: {result.iterations}")
    print(f"Total exchange flow rate: {result.flow_rates.total_exchange:.6e}")
    print(f"Lymphatic flow rate: {result.flow_rates.lymphatic:.6e}")
    if result.output_files:
        print(f"Output files: {len(result.output_files)} written")
    return 0


def run_topology_command(args) -> int:
    """Run the topology command."""
    mesh = read_pts(args.network, subdivisions=args.subdivisions)
    geometry = build_geometry(mesh, SimulationConfig().physics)
    topology = build_topology(mesh, geometry.branch_reference_radii(mesh))
    summary = {"mesh": mesh.summary(), "topology": topology.to_dict()}
    print(json.dumps(summary, indent=2))
    return 0


def run_init_config_command(args) -> int:
    """Run the init-config command."""
    save_config(SimulationConfig(), args.path)
    print(f"Default configuration written to {args.path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1

    commands = {
        "run": run_simulation_command,
        "topology": run_topology_command,
        "init-config": run_init_config_command,
    }
    try:
        return commands[args.command](args)
    except (ConfigError, InputFileError, TopologyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
