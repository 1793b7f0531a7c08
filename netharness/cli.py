"""
netharness/cli.py
Command line entry point.

    netharness run <script.py> [--timeout S] [--log-level L]
    netharness topology <file.json>

A script file is a Python module exposing either SCRIPT (a list of steps
ending in END) or build_script() returning one.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib.util
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional

from pydantic import ValidationError

from netharness.base.config import get_config, set_config, setup_logging
from netharness.engine.interpreter import run_async
from netharness.net.topology import NetjailTopology

logger = logging.getLogger(__name__)


def load_script(path: str) -> List[Any]:
    """Import a script file and return its steps."""
    file = Path(path)
    if not file.is_file():
        raise FileNotFoundError(f"no such script: {path}")
    spec = importlib.util.spec_from_file_location(f"netharness_script_{file.stem}", file)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    if hasattr(module, "build_script"):
        return list(module.build_script())
    if hasattr(module, "SCRIPT"):
        return list(module.SCRIPT)
    raise AttributeError(f"{path} defines neither SCRIPT nor build_script()")


def run_script(args: argparse.Namespace) -> int:
    """Run a script file and return its exit code."""
    config = get_config()
    if args.log_level:
        config = replace(config, log=replace(config.log, level=args.log_level))
        set_config(config)
    setup_logging(config)

    steps = load_script(args.script)
    logger.info(f"[CLI] Running {args.script}")
    result = asyncio.run(run_async(steps, timeout=args.timeout, config=config))
    if result.ok:
        print(f"PASS {args.script}")
    else:
        print(f"FAIL {args.script}: {result.error}")
    return result.exit_code


def show_topology(args: argparse.Namespace) -> int:
    """Validate a topology file and print how its nodes are numbered."""
    try:
        topology = NetjailTopology.from_file(args.file)
    except (OSError, ValueError, ValidationError) as e:
        print(f"Invalid topology {args.file}: {e}", file=sys.stderr)
        return 1

    print(f"plugin: {topology.plugin}")
    print(f"{topology.nodes_x} known nodes, {topology.namespaces_n} subnets x {topology.nodes_m} nodes")
    for n, m in topology.iter_positions():
        num = topology.node_number(n, m)
        where = "known" if n == 0 else f"subnet {n}"
        connections = ", ".join(
            str(topology.connection_number(c)) for c in topology.get_connections(num)
        )
        print(
            f"  node {num:3d}  {where:10s} #{m}  plugin={topology.plugin_for(num)}"
            f"  connects=[{connections}] additional={topology.get_additional_connects(num)}"
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="netharness test runner")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run Command
    run_parser = subparsers.add_parser("run", help="Run a test script")
    run_parser.add_argument("script", help="Python file defining SCRIPT or build_script()")
    run_parser.add_argument("--timeout", type=float, default=None, help="Overall deadline in seconds")
    run_parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    run_parser.set_defaults(func=run_script)

    # Topology Command
    topo_parser = subparsers.add_parser("topology", help="Check a topology file")
    topo_parser.add_argument("file", help="Topology JSON file")
    topo_parser.set_defaults(func=show_topology)

    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
