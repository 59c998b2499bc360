#!/usr/bin/env python3
"""
NCCL Harness

Sweeps collective-communication benchmarks across a grid of configurations:
- Collective operations, reduction ops and data types
- Communication algorithms / protocols / channel and chunk counts
- Node scaling, each node count paired with its hostfile

Every attempt gets its own log artifact and a row in a SQLite ledger, so an
interrupted sweep can be resumed without redoing finished work.
"""

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

from colorama import init, Fore, Style

from .config import DEFAULT_CONFIG_NAME, load_config
from .errors import LedgerError, ValidationError
from .sweep import SweepRunner


EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_INTERRUPTED = 130


def print_header():
    """Print harness header."""
    print(f"\n{Fore.CYAN}{'='*70}")
    print(f"{Style.BRIGHT}  NCCL Harness{Style.RESET_ALL}")
    print(f"{Fore.CYAN}{'='*70}{Style.RESET_ALL}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nccl-harness',
        description='NCCL Harness - resumable sweeps of collective-communication benchmarks',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the sweep described in sweep_config.yaml
  %(prog)s --config sweep_config.yaml

  # Validate the grid and command lines without touching the cluster
  %(prog)s --config sweep_config.yaml --dry-run

  # Scale over 2, 4 and 8 nodes
  %(prog)s --config sweep_config.yaml --nodes 2,4,8

  # Re-run everything, even configurations that already completed
  %(prog)s --config sweep_config.yaml --no-skip-finished

  # Treat 5 minutes of silence as a hang
  %(prog)s --config sweep_config.yaml --liveness-timeout 300
"""
    )

    parser.add_argument(
        '--config',
        default=DEFAULT_CONFIG_NAME,
        help=f'Path to configuration file (default: {DEFAULT_CONFIG_NAME})'
    )
    parser.add_argument(
        '--output-dir', '-o',
        help='Root directory for artifacts and the ledger (default: from config)'
    )
    parser.add_argument(
        '--hostfile', '-s',
        help='Host inventory file, one host per line (overrides the config)'
    )
    parser.add_argument(
        '--nodes', '-n',
        help='Node count(s): N, MIN-MAX or A,B,C (e.g., 2, 1-4 or 2,4,8)'
    )
    parser.add_argument(
        '--skip-finished',
        dest='skip_finished',
        action='store_true',
        default=None,
        help='Skip configurations that already completed (default: from config)'
    )
    parser.add_argument(
        '--no-skip-finished',
        dest='skip_finished',
        action='store_false',
        help='Run every configuration even if it already completed'
    )
    parser.add_argument(
        '--dry-run', '-d',
        action='store_true',
        help='Render commands into the artifacts without executing them'
    )
    parser.add_argument(
        '--liveness-timeout',
        type=float,
        help='Seconds of silence before a job is presumed hung'
    )
    parser.add_argument(
        '--prefix',
        help='Logical run prefix for artifact names'
    )
    parser.add_argument(
        '--export-csv',
        type=Path,
        help='Write this session\'s run records to a CSV file'
    )
    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Reduce output verbosity'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    init()
    args = build_parser().parse_args(argv)

    if not args.quiet:
        print_header()

    overrides = {
        'output_dir': args.output_dir,
        'hostfile': args.hostfile,
        'nodes': args.nodes,
        'skip_finished': args.skip_finished,
        'dry_run': args.dry_run,
        'liveness_timeout': args.liveness_timeout,
        'prefix': args.prefix,
        'quiet': args.quiet,
    }

    try:
        config = load_config(Path(args.config), overrides, environ=dict(os.environ))
        config.validate()
        runner = SweepRunner(config)
        runner.prepare()
    except ValidationError as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}", file=sys.stderr)
        return EXIT_VALIDATION

    if config.run.verbose:
        runner.print_plan()
        if config.run.dry_run:
            print(f"{Fore.YELLOW}DRY RUN MODE - Commands will be rendered but not executed{Style.RESET_ALL}\n")

    try:
        result = runner.run()
    except LedgerError as e:
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}", file=sys.stderr)
        return EXIT_VALIDATION

    runner.print_summary(result)

    if args.export_csv:
        rows = runner.export_csv(result, args.export_csv)
        print(f"  CSV export: {args.export_csv} ({rows} runs)")

    return EXIT_INTERRUPTED if result.interrupted else EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
