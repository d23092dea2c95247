#!/usr/bin/env python3
"""
MeshAdminRuleApply CLI - Apply a firewall ruleset with automatic rollback.
"""

import sys
import argparse
import logging
from typing import List, Optional

from .. import __version__
from ..apply.controller import ApplyController
from ..config import DEFAULT_CONFIG_PATH, load_config
from ..errors import ArgumentError, RuleApplyError


class RuleApplyArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ArgumentError instead of exiting."""

    def error(self, message):
        raise ArgumentError(f"{self.prog}: {message}")


def parse_timeout(value: str) -> int:
    """Validate a timeout given as a non-negative integer number of seconds."""
    if not value.isdigit():
        raise ArgumentError(f"timeout must be a non-negative integer, got {value!r}")
    return int(value)


def build_parser() -> RuleApplyArgumentParser:
    parser = RuleApplyArgumentParser(
        prog='meshadmin-ruleapply',
        description="Apply a new firewall ruleset and restore the previous one "
                    "automatically unless the change is confirmed in time"
    )

    parser.add_argument(
        'rulesfile', nargs='?',
        help='Ruleset file to apply (default depends on the address family)'
    )
    parser.add_argument(
        '-t', '--timeout',
        help='Seconds to wait for confirmation before rolling back'
    )

    family = parser.add_mutually_exclusive_group()
    family.add_argument('-4', '--ipv4', dest='family', action='store_const', const='ipv4',
                        help='Apply an IPv4 ruleset (default)')
    family.add_argument('-6', '--ipv6', dest='family', action='store_const', const='ipv6',
                        help='Apply an IPv6 ruleset')

    parser.add_argument(
        '-w', '--write', metavar='SAVEFILE',
        help='Save the confirmed ruleset to SAVEFILE'
    )
    parser.add_argument(
        '-c', '--command',
        help='Run COMMAND as the change instead of restoring a ruleset file'
    )
    parser.add_argument(
        '--config',
        default=DEFAULT_CONFIG_PATH,
        help='Configuration file path'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '-V', '--version',
        action='version',
        version=f"%(prog)s {__version__}"
    )
    parser.set_defaults(family='ipv4')

    return parser


def setup_logging(verbose: bool = False) -> None:
    """Setup logging for CLI operations."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the transaction and map the result to an exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    config = load_config(args.config)

    if args.timeout is None:
        timeout = parse_timeout(str(config['global']['default_timeout']))
    else:
        timeout = parse_timeout(args.timeout)

    rules_path = args.rulesfile
    if rules_path is None and args.command is None:
        rules_path = config['rules'][f"{args.family}_file"]

    controller = ApplyController(config, family=args.family)
    outcome = controller.run(rules_path, timeout, command=args.command, savefile=args.write)
    return outcome.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    try:
        return run(argv)
    except RuleApplyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return e.exit_code


if __name__ == '__main__':
    sys.exit(main())
