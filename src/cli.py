#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Dispatches verb subcommands to their handlers:
- stack-driver plan -T templates/static-website.yaml -p DomainName=www.example.org
- stack-driver apply -T templates/static-website.yaml -p ... --concurrency 8
- stack-driver destroy -s static-website --yes
"""

import logging
import subprocess
import sys
from pathlib import Path

# Verb commands
VERB_COMMANDS = {
    "plan": "Show the changes apply would make (exit 2 when changes are pending)",
    "apply": "Create or update a stack from a template",
    "destroy": "Delete every resource recorded for a stack",
    "validate": "Validate a template and list its parameters",
    "outputs": "Show stored outputs of a stack",
    "unlock": "Force-remove a stack lock left by a crashed run",
}


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"stack-driver {get_version()}")
    print()
    print("Usage: stack-driver <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<10} {desc}")
    print()
    print("Run 'stack-driver <verb> --help' for verb-specific options.")
    print()
    print("Examples:")
    print("  stack-driver validate -T templates/static-website.yaml")
    print("  stack-driver plan -T templates/static-website.yaml -p HostedZoneId=Z123 -p DomainName=www.example.org")
    print("  stack-driver apply -T templates/static-website.yaml -p HostedZoneId=Z123 -p DomainName=www.example.org")
    print("  stack-driver destroy -s static-website --yes")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from stack_opr import cli as stack_cli

    handlers = {
        "plan": stack_cli.plan_main,
        "apply": stack_cli.apply_main,
        "destroy": stack_cli.destroy_main,
        "validate": stack_cli.validate_main,
        "outputs": stack_cli.outputs_main,
        "unlock": stack_cli.unlock_main,
    }
    handler = handlers.get(verb)
    if handler is None:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1
    rc: int = handler(argv)
    return rc


def main(argv: list = None) -> int:
    """CLI entry point: dispatch to verb handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"stack-driver {get_version()}")
        return 0
    return dispatch_verb(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
