#!/usr/bin/env python3
"""CLI entry point for secrets-iac-driver.

Noun-action subcommands:
- secrets-iac-driver manifest apply -M demo.yaml
- secrets-iac-driver workflow run -M demo.yaml --credential admin

Nouns:
- manifest: Resource lifecycle (plan/apply/destroy/validate)
- workflow: Setup, credential rotation and consume (run/setup/rotate/consume/teardown/status)
- lock: State lock inspection (status/release)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "manifest": "Resource lifecycle (plan/apply/destroy/validate)",
    "workflow": "Setup, credential rotation and consume (run/setup/rotate/consume/teardown/status)",
    "lock": "State lock inspection (status/release)",
}

MANIFEST_ACTIONS = {
    "plan": "Show what apply would change",
    "apply": "Apply resources from manifest",
    "destroy": "Destroy resources recorded for manifest",
    "validate": "Validate manifest structure and references",
}

LOCK_ACTIONS = {
    "status": "Show the state lock for a manifest",
    "release": "Force-release a stale state lock",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def _print_actions(noun: str, actions: dict) -> None:
    print(f"Usage: secrets-iac-driver {noun} <action> [options]")
    print()
    print("Actions:")
    for action, desc in actions.items():
        print(f"  {action:<10} {desc}")
    print()
    print(f"Run 'secrets-iac-driver {noun} <action> --help' for action-specific options.")


def dispatch_manifest(argv: list) -> int:
    """Dispatch 'manifest' noun to action-specific handler.

    Args:
        argv: Arguments after 'manifest' (e.g., ['apply', '-M', 'demo.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        _print_actions('manifest', MANIFEST_ACTIONS)
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action == "plan":
        from manifest_opr.cli import plan_main
        rc: int = plan_main(rest)
        return rc
    if action == "apply":
        from manifest_opr.cli import apply_main
        rc = apply_main(rest)
        return rc
    if action == "destroy":
        from manifest_opr.cli import destroy_main
        rc = destroy_main(rest)
        return rc
    if action == "validate":
        from manifest_opr.cli import validate_main
        rc = validate_main(rest)
        return rc

    print(f"Error: Unknown manifest action '{action}'")
    print(f"Available actions: {', '.join(MANIFEST_ACTIONS)}")
    return 1


def dispatch_workflow(argv: list) -> int:
    """Dispatch 'workflow' noun to action-specific handler."""
    from manifest_opr.cli import WORKFLOW_ACTIONS, workflow_main

    if not argv or argv[0].startswith('-'):
        _print_actions('workflow', WORKFLOW_ACTIONS)
        return 1 if not argv else 0

    action = argv[0]
    if action not in WORKFLOW_ACTIONS:
        print(f"Error: Unknown workflow action '{action}'")
        print(f"Available actions: {', '.join(WORKFLOW_ACTIONS)}")
        return 1
    rc: int = workflow_main(action, argv[1:])
    return rc


def dispatch_lock(argv: list) -> int:
    """Dispatch 'lock' noun to action-specific handler."""
    if not argv or argv[0].startswith('-'):
        _print_actions('lock', LOCK_ACTIONS)
        return 1 if not argv else 0

    action = argv[0]
    if action not in LOCK_ACTIONS:
        print(f"Error: Unknown lock action '{action}'")
        print(f"Available actions: {', '.join(LOCK_ACTIONS)}")
        return 1
    from manifest_opr.cli import lock_main
    rc: int = lock_main(action, argv[1:])
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "manifest", "workflow")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "manifest":
        return dispatch_manifest(argv)
    if noun == "workflow":
        return dispatch_workflow(argv)
    if noun == "lock":
        return dispatch_lock(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


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


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"secrets-iac-driver {get_version()}")
    print()
    print("Usage: secrets-iac-driver <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'secrets-iac-driver <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  secrets-iac-driver manifest validate -M demo.yaml")
    print("  secrets-iac-driver manifest plan -M demo.yaml")
    print("  secrets-iac-driver workflow run -M demo.yaml --credential admin --save-credential")
    print("  secrets-iac-driver workflow teardown -M demo.yaml --yes")
    print("  secrets-iac-driver lock status -M demo.yaml")


def main(argv=None):
    """CLI entry point: dispatch to noun-action handlers."""
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg == '--version':
        print(get_version())
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
