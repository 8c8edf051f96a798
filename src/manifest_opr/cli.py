"""CLI handlers for manifest, workflow and lock verb commands.

Usage:
    secrets-iac-driver manifest plan -M <file> [--phase P] [--target N] [--json-output]
    secrets-iac-driver manifest apply -M <file> [--phase setup] [--credential NAME] [--dry-run]
    secrets-iac-driver manifest destroy -M <file> [--phase P] [--target N] [--yes]
    secrets-iac-driver manifest validate -M <file>
    secrets-iac-driver workflow run|setup|rotate|consume|teardown|status -M <file>
    secrets-iac-driver lock status|release -M <file>
"""

import argparse
import json
import logging
import signal
import sys
import time
from typing import Any, Optional

from config import ConfigError, DriverConfig, load_config, load_credential, save_credential
from errors import DriverError, WorkflowTransitionError
from manifest import KIND_SCHEMAS, Manifest, Phase, ResourceKind, load_manifest
from manifest_opr.executor import NodeExecutor
from manifest_opr.graph import ManifestGraph
from manifest_opr.lock import StateLock
from manifest_opr.plan import build_plan
from manifest_opr.rotation import CredentialMaterial
from manifest_opr.state import ExecutionState, FileStateStore
from manifest_opr.workflow import Workflow
from providers import get_provider

logger = logging.getLogger(__name__)

REDACTED = '(sensitive)'

PLAN_SYMBOLS = {'create': '+', 'update': '~', 'noop': ' ', 'delete': '-'}


def _common_parser(noun: str, verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'secrets-iac-driver {noun} {verb}',
        description=description,
    )
    parser.add_argument(
        '--manifest-file', '-M',
        help='Path to manifest file (YAML or JSON)',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to driver.yaml (default: discovery)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_run_options(parser: argparse.ArgumentParser, credential_help: str) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--parallelism', '-j',
        type=int,
        help='Max concurrent provider calls (default: manifest settings, then config)',
    )
    parser.add_argument(
        '--credential',
        help=credential_help,
    )


def _add_selection_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--phase',
        action='append',
        choices=[Phase.SETUP.value, Phase.CONSUME.value],
        help='Restrict to nodes in this phase (repeatable)',
    )
    parser.add_argument(
        '--target',
        action='append',
        help='Restrict to this node (repeatable)',
    )


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_manifest_and_config(args) -> tuple[Manifest, DriverConfig]:
    """Load manifest and driver config from parsed args.

    Raises:
        ConfigError: Missing or invalid manifest or config
    """
    if not args.manifest_file and not args.manifest_json:
        raise ConfigError("specify a manifest with -M/--manifest-file or --manifest-json")
    manifest = load_manifest(file_path=args.manifest_file, json_str=args.manifest_json)
    config = load_config(args.config)
    return manifest, config


def _build_executor(args, manifest: Manifest, config: DriverConfig) -> NodeExecutor:
    graph = ManifestGraph(manifest)
    return NodeExecutor(
        manifest=manifest,
        graph=graph,
        provider=get_provider(config),
        store=FileStateStore(config.state_dir),
        config=config,
        dry_run=getattr(args, 'dry_run', False),
        parallelism=getattr(args, 'parallelism', None),
    )


def _credential(config: DriverConfig, name: Optional[str],
                purpose: str) -> Optional[CredentialMaterial]:
    if not name:
        return None
    material = load_credential(config, name, purpose=purpose)
    logger.debug(f"Using credential '{name}' ({material.fingerprint}) for {purpose}")
    return material


def _phases(args) -> Optional[list[Phase]]:
    if not getattr(args, 'phase', None):
        return None
    return [Phase(p) for p in args.phase]


def _install_interrupt_handler(executor: NodeExecutor) -> None:
    """First Ctrl-C cancels the run; a second one aborts."""
    def handler(signum, frame):
        if executor.cancelled:
            raise KeyboardInterrupt
        executor.cancel()

    signal.signal(signal.SIGINT, handler)


def _redact(kind: str, data: dict[str, Any]) -> dict[str, Any]:
    """Replace sensitive attribute values for display."""
    try:
        sensitive = KIND_SCHEMAS[ResourceKind(kind)].sensitive
    except ValueError:
        sensitive = frozenset()
    return {k: (REDACTED if k in sensitive else v) for k, v in data.items()}


def _emit_json(verb: str, success: bool, state: ExecutionState, duration: float,
               actions: Optional[dict[str, str]] = None, extra: Optional[dict] = None) -> None:
    """Emit structured JSON output."""
    nodes = []
    for name, ns in state.nodes.items():
        node_data: dict[str, Any] = {'name': name, 'kind': ns.kind, 'phase': ns.phase, 'status': ns.status}
        if actions and name in actions:
            node_data['action'] = actions[name]
        if ns.outputs:
            node_data['outputs'] = _redact(ns.kind, ns.outputs)
        if ns.attempts:
            node_data['attempts'] = ns.attempts
        if ns.duration is not None:
            node_data['duration'] = round(ns.duration, 2)
        if ns.error is not None:
            node_data['error'] = ns.error
        nodes.append(node_data)

    output: dict[str, Any] = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
        'nodes': nodes,
    }
    if extra:
        output.update(extra)
    print(json.dumps(output, indent=2, default=str))


def _report_error(args, verb: str, error: Exception) -> int:
    print(f"Error: {error}", file=sys.stderr)
    if getattr(args, 'json_output', False):
        print(json.dumps({
            'verb': verb,
            'success': False,
            'error': type(error).__name__,
            'message': str(error),
        }, indent=2))
    return 1


def _confirm(lines: list[str]) -> bool:
    print("")
    for line in lines:
        print(line)
    print("This action cannot be undone.")
    response = input("Continue? [y/N] ").strip().lower()
    if response != 'y':
        print("Aborted.")
        return False
    return True


def _print_summary(verb: str, success: bool, state: ExecutionState, actions: dict[str, str],
                   duration: float) -> None:
    counts: dict[str, int] = {}
    for name in actions:
        status = state.get_node(name).status if state.has_node(name) else 'unknown'
        counts[status] = counts.get(status, 0) + 1
    detail = ', '.join(f"{n} {s}" for s, n in sorted(counts.items())) or 'nothing to do'
    outcome = 'complete' if success else 'FAILED'
    logger.info(f"[{verb}] {outcome} in {duration:.1f}s: {detail}")
    for name, ns in state.nodes.items():
        if ns.status in ('failed', 'blocked') and name in actions:
            logger.error(f"  {name}: {ns.status}: {ns.error}")


# ----------------------------------------------------------------------
# manifest
# ----------------------------------------------------------------------

def plan_main(argv: list) -> int:
    """Handle 'manifest plan' verb."""
    parser = _common_parser('manifest', 'plan', 'Show what apply would change')
    _add_selection_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_manifest_and_config(args)
        graph = ManifestGraph(manifest)
        state = ExecutionState.load_or_create(manifest.name, FileStateStore(config.state_dir))
        if args.target:
            unknown = [t for t in args.target if t not in graph]
            if unknown:
                raise ConfigError(f"Unknown target node(s): {', '.join(unknown)}")
        names = None
        if args.target:
            names = set(args.target)
            for target in args.target:
                names.update(graph.dependencies(target, transitive=True))
        plan = build_plan(graph, state, phases=_phases(args), names=names)
    except (DriverError, ConfigError) as e:
        return _report_error(args, 'plan', e)

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
        return 0

    print("")
    print("=" * 65)
    print(f"  PLAN: {manifest.name}")
    print("=" * 65)
    print("")
    for change in plan.changes:
        reason = f"  ({change.reason})" if change.reason else ""
        changed = f"  [{', '.join(change.changed)}]" if change.changed and change.action == 'update' else ""
        print(f"  {PLAN_SYMBOLS[change.action]} {change.node:<24} {change.kind:<24} "
              f"{change.phase:<8}{reason}{changed}")
    print("")
    summary = plan.summary()
    print(f"  Plan: {summary['create']} to create, {summary['update']} to update, "
          f"{summary['delete']} to delete, {summary['noop']} unchanged")
    print("")
    return 0


def apply_main(argv: list) -> int:
    """Handle 'manifest apply' verb."""
    parser = _common_parser('manifest', 'apply', 'Apply resources from manifest')
    _add_run_options(parser, 'Named credential from credentials_file for provider calls')
    _add_selection_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_manifest_and_config(args)
        phases = _phases(args) or manifest.phases()
        if Phase.CONSUME in phases and Phase.CONSUME in manifest.phases():
            raise WorkflowTransitionError(
                "Consume-phase nodes are applied behind the credential rotation gate; "
                "use 'workflow consume' (or 'workflow run'), or pass --phase setup"
            )
        executor = _build_executor(args, manifest, config)
        credential = _credential(config, args.credential, 'setup')
        _install_interrupt_handler(executor)

        logger.info(f"Applying manifest '{manifest.name}' via {executor.provider.name} provider")
        start = time.time()
        success, state = executor.apply(phases=_phases(args), targets=args.target,
                                        credential=credential)
        duration = time.time() - start
    except (DriverError, ConfigError) as e:
        return _report_error(args, 'apply', e)

    if args.json_output:
        _emit_json('apply', success, state, duration, executor.actions)
    elif not args.dry_run:
        _print_summary('apply', success, state, executor.actions, duration)
    return 0 if success else 1


def destroy_main(argv: list) -> int:
    """Handle 'manifest destroy' verb."""
    parser = _common_parser('manifest', 'destroy', 'Destroy resources recorded for manifest')
    _add_run_options(parser, 'Named credential from credentials_file for provider calls')
    _add_selection_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_manifest_and_config(args)
        executor = _build_executor(args, manifest, config)
        credential = _credential(config, args.credential, 'destroy')

        if not args.dry_run and not args.yes:
            scope = ', '.join(args.phase or []) or 'all phases'
            if not _confirm([
                f"WARNING: This will destroy resources recorded for manifest '{manifest.name}'.",
                f"Scope: {scope}" + (f"; targets: {', '.join(args.target)}" if args.target else ''),
                f"State: {config.state_dir}",
            ]):
                return 1

        _install_interrupt_handler(executor)
        logger.info(f"Destroying resources for manifest '{manifest.name}'")
        start = time.time()
        success, state = executor.destroy(phases=_phases(args), targets=args.target,
                                          credential=credential)
        duration = time.time() - start
        if success and not args.dry_run:
            Workflow(executor, config).reconcile(state)
    except (DriverError, ConfigError) as e:
        return _report_error(args, 'destroy', e)

    if args.json_output:
        _emit_json('destroy', success, state, duration, executor.actions)
    elif not args.dry_run:
        _print_summary('destroy', success, state, executor.actions, duration)
    return 0 if success else 1


def validate_main(argv: list) -> int:
    """Handle 'manifest validate' verb.

    Validates manifest structure, kinds, references, cycles and phase order
    without touching state or the provider.
    """
    parser = _common_parser('manifest', 'validate', 'Validate manifest structure and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        if not args.manifest_file and not args.manifest_json:
            raise ConfigError("specify a manifest with -M/--manifest-file or --manifest-json")
        manifest = load_manifest(file_path=args.manifest_file, json_str=args.manifest_json)
        graph = ManifestGraph(manifest)
    except (DriverError, ConfigError) as e:
        print(f"Manifest is invalid: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({
            'manifest': manifest.name,
            'valid': True,
            'nodes': len(graph),
            'max_depth': graph.max_depth,
            'order': [n.name for n in graph.create_order()],
        }, indent=2))
        return 0

    for level, nodes in enumerate(graph.levels()):
        logger.debug(f"Level {level}: {', '.join(n.name for n in nodes)}")
    node_count = len(graph)
    phases = ', '.join(p.value for p in manifest.phases())
    print(f"Manifest '{manifest.name}' is valid ({node_count} node{'s' if node_count != 1 else ''}; "
          f"phases: {phases})")
    return 0


# ----------------------------------------------------------------------
# workflow
# ----------------------------------------------------------------------

WORKFLOW_ACTIONS = {
    'run': 'Setup, rotate credentials, then consume',
    'setup': 'Apply setup-phase nodes with administrative credentials',
    'rotate': 'Issue fresh credentials for the consume phase',
    'consume': 'Apply consume-phase nodes with rotated credentials',
    'teardown': 'Destroy consume, then setup',
    'status': 'Show workflow status',
}


def _rotation_output(material: CredentialMaterial, saved_to=None) -> dict:
    d = material.describe()
    if saved_to is not None:
        d['saved_to'] = str(saved_to)
    return d


def workflow_main(action: str, argv: list) -> int:
    """Handle 'workflow <action>' verbs."""
    parser = _common_parser('workflow', action, WORKFLOW_ACTIONS[action])
    if action != 'status':
        credential_help = {
            'consume': 'Named rotated credential (default: rotation.consume_credential)',
        }.get(action, 'Named administrative credential from credentials_file')
        _add_run_options(parser, credential_help)
    if action in ('run', 'rotate'):
        parser.add_argument(
            '--save-credential',
            action='store_true',
            help='Store rotated material in credentials_file as rotation.consume_credential',
        )
    if action == 'teardown':
        parser.add_argument(
            '--yes', '-y',
            action='store_true',
            help='Skip confirmation prompt',
        )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_manifest_and_config(args)
        executor = _build_executor(args, manifest, config)
        workflow = Workflow(executor, config)

        if action == 'status':
            status = workflow.describe()
            if args.json_output:
                print(json.dumps(status, indent=2, default=str))
            else:
                print(f"Workflow '{manifest.name}': {status['status']}")
                for phase, nodes in status['nodes'].items():
                    print(f"  {phase}:")
                    for name, node_status in nodes.items():
                        print(f"    {name:<24} {node_status}")
            return 0

        if action == 'teardown' and not args.dry_run and not args.yes:
            if not _confirm([
                f"WARNING: This will destroy consume and then setup resources for '{manifest.name}'.",
                "Dynamic credentials issued for consume will expire on their own.",
            ]):
                return 1

        _install_interrupt_handler(executor)
        start = time.time()
        extra: dict[str, Any] = {}
        material = None

        if action == 'run':
            admin = _credential(config, args.credential, 'setup')
            success, state, material = workflow.run(admin)
        elif action == 'setup':
            success, state = workflow.apply_setup(_credential(config, args.credential, 'setup'))
        elif action == 'rotate':
            material = workflow.rotate(_credential(config, args.credential, 'setup'))
            success, state = True, executor.load_state()
        elif action == 'consume':
            name = args.credential or config.rotation.consume_credential
            success, state = workflow.apply_consume(_credential(config, name, 'consume'))
        else:
            success, state = workflow.teardown(_credential(config, args.credential, 'destroy'))

        if material is not None:
            saved_to = None
            if getattr(args, 'save_credential', False):
                saved_to = save_credential(config, config.rotation.consume_credential, material)
            extra['credential'] = _rotation_output(material, saved_to)
        extra['workflow_status'] = workflow.status.value
        duration = time.time() - start
    except (DriverError, ConfigError) as e:
        return _report_error(args, f'workflow {action}', e)

    if args.json_output:
        _emit_json(f'workflow {action}', success, state, duration, executor.actions, extra)
    else:
        if 'credential' in extra:
            cred = extra['credential']
            print(f"Consume credential: access id {cred['access_id']}, fingerprint {cred['fingerprint']}")
            if 'saved_to' in cred:
                print(f"Saved as '{config.rotation.consume_credential}' in {cred['saved_to']}")
        if action != 'rotate' and not args.dry_run:
            _print_summary(action, success, state, executor.actions, duration)
        print(f"Workflow status: {extra['workflow_status']}")
    return 0 if success else 1


# ----------------------------------------------------------------------
# lock
# ----------------------------------------------------------------------

def lock_main(action: str, argv: list) -> int:
    """Handle 'lock status' and 'lock release' verbs."""
    descriptions = {
        'status': 'Show the state lock for a manifest',
        'release': 'Force-release a stale state lock',
    }
    parser = _common_parser('lock', action, descriptions[action])
    if action == 'release':
        parser.add_argument(
            '--yes', '-y',
            action='store_true',
            help='Skip confirmation prompt',
        )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load_manifest_and_config(args)
    except (DriverError, ConfigError) as e:
        return _report_error(args, f'lock {action}', e)

    lock = StateLock(FileStateStore(config.state_dir), manifest.name, ttl=config.lock_ttl)
    info = lock.current()

    if action == 'status':
        if args.json_output:
            data: dict[str, Any] = {'manifest': manifest.name, 'locked': info is not None}
            if info is not None:
                data.update(info.to_dict())
                data['expired'] = info.expired()
                data.pop('token')
            print(json.dumps(data, indent=2))
        elif info is None:
            print(f"Manifest '{manifest.name}' is not locked")
        else:
            state = 'expired' if info.expired() else 'held'
            print(f"Manifest '{manifest.name}' lock {state} by {info.owner} "
                  f"(expires {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(info.expires_at))})")
        return 0

    if info is None:
        print(f"Manifest '{manifest.name}' is not locked")
        return 0
    if not args.yes and not info.expired():
        if not _confirm([
            f"WARNING: Lock on '{manifest.name}' is held by {info.owner} and has not expired.",
            "Releasing it while that run is active can corrupt the execution record.",
        ]):
            return 1
    lock.force_release()
    print(f"Released lock on '{manifest.name}' (was held by {info.owner})")
    return 0
