"""CLI handlers for stack verb commands (plan, apply, destroy, validate, outputs, unlock).

Usage:
    stack-driver plan -T <template> [-p KEY=VALUE ...] [-s STACK] [--json-output]
    stack-driver apply -T <template> [-p KEY=VALUE ...] [--dry-run] [--concurrency N] [--on-error MODE]
    stack-driver destroy -s <stack> [--dry-run] [--yes]
    stack-driver validate -T <template> [--verbose]
    stack-driver outputs -s <stack> [--json-output]
    stack-driver unlock -s <stack>
"""

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from common import parse_key_value_args
from config import ON_ERROR_CHOICES, ConfigError, DriverConfig, load_driver_config
from intrinsics import TemplateError, pseudo_parameters
from preflight import format_preflight_errors, validate_readiness
from providers import ProviderRegistry, build_control_plane
from reporting.report import ApplyReport
from stack_opr.diff import compute_changes, format_plan
from stack_opr.executor import StackExecutor
from stack_opr.graph import CycleError, StackGraph
from stack_opr.state import ConflictError, StackState, StateError, StateLock
from template import RenderedTemplate, Template, load_template

logger = logging.getLogger(__name__)

# Errors that abort a verb with exit code 1 and a one-line message
CLI_ERRORS = (ConfigError, TemplateError, CycleError, StateError, ConflictError, ValueError)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'stack-driver {verb}',
        description=description,
    )
    parser.add_argument(
        '--template', '-T',
        help='Path to template file (JSON or YAML)',
    )
    parser.add_argument(
        '--stack', '-s',
        help='Stack name (default: template file name without extension)',
    )
    parser.add_argument(
        '--config',
        help='Driver config file (default: $STACK_DRIVER_CONFIG or driver.yaml)',
    )
    parser.add_argument(
        '--state-dir',
        type=Path,
        help='Directory holding stack state (overrides config)',
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


def _add_param_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--param', '-p',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Template parameter value (can be repeated)',
    )


def _add_execution_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview changes without executing',
    )
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Maximum control-plane operations in flight (overrides config)',
    )
    parser.add_argument(
        '--on-error',
        choices=ON_ERROR_CHOICES,
        help='Failure policy (overrides config)',
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Write JSON and markdown reports to this directory',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
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


def _emit_json(data: dict) -> None:
    """Emit structured JSON output."""
    print(json.dumps(data, indent=2, default=str))


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _load_config(args) -> DriverConfig:
    """Load driver config and apply CLI overrides."""
    config = load_driver_config(args.config)
    if args.state_dir is not None:
        config.state_dir = args.state_dir
    if getattr(args, 'concurrency', None) is not None:
        if args.concurrency < 1:
            raise ConfigError("--concurrency must be at least 1")
        config.concurrency = args.concurrency
    if getattr(args, 'on_error', None):
        config.on_error = args.on_error
    return config


def _stack_name(args) -> str:
    """Stack name from --stack, else the template file stem."""
    if args.stack:
        return args.stack
    if args.template:
        return Path(args.template).stem
    raise ValueError("specify a stack with -s/--stack or a template with -T/--template")


def _require_template(args) -> Template:
    if not args.template:
        raise ValueError("specify a template with -T/--template")
    return load_template(file_path=args.template)


def _render(args, config: DriverConfig, stack: str) -> RenderedTemplate:
    """Load, validate and render the template for a stack."""
    template = _require_template(args)
    overrides = parse_key_value_args(args.param)
    pseudo = pseudo_parameters(stack, config.region, config.account_id)
    return template.render(overrides, pseudo)


def _run_preflight(args, config: DriverConfig) -> Optional[int]:
    """Run preflight checks for mutating verbs.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or args.dry_run:
        return None
    errors = validate_readiness(config)
    if errors:
        print(format_preflight_errors(errors), file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


@contextmanager
def _cancel_on_sigint(event: threading.Event) -> Iterator[None]:
    """First Ctrl-C stops scheduling new changes; a second one interrupts."""
    def handler(_signum, _frame):
        logger.warning("Interrupt received: finishing in-flight changes (Ctrl-C again to abort)")
        event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_report(report: ApplyReport) -> None:
    """Print a human-readable run summary."""
    print("")
    for r in report.results:
        marker = {'completed': '✓', 'failed': '✗', 'skipped': '-'}.get(r.status, '?')
        print(f"  {marker} {r.name:<28} {r.action:<8} {r.status:<10} {r.message}")
    if report.rolled_back:
        print(f"\nRolled back: {', '.join(report.rolled_back)}")
    status = 'complete' if report.success else 'failed'
    print(f"\n{report.operation.capitalize()} {status}: {len(report.completed)} completed, "
          f"{len(report.failed)} failed, {len(report.skipped)} skipped ({report.duration:.1f}s)")
    if report.outputs:
        print("\nOutputs:")
        for key, value in report.outputs.items():
            print(f"  {key} = {value}")


def plan_main(argv: list) -> int:
    """Handle 'plan' verb.

    Exit codes: 0 no changes, 2 changes pending, 1 error.
    """
    parser = _common_parser('plan', 'Show the changes apply would make')
    _add_param_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = _stack_name(args)
        rendered = _render(args, config, stack)
        with StateLock(config.state_dir, stack, 'plan', config.lock_timeout):
            state = StackState.load(stack, config.state_dir)
            changeset = compute_changes(rendered.resources, state)
    except CLI_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        data = {'stack': stack}
        data.update(changeset.to_dict())
        _emit_json(data)
    else:
        print('\n'.join(format_plan(changeset, stack)))

    return 2 if changeset.has_changes else 0


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', 'Create or update a stack from a template')
    _add_param_args(parser)
    _add_execution_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = _stack_name(args)
        rendered = _render(args, config, stack)
    except CLI_ERRORS as e:
        return _error(str(e))

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    logger.info(f"Applying template '{args.template}' to stack '{stack}'")
    report = ApplyReport(stack=stack, operation='apply', report_dir=args.report_dir)

    try:
        with StateLock(config.state_dir, stack, 'apply', config.lock_timeout):
            state = StackState.load(stack, config.state_dir)
            changeset = compute_changes(rendered.resources, state)
            executor = StackExecutor(
                state=state,
                registry=ProviderRegistry(build_control_plane(config)),
                config=config,
                rendered=rendered,
                dry_run=args.dry_run,
                json_output=args.json_output,
            )
            with _cancel_on_sigint(executor.cancel_event):
                executor.apply(changeset, report)
    except CLI_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        _emit_json(report.to_dict())
    elif not args.dry_run:
        _print_report(report)

    return 0 if report.success else 1


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy', 'Delete every resource recorded for a stack')
    _add_execution_args(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = _stack_name(args)
        state = StackState.load(stack, config.state_dir)
    except CLI_ERRORS as e:
        return _error(str(e))

    if state.is_empty:
        if args.json_output:
            _emit_json({'stack': stack, 'operation': 'destroy', 'success': True, 'resources': []})
        else:
            print(f"Stack '{stack}' has no recorded resources. Nothing to destroy.")
        return 0

    preflight_rc = _run_preflight(args, config)
    if preflight_rc is not None:
        return preflight_rc

    # Confirmation for destructive operation
    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy {len(state.resources)} resource(s) in stack '{stack}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying stack '{stack}'")
    report = ApplyReport(stack=stack, operation='destroy', report_dir=args.report_dir)

    try:
        with StateLock(config.state_dir, stack, 'destroy', config.lock_timeout):
            # Reload under the lock
            state = StackState.load(stack, config.state_dir)
            executor = StackExecutor(
                state=state,
                registry=ProviderRegistry(build_control_plane(config)),
                config=config,
                dry_run=args.dry_run,
                json_output=args.json_output,
            )
            with _cancel_on_sigint(executor.cancel_event):
                executor.destroy(report)
    except CLI_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        _emit_json(report.to_dict())
    elif not args.dry_run:
        _print_report(report)

    return 0 if report.success else 1


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Checks template structure, references and the static dependency graph,
    then lists parameters with their labels and groups.
    """
    parser = _common_parser('validate', 'Validate a template')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        template = _require_template(args)
        graph = StackGraph(template.resources.values())
    except CLI_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        _emit_json({
            'valid': True,
            'description': template.description,
            'parameters': [
                {
                    'name': p.name,
                    'type': p.type,
                    'label': p.label,
                    'group': p.group,
                    'required': p.is_required,
                    'default': p.default,
                }
                for p in template.parameters.values()
            ],
            'conditions': list(template.conditions),
            'resources': graph.create_order(),
            'outputs': list(template.outputs),
        })
        return 0

    count = len(template.resources)
    print(f"Template '{args.template}' is valid ({count} resource{'s' if count != 1 else ''})")
    if template.description:
        print(f"  {template.description}")
    if template.parameters:
        print("\nParameters:")
        for p in template.parameters.values():
            label = f" ({p.label})" if p.label else ""
            group = f" [{p.group}]" if p.group else ""
            default = "required" if p.is_required else f"default: {p.default}"
            print(f"  {p.name}{label}{group}: {p.type}, {default}")
    if template.conditions:
        print(f"\nConditions: {', '.join(template.conditions)}")
    print(f"\nCreate order: {', '.join(graph.create_order())}")
    return 0


def outputs_main(argv: list) -> int:
    """Handle 'outputs' verb."""
    parser = _common_parser('outputs', 'Show stored outputs of a stack')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = _stack_name(args)
        state = StackState.load(stack, config.state_dir)
    except CLI_ERRORS as e:
        return _error(str(e))

    if args.json_output:
        _emit_json({'stack': stack, 'outputs': state.outputs})
        return 0

    if not state.outputs:
        print(f"Stack '{stack}' has no outputs.")
        return 0
    for key, value in state.outputs.items():
        print(f"{key} = {value}")
    return 0


def unlock_main(argv: list) -> int:
    """Handle 'unlock' verb: force-remove a stale stack lock."""
    parser = _common_parser('unlock', 'Force-remove a stack lock left by a crashed run')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_config(args)
        stack = _stack_name(args)
    except CLI_ERRORS as e:
        return _error(str(e))

    lock = StateLock(config.state_dir, stack, 'unlock')
    holder = lock.read_holder()
    removed = lock.force_release()
    if args.json_output:
        _emit_json({'stack': stack, 'removed': removed, 'holder': holder})
    elif removed:
        print(f"Removed lock on stack '{stack}' (held by pid {holder.get('pid', '?')} "
              f"on {holder.get('host', '?')}, {holder.get('operation', 'unknown')})")
    else:
        print(f"Stack '{stack}' is not locked.")
    return 0
