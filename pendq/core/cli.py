# pendq/core/cli.py
"""
CLI for the pendq runner, scheduler and check commands.

Module path resolution:
1. User provides a dotted module path: `pendq runner myproject.queue:app`
2. User is responsible for PYTHONPATH / running from the correct directory
3. Convenience: if cwd has pyproject.toml, cwd is added to sys.path
"""

import argparse
import asyncio
import importlib
import os
import signal
import sys
from typing import Callable, Optional

from pendq.core.app import Pendq
from pendq.core.errors import ConfigurationError, ErrorCode, PendqError, ValidationReport
from pendq.core.logging import configure_logging, get_logger
from pendq.core.runner.config import RunnerConfig
from pendq.core.utils.imports import (
    import_file_path,
    is_file_path,
    setup_sys_path_from_cwd,
)

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  pendq runner myproject.queue:app  (recommended)\n'
                '  pendq runner myproject/queue.py:app  (file path)\n'
                '  pendq runner myproject.queue  (auto-discover app variable)'
            ),
        )
    return module_path


def parse_locator(locator: str) -> tuple[str, Optional[str]]:
    """
    Split a module locator into (module_path, attribute_name).

    - "myproject.queue:app" -> ("myproject.queue", "app")
    - "myproject.queue" -> ("myproject.queue", None)
    - "/path/to/queue.py:app" -> ("/path/to/queue.py", "app")
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr or None)
    return (locator, None)


def discover_app(module_locator: str) -> tuple[Pendq, str]:
    """
    Import the module named by module_locator and return (app, variable_name).

    Without an explicit attribute the module must hold exactly one Pendq
    instance.
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = parse_locator(module_locator)

    if is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        module = import_file_path(os.path.realpath(module_path))
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[str(e)],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            )
    module_name = module.__name__

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, Pendq):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module_name}' is not a Pendq instance",
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got {type(obj).__name__}'],
            )
        app, var_name = obj, attr_name
    else:
        candidates = [
            (getattr(module, name), name)
            for name in dir(module)
            if not name.startswith('_') and isinstance(getattr(module, name), Pendq)
        ]
        if len(candidates) != 1:
            found = [name for _, name in candidates]
            raise ConfigurationError(
                message=f'expected exactly one Pendq instance in {module_name}',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'found: {found}'],
                help_text='name the variable explicitly: module.path:variable',
            )
        app, var_name = candidates[0]

    logger.info(f"Discovered pendq app '{var_name}' from {module_name}")
    return app, var_name


def _load_app(args: argparse.Namespace) -> Pendq:
    """Discover the app and import its task modules, exiting 1 on failure."""
    logger = get_logger('cli')
    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
        app.import_task_modules()
    except PendqError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {type(e).__name__}: {e}')
        sys.exit(1)
    return app


def _install_signal_handlers(request_stop: Callable[[], None], what: str) -> None:
    logger = get_logger('cli')
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info(f'Received interrupt signal, stopping {what}...')
        request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass


def runner_command(args: argparse.Namespace) -> None:
    """Handle runner command."""
    logger = get_logger('cli')
    configure_logging(args.loglevel)
    app = _load_app(args)

    try:
        cfg = RunnerConfig.from_app_config(
            app.config,
            batch_size=args.batch_size,
            poll_interval_ms=args.poll_interval_ms,
        )
    except ValueError as e:
        logger.error(f'Invalid runner options: {e}')
        sys.exit(1)

    app.config.log_config(logger)
    logger.info(f'Task types: {app.list_tasks()}')

    async def run_runner() -> None:
        runner = app.create_runner(cfg)
        _install_signal_handlers(runner.request_stop, 'runner')
        await runner.start()

    try:
        asyncio.run(run_runner())
    except KeyboardInterrupt:
        logger.info('Runner interrupted by user')
    except Exception as e:
        logger.error(f'Runner failed: {e}')
        sys.exit(1)


def scheduler_command(args: argparse.Namespace) -> None:
    """Handle scheduler command."""
    logger = get_logger('cli')
    configure_logging(args.loglevel)
    app = _load_app(args)

    recurring = app.registry.list_recurring()
    logger.info(f'Recurring task types: {recurring}')

    async def run_scheduler() -> None:
        scheduler = app.create_scheduler()
        _install_signal_handlers(scheduler.request_stop, 'scheduler')
        await scheduler.run_forever()

    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Scheduler interrupted by user')
    except Exception as e:
        logger.error(f'Scheduler failed: {e}')
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Handle check command: validate the app without starting services."""
    configure_logging(args.loglevel)
    app = _load_app(args)

    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.render(), file=sys.stderr)
        sys.exit(1)

    print(f'ok: all validations passed\n  {len(app.list_tasks())} task type(s) registered')
    sys.exit(0)


def _add_common_arguments(
    parser: argparse.ArgumentParser, default_loglevel: str = 'INFO'
) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., myproject.queue:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., myproject.queue:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default=default_loglevel,
        type=str.upper,
        help=f'Logging level (default: {default_loglevel})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pendq',
        description='pendq task queue - runner and scheduler management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pendq runner myproject.queue:app
  pendq runner myproject/queue.py:app --batch-size 10
  pendq scheduler myproject.queue:app
  pendq check myproject.queue:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    runner_parser = subparsers.add_parser('runner', help='Start a task runner')
    _add_common_arguments(runner_parser)
    runner_parser.add_argument(
        '--batch-size',
        type=int,
        default=None,
        help='Tasks claimed per loop iteration (default: AppConfig.claim_batch_size)',
    )
    runner_parser.add_argument(
        '--poll-interval-ms',
        type=int,
        default=None,
        help='Fallback poll interval when idle (default: from AppConfig.resilience)',
    )

    scheduler_parser = subparsers.add_parser(
        'scheduler', help='Start the scheduler for recurring task types'
    )
    _add_common_arguments(scheduler_parser)

    check_parser = subparsers.add_parser(
        'check', help='Validate app configuration without starting services'
    )
    _add_common_arguments(check_parser, default_loglevel='WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check broker connectivity (SELECT 1)',
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)

        match args.command:
            case 'runner':
                runner_command(args)
            case 'scheduler':
                scheduler_command(args)
            case 'check':
                check_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
