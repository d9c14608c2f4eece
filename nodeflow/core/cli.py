# nodeflow/core/cli.py
"""
CLI for the nodeflow dispatcher and check commands.

Apps are located like ``nodeflow dispatcher myproject.automation:app``.
Running from a directory holding pyproject.toml puts it on sys.path.
"""

import argparse
import asyncio
import logging
import signal
import sys

from nodeflow.core.app import NodeFlow
from nodeflow.core.errors import ConfigurationError, ErrorCode, NodeflowError, ValidationReport
from nodeflow.core.logging import get_logger, set_default_level
from nodeflow.core.utils.imports import import_by_locator, setup_sys_path_from_cwd


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide the app locator in one of these formats:\n'
                '  nodeflow dispatcher myproject.automation:app  (recommended)\n'
                '  nodeflow dispatcher myproject/automation.py:app  (file path)\n'
                '  nodeflow dispatcher myproject.automation  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split "pkg.module:attr" into ("pkg.module", "attr").

    Windows drive letters ("C:\\app.py") are not treated as separators.
    """
    module_part, sep, attr = locator.rpartition(':')
    if not sep or not attr or '/' in attr or '\\' in attr:
        return locator, None
    return module_part, attr


def discover_app(module_locator: str) -> tuple[NodeFlow, str]:
    """
    Import the module and find its NodeFlow instance.

    Returns:
        (app_instance, variable_name)
    """
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.info(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = _parse_locator(module_locator)
    try:
        module = import_by_locator(module_path)
    except ModuleNotFoundError as e:
        raise ConfigurationError(
            message=f'module not found: {module_path}',
            code=ErrorCode.CLI_INVALID_LOCATOR,
            notes=[str(e), f'sys.path: {sys.path[:5]}...'],
            help_text=(
                'ensure you are running from the correct directory\n'
                'or set PYTHONPATH to include your project root'
            ),
        )

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, NodeFlow):
            found = 'nothing' if obj is None else type(obj).__name__
            raise ConfigurationError(
                message=f"'{attr_name}' in '{module.__name__}' is not a NodeFlow app",
                code=ErrorCode.CLI_INVALID_LOCATOR,
                notes=[f'found {found}'],
            )
        logger.info(f"Discovered nodeflow app '{attr_name}' from {module.__name__}")
        return obj, attr_name

    candidates = [
        (obj, name)
        for name, obj in vars(module).items()
        if not name.startswith('_') and isinstance(obj, NodeFlow)
    ]
    if len(candidates) != 1:
        names = [name for _, name in candidates]
        raise ConfigurationError(
            message=(
                f'no NodeFlow app found in {module.__name__}'
                if not candidates
                else f'multiple NodeFlow apps found in {module.__name__}: {names}'
            ),
            code=ErrorCode.CLI_INVALID_LOCATOR,
            help_text='name the app explicitly: module.path:variable',
        )
    app, var_name = candidates[0]
    logger.info(f"Discovered nodeflow app '{var_name}' from {module.__name__}")
    return app, var_name


def setup_logging(loglevel: str) -> None:
    """Configure the level of every nodeflow logger."""
    level = getattr(logging, loglevel.upper(), logging.INFO)
    set_default_level(level)


def _discover_or_exit(args: argparse.Namespace) -> NodeFlow:
    logger = get_logger('cli')
    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
    except NodeflowError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


def dispatcher_command(args: argparse.Namespace) -> None:
    """Run the resume/retry dispatcher until SIGINT or SIGTERM."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    app = _discover_or_exit(args)
    app.config.log_config(logger)

    async def run_dispatcher() -> None:
        dispatcher = app.dispatcher()
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping dispatcher...')
            dispatcher.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        try:
            await app.start()
            await dispatcher.run_forever()
        finally:
            await app.close()

    try:
        asyncio.run(run_dispatcher())
    except KeyboardInterrupt:
        logger.info('Dispatcher interrupted by user')
    except NodeflowError as e:
        print(e.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error(f'Dispatcher failed: {e}', exc_info=True)
        sys.exit(1)


def check_command(args: argparse.Namespace) -> None:
    """Validate the app's workflows (and the store, with --live)."""
    setup_logging(args.loglevel)
    app = _discover_or_exit(args)

    errors = app.check(live=args.live)
    if errors:
        report = ValidationReport('check')
        for error in errors:
            report.add(error)
        print(report.format_rust_style(), file=sys.stderr)
        sys.exit(1)

    workflow_count = len(app.list_workflows())
    print(
        f'ok: all validations passed\n'
        f'  {workflow_count} workflow(s), {len(app.registry)} node type(s) registered'
    )
    sys.exit(0)


def _add_common_arguments(parser: argparse.ArgumentParser, default_level: str) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='App locator (e.g., myproject.automation:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='App locator (e.g., myproject.automation:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nodeflow',
        description='nodeflow workflow automation - dispatcher and validation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Resume and retry executions until stopped
  nodeflow dispatcher myproject.automation:app

  # Validate workflows without starting anything
  nodeflow check myproject.automation:app
  nodeflow check myproject.automation:app --live
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    dispatcher_parser = subparsers.add_parser(
        'dispatcher',
        help='Run the resume/retry dispatcher',
    )
    _add_common_arguments(dispatcher_parser, 'INFO')

    check_parser = subparsers.add_parser(
        'check',
        help='Validate workflows without starting services',
    )
    _add_common_arguments(check_parser, 'WARNING')
    check_parser.add_argument(
        '--live',
        action='store_true',
        default=False,
        help='Also check that the store is reachable and its schema can be created',
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    parser = build_parser()
    try:
        args = parser.parse_args()
        match args.command:
            case 'dispatcher':
                dispatcher_command(args)
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
