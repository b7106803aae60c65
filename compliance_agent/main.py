"""
Main entry point for the Compliance Agent.
This script handles command-line arguments for registration, syncing,
running the daemon and inspecting local state.
"""
import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from compliance_agent.config import ConfigManager
from compliance_agent.core import Agent, AgentError
from compliance_agent.utils.logger import ROOT_LOGGER_NAME, setup_logger, get_logger
from compliance_agent.version import __version__, __app_name__

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_USAGE = 2


def _print_json(data: Dict[str, Any]):
    print(json.dumps(data, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="compliance-agent", description=f"{__app_name__} CLI.")
    parser.add_argument('--version', action='version', version=f"{__app_name__} {__version__}")
    parser.add_argument('--config', help='Path to the JSON configuration file.')
    subparsers = parser.add_subparsers(dest='command', required=True)

    register_parser = subparsers.add_parser('register', help='Register this device with a one-time token.')
    register_parser.add_argument('token', nargs='?', default='', help='Registration token from the web app.')
    register_parser.add_argument('--region', default=None, help='Account region: NA, EU or APAC.')
    register_parser.add_argument('--resume', action='store_true',
                                 help='Finish a registration that failed after the token was accepted.')

    sync_parser = subparsers.add_parser('sync', help='Collect and upload a telemetry snapshot.')
    sync_parser.add_argument('--force', action='store_true', help='Ignore the sync throttles.')

    daemon_parser = subparsers.add_parser('daemon', help='Run scheduled syncs until stopped.')
    daemon_parser.add_argument('--interval-hours', type=int, default=None, help='Hours between syncs.')

    subparsers.add_parser('status', help='Show the persisted agent state.')
    subparsers.add_parser('unregister', help='Remove the credential and all local state.')
    subparsers.add_parser('debug', help='Show version, path and platform details.')
    return parser


def _setup_logging(config: ConfigManager):
    setup_logger(
        name=ROOT_LOGGER_NAME,
        console_level_name=config.get('logging.console_level', 'INFO'),
        file_level_name=config.get('logging.file_level', 'DEBUG'),
        log_file_path=config.log_file_path,
        force=True
    )


def _run_command(agent: Agent, args: argparse.Namespace) -> int:
    if args.command == 'register':
        if not args.resume and not args.token:
            print("ERROR: A registration token is required.", file=sys.stderr)
            return EXIT_USAGE
        region = args.region or agent.config.get('api.region')
        user = agent.register(args.token, region, resume=args.resume)
        print(f"Registered as {user.display_name or 'unknown user'}.")
        return EXIT_OK

    if args.command == 'sync':
        outcome = agent.sync(forced=args.force)
        _print_json(outcome.to_dict())
        return EXIT_OK if outcome.succeeded or outcome.skipped else EXIT_ERROR

    if args.command == 'daemon':
        agent.run_daemon(interval_hours=args.interval_hours)
        return EXIT_OK

    if args.command == 'status':
        document = agent.status().to_document()
        document.pop('accessToken', None)
        document['registered'] = agent.state_manager.is_registered
        _print_json(document)
        return EXIT_OK

    if args.command == 'unregister':
        agent.unregister()
        print("Agent unregistered.")
        return EXIT_OK

    if args.command == 'debug':
        _print_json(agent.debug_info())
        return EXIT_OK

    return EXIT_USAGE


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parses arguments and runs one command.

    :param argv: Arguments without the program name. Defaults to ``sys.argv[1:]``
    :type argv: Optional[List[str]]
    :return: Process exit code
    :rtype: int
    """
    args = _build_parser().parse_args(argv)

    try:
        config = ConfigManager(config_path=args.config)
    except AgentError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    _setup_logging(config)
    logger.debug(f"Running command '{args.command}' ({__app_name__} {__version__})")

    try:
        agent = Agent(config)
        return _run_command(agent, args)
    except AgentError as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE
    except Exception as e:
        logger.critical(f"Unexpected error running '{args.command}': {e}", exc_info=True)
        print(f"FATAL ERROR: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
