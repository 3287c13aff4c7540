"""
Command-line front-end for mx-tester.

Usage:
    mx-tester [-c mx-tester.yml] [options] [build] [up] [run] [down]

Without commands, runs ``up run down``. Exit status is 0 on success, 1 if
any phase failed and 2 if the configuration is invalid.
"""

import argparse
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import DEFAULT_CONFIG_FILE, load_config
from .errors import ConfigurationError
from .orchestrator import COMMANDS, DEFAULT_COMMANDS, run_commands, validate_commands

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

LOG_FILE_NAME = "mx-tester.log"

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Set up console and (optionally) file logging.

    The console level comes from ``--verbose`` or the LOG_LEVEL environment
    variable. The file handler, if any, always logs at DEBUG level.

    Args:
        verbose: Log at DEBUG level on the console
        log_dir: Directory for the rotating log file

    Returns:
        Logger instance for this module
    """
    if verbose:
        log_level = logging.DEBUG
    else:
        log_level_str = os.environ.get("LOG_LEVEL", "INFO").upper()
        log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir is not None else log_level)
    root_logger.handlers.clear()

    # Scripts may write to stdout, keep our own output on stderr.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_dir / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=5  # 10MB
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
                )
            )
            root_logger.addHandler(file_handler)
        except OSError as e:
            # Continue with console only.
            logger.warning("Could not set up file logging: %s", e)

    return logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mx-tester",
        description="Build, bring up, test and tear down a Synapse homeserver with modules.",
    )
    parser.add_argument(
        "commands",
        nargs="*",
        metavar="COMMAND",
        help=f"Commands to run, in order, among {', '.join(COMMANDS)} "
        f"(default: {' '.join(DEFAULT_COMMANDS)})",
    )
    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG_FILE, help="Configuration file (default: %(default)s)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    parser.add_argument("--root", help="Root directory for test data (default: <tmp>/mx-tester)")
    parser.add_argument(
        "--workers",
        action="store_true",
        default=None,
        help="Run Synapse with workers (overrides `workers.enabled`)",
    )
    parser.add_argument("--synapse-tag", help="Use matrixdotorg/synapse:<TAG> as base image")
    parser.add_argument("--username", help="Docker registry username")
    parser.add_argument("--password", help="Docker registry password")
    parser.add_argument("--server", help="Docker registry server address")
    parser.add_argument(
        "--no-autoclean-on-error",
        dest="autoclean_on_error",
        action="store_false",
        default=None,
        help="Leave containers behind when `build` or `up` fails",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point of the `mx-tester` command.

    Returns:
        The process exit status
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    commands = args.commands or list(DEFAULT_COMMANDS)
    try:
        validate_commands(commands)
    except ValueError as e:
        parser.error(str(e))

    setup_logging(args.verbose)
    try:
        config = load_config(args.config).with_overrides(
            root=args.root,
            workers=args.workers,
            synapse_tag=args.synapse_tag,
            username=args.username,
            password=args.password,
            server=args.server,
            autoclean_on_error=args.autoclean_on_error,
        )
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_CONFIG_ERROR

    # Outside of the test root, which `build` clears.
    setup_logging(args.verbose, config.root / "logs" / config.name)
    logger.info("mx-tester %s, suite %s: %s", __version__, config.name, " ".join(commands))

    try:
        outcome = run_commands(config, commands)
    except KeyboardInterrupt:
        logger.warning("Received keyboard interrupt - shutting down")
        return EXIT_FAILURE

    if outcome.warnings:
        logger.warning("Teardown completed with %d warning(s)", len(outcome.warnings))
    if not outcome.success:
        logger.error("mx-tester failed: %s", outcome.error)
        return EXIT_FAILURE
    logger.info("mx-tester: success")
    return EXIT_SUCCESS
