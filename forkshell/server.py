"""
Command line entry point for the forkshell server.

To run the server:
    python -m forkshell.server [-p port] [-v]
"""

import argparse
import logging
import sys
from typing import List, Optional

from forkshell.config import (
    InvalidPollTimeoutError,
    InvalidPortError,
    ServerConfig,
    load_env_file,
    parse_poll_timeout,
    parse_port,
    setup_logging,
)
from forkshell.dispatcher import (
    EXIT_FAILURE,
    AddressResolutionError,
    BindError,
    Dispatcher,
    SpawnError,
)

logger = logging.getLogger("forkshell.server")

DESCRIPTION = """\
Start a server that executes a user's shell commands when they connect. The
service can either run non-interactively, closing the connection after the batch
job has completed; or interactively and the user terminates the connection
themselves. Commands are run by /bin/sh unless another shell is configured.
The server shuts down by itself once every connection has been handled."""


def _port(value: str) -> int:
    try:
        return parse_port(value)
    except InvalidPortError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _poll_timeout(value: str) -> float:
    try:
        return parse_poll_timeout(value)
    except InvalidPollTimeoutError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="forkshell-server", description=DESCRIPTION)
    parser.add_argument(
        "-p",
        "--port",
        type=_port,
        help="Run the server on the given port, a decimal integer between 0-65535 "
        "(default: 8888, or FORKSHELL_PORT).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=None,
        help="Print status messages to stderr.",
    )
    parser.add_argument(
        "--poll-timeout",
        type=_poll_timeout,
        help="Seconds between idle checks, greater than 0 (default: 3).",
    )
    parser.add_argument("--shell", help="Shell used to run commands (default: /bin/sh).")
    parser.add_argument(
        "--merge-stderr",
        action="store_true",
        default=None,
        help="Send the commands' stderr back to the client along with stdout.",
    )
    return parser


def load_config(argv: Optional[List[str]] = None) -> ServerConfig:
    """Builds the server config from the environment and the command line."""
    parser = build_parser()
    args = parser.parse_args(argv)

    load_env_file()
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        parser.error(str(e))

    if args.port is not None:
        config.port = args.port
    if args.verbose is not None:
        config.verbose = args.verbose
    if args.poll_timeout is not None:
        config.poll_timeout = args.poll_timeout
    if args.shell is not None:
        config.shell = args.shell
    if args.merge_stderr is not None:
        config.merge_stderr = args.merge_stderr
    return config


def main(argv: Optional[List[str]] = None) -> int:
    config = load_config(argv)
    setup_logging(config.verbose)

    try:
        return Dispatcher(config).run()
    except (AddressResolutionError, BindError) as e:
        logger.error(str(e))
        return EXIT_FAILURE
    except SpawnError as e:
        logger.critical(str(e))
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
