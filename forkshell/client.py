"""
Client for the forkshell server.

Connects to a server and sends shell commands, either one command given on the
command line (-c) or interactively until the user types 'exit'.

Example:
    with CommandClient("127.0.0.1", 8888) as client:
        print(client.send_command("echo hello"), end="")
"""

import argparse
import logging
import socket
import sys
from typing import Callable, List, Optional, TextIO

from forkshell.config import (
    CLIENT_BUFFER_SIZE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    EXIT_COMMAND,
    ClientConfig,
    InvalidPortError,
    load_env_file,
    parse_port,
    setup_logging,
)
from forkshell.protocol import encode_command, read_response

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
PROMPT = "$ "


class ConnectError(Exception):
    """Raised when no resolved address of the server accepts the connection."""


class CommandClient:
    """
    A connection to a forkshell server.

    Commands are strictly sequential: ``send_command`` returns only once the
    whole response has been read.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        buffer_size: int = CLIENT_BUFFER_SIZE,
        timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self.timeout = timeout
        self.sock: Optional[socket.socket] = None
        # Set once the server has closed the connection.
        self.closed = False
        self.bytes_received = 0

    def connect(self) -> "CommandClient":
        """
        Tries every resolved address of the server until one connects.

        Raises:
            ConnectError: If resolution fails or no address accepts.
        """
        logger.info(f"Connecting to {self.host}:{self.port} ...")
        try:
            candidates = socket.getaddrinfo(
                self.host, self.port, socket.AF_INET, socket.SOCK_STREAM
            )
        except socket.gaierror as e:
            raise ConnectError(f"Failed in getaddrinfo(). {e}") from e

        for attempt, (family, socktype, proto, _, sockaddr) in enumerate(candidates, 1):
            try:
                sock = socket.socket(family, socktype, proto)
            except OSError:
                continue
            sock.settimeout(self.timeout)
            try:
                sock.connect(sockaddr)
            except OSError as e:
                logger.info(f"Attempt {attempt} ... Failed ({e}).")
                sock.close()
                continue
            logger.info(f"Attempt {attempt} ... Success.")
            self.sock = sock
            self.closed = False
            return self

        raise ConnectError(f"Could not connect to {self.host}:{self.port}")

    def send_command(self, command: str) -> str:
        """
        Sends one command line and waits for its complete output.

        Returns:
            The output text. If the server closed the connection instead of
            answering, whatever arrived is returned and ``closed`` is set.
        """
        if self.sock is None:
            raise RuntimeError("Client is not connected. Call connect() first.")
        self.sock.sendall(encode_command(command))
        payload, closed = read_response(self.sock, self.buffer_size)
        self.closed = closed
        self.bytes_received = len(payload)
        logger.info(f"Received response from server of {len(payload)} bytes")
        return payload.decode("utf-8", errors="replace")

    def close(self) -> None:
        """Shuts the connection down in both directions and closes it."""
        if self.sock is None:
            return
        logger.info("Shutting down client...")
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        self.sock = None

    def __enter__(self):
        if self.sock is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _print_response(text: str, out: TextIO) -> None:
    out.write(text)
    if text and not text.endswith("\n"):
        out.write("\n")
    out.flush()


def run_batch(client: CommandClient, command: str, out: TextIO = sys.stdout) -> int:
    """Sends a single command, prints its output and returns an exit status."""
    _print_response(client.send_command(command), out)
    return EXIT_SUCCESS


def run_interactive(
    client: CommandClient,
    read_line: Callable[[str], str] = input,
    out: TextIO = sys.stdout,
    prompt: str = PROMPT,
) -> int:
    """
    Prompts for commands until the user enters 'exit' or closes the input.

    The 'exit' line itself is never sent to the server.
    """
    while True:
        try:
            line = read_line(prompt)
        except (EOFError, KeyboardInterrupt):
            out.write("\n")
            break
        if line == EXIT_COMMAND:
            break
        _print_response(client.send_command(line), out)
        if client.closed:
            logger.info("Server closed the connection.")
            break
    return EXIT_SUCCESS


USAGE_LINE = "forkshell-client -h host [-p port] [-c command] [-v]"

USAGE = f"""\
usage: {USAGE_LINE}

Connect to a remote shell server listening on the host and port.
The commands are run by the server's shell, normally /bin/sh.

  -h HOST     the address of the target server, a hostname or numeric IP
              address (default: 127.0.0.1, or FORKSHELL_HOST).
  -p PORT     the port the service is running on (default: 8888).
  -c COMMAND  run a single command non-interactively.
  -v          print status messages to stderr.
  -?, --help  display this help message.
"""


class _HelpAction(argparse.Action):
    def __init__(self, option_strings, dest=argparse.SUPPRESS, default=argparse.SUPPRESS, help=None):
        super().__init__(option_strings, dest=dest, default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        sys.stdout.write(USAGE)
        parser.exit(EXIT_SUCCESS)


def _port(value: str) -> int:
    try:
        return parse_port(value)
    except InvalidPortError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    # -h selects the host, so argparse's own help flag is replaced by -?.
    parser = argparse.ArgumentParser(prog="forkshell-client", usage=USAGE_LINE, add_help=False)
    parser.add_argument("-h", "--host", dest="host")
    parser.add_argument("-p", "--port", type=_port)
    parser.add_argument("-c", "--command")
    parser.add_argument("-v", "--verbose", action="store_true", default=None)
    parser.add_argument("-?", "--help", action=_HelpAction)
    return parser


def load_config(argv: List[str]) -> ClientConfig:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_env_file()
    try:
        config = ClientConfig.from_env()
    except InvalidPortError as e:
        parser.error(str(e))

    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.command is not None:
        config.command = args.command
    if args.verbose is not None:
        config.verbose = args.verbose
    return config


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        sys.stderr.write(USAGE)
        return EXIT_FAILURE

    config = load_config(argv)
    setup_logging(config.verbose)
    logger.info("Starting client ...")

    client = CommandClient(config.host, config.port, buffer_size=config.buffer_size)
    try:
        client.connect()
    except ConnectError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    try:
        if config.command is not None:
            return run_batch(client, config.command)
        return run_interactive(client)
    except OSError as e:
        logger.error(f"Error talking to server: {e}")
        return EXIT_FAILURE
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
