"""
Wire format shared by the server and the client.

The protocol is deliberately tiny:
1. The client sends one command line as raw bytes followed by a NUL byte.
   There is no length prefix; the server treats whatever a single recv()
   returns as one command, cut at the first NUL.
2. The server executes the command and sends back its output followed by a
   single NUL byte (the sentinel).
3. The client keeps reading until a chunk ends with the sentinel, or until a
   zero-length read tells it the server closed the connection.

Output that itself contains a NUL byte can make the client stop early. That is
a property of the format, not something this module tries to repair.
"""

import socket
from typing import Tuple

SENTINEL = b"\0"
SERVER_ENCODING = "utf-8"


def encode_command(command: str) -> bytes:
    """Encodes a command line for sending, including the trailing NUL."""
    return command.encode(SERVER_ENCODING, errors="surrogateescape") + SENTINEL


def decode_command(data: bytes) -> str:
    """
    Decodes one received command chunk.

    The chunk is read as a C string: everything from the first NUL on is
    ignored. Undecodable bytes are kept as surrogates so the shell receives
    exactly the bytes the client sent.
    """
    command = data.split(SENTINEL, 1)[0]
    return command.decode(SERVER_ENCODING, errors="surrogateescape")


def encode_response(output: str) -> bytes:
    """Encodes command output and appends the end-of-response sentinel."""
    return output.encode(SERVER_ENCODING, errors="surrogateescape") + SENTINEL


def read_response(sock: socket.socket, buffer_size: int) -> Tuple[bytes, bool]:
    """
    Reads one full response from the server.

    Args:
        sock: A connected socket.
        buffer_size: Maximum bytes requested per recv() call.

    Returns:
        A tuple (payload, closed). ``payload`` is the response without the
        sentinel. ``closed`` is True when the server closed the connection
        before (or instead of) sending a sentinel.
    """
    chunks = []
    while True:
        chunk = sock.recv(buffer_size)
        if not chunk:
            return b"".join(chunks), True
        chunks.append(chunk)
        # End of response is detected on the last byte of a read only.
        if chunk.endswith(SENTINEL):
            payload = b"".join(chunks)
            return payload[: -len(SENTINEL)], False
