"""Local TCP port allocation."""

from __future__ import annotations

import socket
from typing import Collection


def allocate_ephemeral_port(exclude: Collection[int] = ()) -> int:
    """
    Ask the operating system for a free loopback TCP port.

    The listener is released before returning, so another process may claim
    the port before the server binds it. Callers accept that window.

    Args:
        exclude: Ports that must not be returned (e.g. a port already assigned
            to the same server).

    Returns:
        A positive port number not contained in ``exclude``.
    """
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            _, port = sock.getsockname()
        if port not in exclude:
            return int(port)
