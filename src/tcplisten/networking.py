"""Socket-level utility functions: address parsing, listening socket creation
and per-connection TCP tuning.
"""

from errno import EADDRNOTAVAIL, EAFNOSUPPORT
from functools import partial
from math import inf
from socket import has_ipv6
from typing import Optional, Tuple

import platform
import trio.socket

from .fastopen import enable_fast_open

__all__ = (
    "DEFAULT_KEEPALIVE_PERIOD",
    "create_socket",
    "enable_tcp_keepalive",
    "format_socket_address",
    "open_tcp_socket",
    "split_address",
    "tune_tcp_connection",
)


DEFAULT_KEEPALIVE_PERIOD = 180
"""Number of seconds of idle time after which keep-alive probes are sent on
accepted connections, and also the interval between probes.
"""


def _compute_backlog(backlog: Optional[int]) -> int:
    # Same default as Trio's own listeners
    if backlog is None:
        backlog = inf
    return min(backlog, 0xFFFF)


def split_address(address: str) -> Tuple[str, str]:
    """Splits an address of the form ``host:port`` into its host and port
    components.

    An empty host means that the socket should bind to all interfaces. IPv6
    hosts must be enclosed in square brackets. An entirely empty address is
    treated as ``:0``.

    Returns:
        the host and the port, both as strings. The port is not validated;
        it is passed verbatim to the address resolver of the platform.

    Raises:
        ValueError: if the address has no port
    """
    if not address:
        return "", "0"

    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address: {address!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"too many colons in address: {address!r}")

    return host, port


def create_socket(family=trio.socket.AF_INET) -> trio.socket.SocketType:
    """Creates an asynchronous TCP socket in the given address family that
    allows the reuse of local addresses.

    Parameters:
        family: the address family of the socket

    Returns:
        the newly created socket
    """
    sock = trio.socket.socket(family, trio.socket.SOCK_STREAM)
    if hasattr(trio.socket, "SO_REUSEADDR"):
        # SO_REUSEADDR does not exist on Windows, but we don't really need
        # it on Windows either
        sock.setsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_REUSEADDR, 1)
    return sock


async def _open_bound_socket(
    family, sockaddr, *, fast_open: bool, backlog: Optional[int]
) -> trio.socket.SocketType:
    sock = create_socket(family)
    try:
        if family == trio.socket.AF_INET6 and sockaddr[0] == "::":
            sock.setsockopt(trio.socket.IPPROTO_IPV6, trio.socket.IPV6_V6ONLY, 0)
        await sock.bind(sockaddr)
        if fast_open:
            # Must happen before listen() on macOS
            enable_fast_open(sock)
        sock.listen(_compute_backlog(backlog))
    except BaseException:
        sock.close()
        raise
    return sock


async def open_tcp_socket(
    address: str, *, fast_open: bool = False, backlog: Optional[int] = None
) -> trio.socket.SocketType:
    """Opens a listening TCP socket bound to the given address.

    Errors raised by the platform while resolving or binding the address are
    propagated verbatim.

    Parameters:
        address: the address to bind to, in ``host:port`` format. An empty
            host binds to all interfaces; port zero selects an ephemeral port.
        fast_open: whether to enable TCP fast open on the socket. Silently
            ignored on platforms that do not support it.
        backlog: the size of the backlog for incoming connections; ``None``
            means that a reasonable default is chosen

    Returns:
        the bound socket, already listening for incoming connections
    """
    host, port = split_address(address)
    open_socket = partial(_open_bound_socket, fast_open=fast_open, backlog=backlog)

    if host:
        infos = await trio.socket.getaddrinfo(
            host,
            port,
            trio.socket.AF_UNSPEC,
            trio.socket.SOCK_STREAM,
            0,
            trio.socket.AI_PASSIVE,
        )
        family, _, _, _, sockaddr = infos[0]
        return await open_socket(family, sockaddr)

    if has_ipv6:
        # Empty host; prefer a dual-stack socket
        try:
            return await open_socket(trio.socket.AF_INET6, ("::", port))
        except OSError as ex:
            # IPv6 may be compiled in but disabled in the kernel
            if ex.errno not in (EAFNOSUPPORT, EADDRNOTAVAIL):
                raise

    return await open_socket(trio.socket.AF_INET, ("0.0.0.0", port))


def enable_tcp_keepalive(
    sock,
    after_idle_sec: int = DEFAULT_KEEPALIVE_PERIOD,
    interval_sec: int = DEFAULT_KEEPALIVE_PERIOD,
    max_fails: Optional[int] = None,
) -> None:
    """Enables TCP keepalive settings on the given socket.

    Parameters:
        after_idle_sec: number of seconds after which the socket should start
            sending TCP keepalive packets
        interval_sec: number of seconds between consecutive TCP keepalive
            packets
        max_fails: maximum number of failures allowed before terminating the
            TCP connection; ``None`` keeps the default of the OS
    """
    sock.setsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_KEEPALIVE, 1)

    if hasattr(trio.socket, "TCP_KEEPIDLE"):
        sock.setsockopt(
            trio.socket.IPPROTO_TCP, trio.socket.TCP_KEEPIDLE, after_idle_sec
        )
    elif platform.system() == "Darwin":
        TCP_KEEPALIVE = 0x10  # scraped from the Darwin headers
        sock.setsockopt(trio.socket.IPPROTO_TCP, TCP_KEEPALIVE, after_idle_sec)

    if hasattr(trio.socket, "TCP_KEEPINTVL"):
        sock.setsockopt(
            trio.socket.IPPROTO_TCP, trio.socket.TCP_KEEPINTVL, interval_sec
        )

    if max_fails is not None and hasattr(trio.socket, "TCP_KEEPCNT"):
        sock.setsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_KEEPCNT, max_fails)


def tune_tcp_connection(
    sock, *, no_delay: bool = True, keepalive_period: int = DEFAULT_KEEPALIVE_PERIOD
) -> None:
    """Applies the standard tuning to an accepted TCP connection: sets
    ``TCP_NODELAY`` and enables keep-alive probes with the given period.

    Raises:
        OSError: if one of the socket options could not be set
    """
    sock.setsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_NODELAY, int(no_delay))
    enable_tcp_keepalive(
        sock, after_idle_sec=keepalive_period, interval_sec=keepalive_period
    )


def format_socket_address(sock, format: str = "{host}:{port}") -> str:
    """Formats the address that the given socket is bound to in the
    standard hostname-port format.

    Parameters:
        sock: the socket to format, or an address tuple
        format: format string in brace-style that is used by
            ``str.format()``. The tokens ``{host}`` and ``{port}`` will be
            replaced by the hostname and port.

    Returns:
        str: a formatted representation of the address and port of the
            socket
    """
    if hasattr(sock, "getsockname"):
        host, port, *_ = sock.getsockname()
    else:
        host, port, *_ = sock

    # Canonicalize the value of 'host'
    if host in ("0.0.0.0", "::"):
        host = ""
    elif ":" in host:
        host = f"[{host}]"

    return format.format(host=host, port=port)
