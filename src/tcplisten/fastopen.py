"""Platform-specific support for enabling TCP fast open on listening sockets.

TCP fast open allows clients to send data in the SYN packet of the opening
handshake. Kernel support is platform-dependent; on platforms without it,
enabling fast open is a no-op and not an error.

On Linux, make sure that server-side support is enabled in the kernel::

    sysctl -w net.ipv4.tcp_fastopen=3
"""

import logging
import sys

from abc import ABCMeta, abstractmethod
from errno import ENOPROTOOPT, EOPNOTSUPP
from trio.socket import IPPROTO_TCP

__all__ = (
    "BSDFastOpen",
    "FastOpenCapability",
    "LinuxFastOpen",
    "NoFastOpen",
    "enable_fast_open",
    "get_fast_open_capability",
)


LINUX_TCP_FASTOPEN = 23
"""Value of the ``TCP_FASTOPEN`` socket option on Linux."""

DARWIN_TCP_FASTOPEN = 0x105
"""Value of the ``TCP_FASTOPEN`` socket option on macOS."""

FREEBSD_TCP_FASTOPEN = 1025
"""Value of the ``TCP_FASTOPEN`` socket option on FreeBSD."""

_UNSUPPORTED_ERRNOS = (ENOPROTOOPT, EOPNOTSUPP)

log = logging.getLogger(__name__.rpartition(".")[0])


class FastOpenCapability(metaclass=ABCMeta):
    """Interface specification for objects that know how to enable TCP fast
    open on a bound stream socket on a given platform.
    """

    @property
    @abstractmethod
    def supported(self) -> bool:
        """Returns whether the platform claims support for TCP fast open."""
        raise NotImplementedError

    def enable(self, sock) -> bool:
        """Enables TCP fast open on the given bound, not yet listening
        socket.

        A kernel that was built without TCP fast open is treated the same
        way as a platform without it.

        Returns:
            whether TCP fast open was enabled

        Raises:
            OSError: if the platform supports TCP fast open but the
                system call failed
        """
        if not self.supported:
            return False

        try:
            self._set_option(sock)
        except OSError as ex:
            if ex.errno not in _UNSUPPORTED_ERRNOS:
                raise
            log.debug(f"TCP fast open is not supported by the kernel: {ex}")
            return False

        return True

    def _set_option(self, sock) -> None:
        raise NotImplementedError


class LinuxFastOpen(FastOpenCapability):
    """TCP fast open support on Linux, where the value of the socket option
    is the length of the queue of pending fast open requests.
    """

    def __init__(self, queue_length: int = 256, option: int = LINUX_TCP_FASTOPEN):
        self.option = option
        self.queue_length = queue_length

    @property
    def supported(self) -> bool:
        return True

    def _set_option(self, sock) -> None:
        sock.setsockopt(IPPROTO_TCP, self.option, self.queue_length)


class BSDFastOpen(FastOpenCapability):
    """TCP fast open support on macOS and FreeBSD, where the socket option is
    a simple on-off switch.
    """

    def __init__(self, option: int):
        self.option = option

    @property
    def supported(self) -> bool:
        return True

    def _set_option(self, sock) -> None:
        sock.setsockopt(IPPROTO_TCP, self.option, 1)


class NoFastOpen(FastOpenCapability):
    """Fallback for platforms without TCP fast open; enabling it does
    nothing.
    """

    @property
    def supported(self) -> bool:
        return False


def get_fast_open_capability(platform: str = sys.platform) -> FastOpenCapability:
    """Returns the TCP fast open capability object for the given platform.

    Parameters:
        platform: the platform identifier, in the format of ``sys.platform``

    Returns:
        an object that can be used to enable TCP fast open on sockets
    """
    if platform.startswith("linux"):
        return LinuxFastOpen()
    elif platform == "darwin":
        return BSDFastOpen(DARWIN_TCP_FASTOPEN)
    elif platform.startswith("freebsd"):
        return BSDFastOpen(FREEBSD_TCP_FASTOPEN)
    else:
        return NoFastOpen()


def enable_fast_open(sock) -> bool:
    """Enables TCP fast open on the given bound stream socket if the current
    platform supports it.

    Returns:
        whether TCP fast open was enabled
    """
    return get_fast_open_capability().enable(sock)
