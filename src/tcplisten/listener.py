"""Construction of ready-to-accept TCP listeners from a bind address and a
list of options.
"""

import logging

from blinker import Signal
from trio import SocketListener, SocketStream
from trio.abc import Listener
from typing import Optional, Union

from .networking import format_socket_address, open_tcp_socket, tune_tcp_connection
from .options import Configuration, Option, apply_options
from .tls.listener import TLSListener

__all__ = ("TCPListener", "open_listener")


log = logging.getLogger(__name__.rpartition(".")[0])


class TCPListener(Listener[SocketStream]):
    """Listener that accepts TCP connections on a listening socket and tunes
    every accepted connection: ``TCP_NODELAY`` is set unless Nagle's
    algorithm was requested, and keep-alive probes are enabled.

    Failing to tune a connection does not affect the listener or the
    connection itself; the failure is logged and reported with the
    `tuning_failed` signal.
    """

    tuning_failed = Signal(
        doc="""\
        Signal sent when the socket options of an accepted connection could
        not be set.

        Parameters:
            stream (SocketStream): the accepted connection
            error (OSError): the error that happened
        """
    )

    def __init__(self, socket, *, naggle: bool = False):
        """Constructor.

        Parameters:
            socket: the bound and listening Trio socket
            naggle: whether to keep Nagle's algorithm enabled on accepted
                connections
        """
        self._wrapped_listener = SocketListener(socket)
        self.naggle = naggle

    @property
    def address(self):
        """The address that the listener is bound to."""
        return self.socket.getsockname()

    @property
    def port(self) -> int:
        """The port that the listener is bound to."""
        return self.address[1]

    @property
    def socket(self):
        """The underlying listening socket."""
        return self._wrapped_listener.socket

    @property
    def tls_config(self):
        """TLS configuration of the listener; always ``None`` as this listener
        does not terminate TLS.
        """
        return None

    async def accept(self) -> SocketStream:
        stream = await self._wrapped_listener.accept()
        try:
            tune_tcp_connection(stream.socket, no_delay=not self.naggle)
        except OSError as ex:
            log.warning(f"Failed to tune accepted TCP connection: {ex}")
            self.tuning_failed.send(self, stream=stream, error=ex)
        return stream

    async def aclose(self) -> None:
        await self._wrapped_listener.aclose()

    def __repr__(self) -> str:
        try:
            address = format_socket_address(self.socket)
        except OSError:
            address = "closed"
        return f"<{self.__class__.__name__} {address}>"


async def open_listener(
    address: str = "", *options: Option, backlog: Optional[int] = None
) -> Union[TCPListener, TLSListener]:
    """Creates a listener that is bound to the given address and is ready to
    accept connections.

    The options are applied in the order they were given. The first option
    that fails aborts the construction; no socket is opened in this case. If
    any of the options configured TLS, the returned listener terminates TLS
    on every accepted connection.

    Parameters:
        address: the address to bind to, in ``host:port`` format. An empty
            host binds to all interfaces; port zero selects an ephemeral port.
        options: the options to configure the listener with
        backlog: the size of the backlog for incoming connections; ``None``
            means that a reasonable default is chosen

    Returns:
        the listener; either a TCPListener_ or, if TLS was configured, a
        TLSListener_ wrapping a TCPListener_

    Raises:
        ConfigurationError: if one of the options failed
        RegistrationError: if automatic certificates were requested with a
            contact address and the account could not be registered
        OSError: if the address could not be resolved or bound
    """
    config = apply_options(Configuration(), options)
    resolver = config.tls.resolver if config.tls else None

    try:
        if resolver is not None:
            await resolver.prepare()

        sock = await open_tcp_socket(
            address, fast_open=config.fast_open, backlog=backlog
        )
    except BaseException:
        if resolver is not None:
            resolver.close()
        raise

    listener = TCPListener(sock, naggle=config.naggle)
    if config.tls is None:
        return listener

    try:
        return TLSListener(listener, config.tls)
    except BaseException:
        await listener.aclose()
        if resolver is not None:
            resolver.close()
        raise
