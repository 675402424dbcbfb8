"""TLS-terminating listener that selects the server certificate for each
connection before the handshake starts.
"""

import logging
import ssl

from trio import (
    BrokenResourceError,
    ClosedResourceError,
    Lock,
    NeedHandshakeError,
    SSLStream,
    aclose_forcefully,
)
from trio.abc import Listener, Stream
from trio.lowlevel import checkpoint
from typing import Optional

from ..errors import ListenerError
from .config import CertificateSelector, TLSConfiguration
from .hello import read_client_hello

__all__ = ("TLSListener", "TLSStream")


log = logging.getLogger(__name__.rpartition(".")[0])


class ReplayingStream(Stream):
    """Stream wrapper that returns some bytes that were already consumed from
    the wrapped stream before returning anything else.
    """

    def __init__(self, prefix: bytes, stream: Stream):
        self._prefix = prefix
        self._stream = stream

    async def aclose(self) -> None:
        self._prefix = b""
        await self._stream.aclose()

    async def receive_some(self, max_bytes: Optional[int] = None) -> bytes:
        if not self._prefix:
            return await self._stream.receive_some(max_bytes)

        if max_bytes is None:
            data, self._prefix = self._prefix, b""
        else:
            data, self._prefix = self._prefix[:max_bytes], self._prefix[max_bytes:]

        await checkpoint()
        return data

    async def send_all(self, data) -> None:
        await self._stream.send_all(data)

    async def wait_send_all_might_not_block(self) -> None:
        await self._stream.wait_send_all_might_not_block()


class TLSStream(Stream):
    """Server-side TLS stream on top of an accepted transport stream.

    The ClientHello of the client is inspected first to select the
    certificate to present; then the stream behaves like a Trio SSLStream_.
    This happens lazily, on the first I/O operation or on an explicit call
    to `do_handshake()`, in the task that uses the stream. A failure to
    select a certificate closes the transport and raises BrokenResourceError_
    from that operation; it affects no other connection.

    Attributes of the underlying SSLStream_ (e.g., `selected_alpn_protocol()`
    or `getpeercert()`) are available after the handshake.
    """

    _ssl_stream: Optional[SSLStream]

    def __init__(
        self,
        transport_stream: Stream,
        selector: CertificateSelector,
        *,
        https_compatible: bool = False,
    ):
        """Constructor.

        Parameters:
            transport_stream: the stream of the accepted connection
            selector: the object that selects the SSL context for the
                connection
            https_compatible: passed on to SSLStream_
        """
        self.transport_stream = transport_stream
        self._selector = selector
        self._https_compatible = https_compatible
        self._ssl_stream = None
        self._setup_lock = Lock()
        self._closed = False

    async def _get_ssl_stream(self) -> SSLStream:
        if self._closed:
            raise ClosedResourceError("stream is closed")

        if self._ssl_stream is None:
            async with self._setup_lock:
                if self._ssl_stream is None:
                    self._ssl_stream = await self._create_ssl_stream()

        return self._ssl_stream

    async def _create_ssl_stream(self) -> SSLStream:
        data, hello = await read_client_hello(self.transport_stream)
        try:
            context = await self._selector.select_context(hello)
        except (ListenerError, ssl.SSLError) as ex:
            server_name = hello.server_name if hello else None
            log.warning(
                f"Rejecting TLS connection for server name {server_name!r}: {ex}"
            )
            await aclose_forcefully(self.transport_stream)
            raise BrokenResourceError(str(ex)) from ex

        return SSLStream(
            ReplayingStream(data, self.transport_stream),
            context,
            server_side=True,
            https_compatible=self._https_compatible,
        )

    async def aclose(self) -> None:
        self._closed = True
        if self._ssl_stream is not None:
            await self._ssl_stream.aclose()
        else:
            await self.transport_stream.aclose()

    async def do_handshake(self) -> None:
        """Selects the certificate and performs the TLS handshake if it has
        not been performed yet.
        """
        ssl_stream = await self._get_ssl_stream()
        await ssl_stream.do_handshake()

    async def receive_some(self, max_bytes: Optional[int] = None) -> bytes:
        ssl_stream = await self._get_ssl_stream()
        return await ssl_stream.receive_some(max_bytes)

    async def send_all(self, data) -> None:
        ssl_stream = await self._get_ssl_stream()
        await ssl_stream.send_all(data)

    async def wait_send_all_might_not_block(self) -> None:
        if self._ssl_stream is None:
            await self.transport_stream.wait_send_all_might_not_block()
        else:
            await self._ssl_stream.wait_send_all_might_not_block()

    def __getattr__(self, name: str):
        ssl_stream = self.__dict__.get("_ssl_stream")
        if ssl_stream is None:
            raise NeedHandshakeError(
                f"call do_handshake() before accessing {name!r} on a TLS stream"
            )
        return getattr(ssl_stream, name)


class TLSListener(Listener[TLSStream]):
    """Listener that wraps a transport listener and terminates TLS on every
    connection accepted by it.

    Accepting a connection performs no I/O on it; the handshake takes place
    in the task that uses the returned stream, so slow or failing handshakes
    never block the accept loop.
    """

    def __init__(
        self,
        transport_listener: Listener[Stream],
        config: TLSConfiguration,
        *,
        https_compatible: bool = False,
    ):
        """Constructor.

        Parameters:
            transport_listener: the listener whose connections are wrapped
            config: the TLS configuration to use
            https_compatible: passed on to SSLStream_
        """
        self.transport_listener = transport_listener
        self._config = config
        self._selector = config.create_selector()
        self._https_compatible = https_compatible

    @property
    def address(self):
        """The address that the listener is bound to."""
        return self.transport_listener.address  # type: ignore

    @property
    def port(self) -> int:
        """The port that the listener is bound to."""
        return self.address[1]

    @property
    def socket(self):
        """The underlying listening socket."""
        return self.transport_listener.socket  # type: ignore

    @property
    def ssl_context(self) -> Optional[ssl.SSLContext]:
        """The SSL context of the default static certificate, if any."""
        return self._selector.default_context

    @property
    def tls_config(self) -> TLSConfiguration:
        """The TLS configuration assembled for this listener."""
        return self._config

    async def accept(self) -> TLSStream:
        stream = await self.transport_listener.accept()
        return TLSStream(
            stream, self._selector, https_compatible=self._https_compatible
        )

    async def aclose(self) -> None:
        try:
            await self.transport_listener.aclose()
        finally:
            if self._config.resolver is not None:
                self._config.resolver.close()
