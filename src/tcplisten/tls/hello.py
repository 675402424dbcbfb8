"""Minimal parser for the TLS ClientHello message.

Only the parts needed for selecting a server certificate before the
handshake starts are extracted: the server name indication (SNI) and the
list of application protocols offered by the client (ALPN).
"""

from dataclasses import dataclass
from trio.abc import ReceiveStream
from typing import Optional, Tuple

__all__ = ("ClientHello", "parse_client_hello", "read_client_hello")


RECORD_TYPE_HANDSHAKE = 0x16
HANDSHAKE_TYPE_CLIENT_HELLO = 0x01
EXTENSION_SERVER_NAME = 0x0000
EXTENSION_ALPN = 0x0010
SERVER_NAME_TYPE_HOST_NAME = 0x00

MAX_CLIENT_HELLO_SIZE = 0x10000
"""Maximum number of bytes to read while looking for a complete ClientHello
message; anything longer is handed over to the TLS engine unparsed.
"""


@dataclass(frozen=True)
class ClientHello:
    """The interesting parts of a TLS ClientHello message."""

    server_name: Optional[str] = None
    """The hostname requested by the client, if any."""

    alpn_protocols: Tuple[str, ...] = ()
    """The application protocols offered by the client, in order of
    preference.
    """


class _Reader:
    """Cursor over a byte buffer that raises ValueError on truncated
    input.
    """

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    @property
    def exhausted(self) -> bool:
        return self._pos >= len(self._data)

    def read(self, length: int) -> bytes:
        end = self._pos + length
        if end > len(self._data):
            raise ValueError("truncated ClientHello")
        result = self._data[self._pos : end]
        self._pos = end
        return result

    def read_int(self, length: int) -> int:
        return int.from_bytes(self.read(length), "big")

    def read_vector(self, length_size: int) -> bytes:
        return self.read(self.read_int(length_size))


def _parse_server_name(data: bytes) -> Optional[str]:
    reader = _Reader(_Reader(data).read_vector(2))
    while not reader.exhausted:
        name_type = reader.read_int(1)
        name = reader.read_vector(2)
        if name_type == SERVER_NAME_TYPE_HOST_NAME:
            return name.decode("ascii")
    return None


def _parse_alpn(data: bytes) -> Tuple[str, ...]:
    reader = _Reader(_Reader(data).read_vector(2))
    protocols = []
    while not reader.exhausted:
        protocols.append(reader.read_vector(1).decode("ascii", "replace"))
    return tuple(protocols)


def parse_client_hello(body: bytes) -> ClientHello:
    """Parses the body of a ClientHello handshake message (without the
    four-byte handshake header).

    Raises:
        ValueError: if the message is malformed
    """
    reader = _Reader(body)
    reader.read(2)  # legacy_version
    reader.read(32)  # random
    reader.read_vector(1)  # legacy_session_id
    reader.read_vector(2)  # cipher_suites
    reader.read_vector(1)  # legacy_compression_methods

    server_name, alpn_protocols = None, ()
    if reader.exhausted:
        # No extensions at all
        return ClientHello()

    extensions = _Reader(reader.read_vector(2))
    while not extensions.exhausted:
        ext_type = extensions.read_int(2)
        ext_data = extensions.read_vector(2)
        if ext_type == EXTENSION_SERVER_NAME:
            server_name = _parse_server_name(ext_data)
        elif ext_type == EXTENSION_ALPN:
            alpn_protocols = _parse_alpn(ext_data)

    return ClientHello(server_name=server_name, alpn_protocols=alpn_protocols)


def _extract_client_hello(buffer: bytes) -> Tuple[bool, Optional[ClientHello]]:
    """Attempts to extract the ClientHello message from the TLS records
    received so far.

    Returns:
        whether no more data is needed, and the parsed ClientHello if it was
        found. ``(True, None)`` means that the data is not a TLS ClientHello
        at all.
    """
    handshake = bytearray()
    pos = 0
    while pos + 5 <= len(buffer):
        if buffer[pos] != RECORD_TYPE_HANDSHAKE:
            return True, None

        length = int.from_bytes(buffer[pos + 3 : pos + 5], "big")
        if pos + 5 + length > len(buffer):
            break

        handshake += buffer[pos + 5 : pos + 5 + length]
        pos += 5 + length

        if len(handshake) >= 4:
            if handshake[0] != HANDSHAKE_TYPE_CLIENT_HELLO:
                return True, None
            message_length = int.from_bytes(handshake[1:4], "big")
            if len(handshake) >= 4 + message_length:
                try:
                    hello = parse_client_hello(bytes(handshake[4 : 4 + message_length]))
                except ValueError:
                    hello = None
                return True, hello

    return False, None


async def read_client_hello(
    stream: ReceiveStream,
) -> Tuple[bytes, Optional[ClientHello]]:
    """Reads TLS records from the given stream until the ClientHello message
    of the client is complete.

    Returns:
        all the bytes read from the stream (they must be replayed to the TLS
        engine), and the parsed ClientHello, or ``None`` if the stream did not
        start with a well-formed ClientHello or it was closed prematurely
    """
    buffer = bytearray()
    while len(buffer) < MAX_CLIENT_HELLO_SIZE:
        chunk = await stream.receive_some()
        if not chunk:
            break

        buffer += chunk
        done, hello = _extract_client_hello(buffer)
        if done:
            return bytes(buffer), hello

    return bytes(buffer), None
