from errno import EBADF, ENOPROTOOPT
from pytest import mark, raises

from tcplisten.fastopen import (
    BSDFastOpen,
    LinuxFastOpen,
    NoFastOpen,
    enable_fast_open,
    get_fast_open_capability,
)
from tcplisten.networking import (
    create_socket,
    enable_tcp_keepalive,
    format_socket_address,
    open_tcp_socket,
    split_address,
    tune_tcp_connection,
)

import sys
import trio.socket


def test_split_address():
    assert split_address("") == ("", "0")
    assert split_address(":0") == ("", "0")
    assert split_address(":8080") == ("", "8080")
    assert split_address("localhost:443") == ("localhost", "443")
    assert split_address("127.0.0.1:http") == ("127.0.0.1", "http")
    assert split_address("[::1]:8443") == ("::1", "8443")
    assert split_address("[::]:0") == ("::", "0")

    with raises(ValueError):
        split_address("localhost")

    with raises(ValueError):
        split_address("::1:8443")


def test_format_socket_address():
    assert format_socket_address(("0.0.0.0", 80)) == ":80"
    assert format_socket_address(("::", 80, 0, 0)) == ":80"
    assert format_socket_address(("127.0.0.1", 443)) == "127.0.0.1:443"
    assert format_socket_address(("::1", 443, 0, 0)) == "[::1]:443"
    assert format_socket_address(("10.0.0.1", 22), "{host}") == "10.0.0.1"


async def test_tcp_keepalive():
    sock = create_socket(trio.socket.AF_INET)
    with sock:
        enable_tcp_keepalive(sock, after_idle_sec=60, interval_sec=30, max_fails=5)
        assert sock.getsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_KEEPALIVE) != 0
        if hasattr(trio.socket, "TCP_KEEPIDLE"):
            assert (
                sock.getsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_KEEPIDLE)
                == 60
            )
        if hasattr(trio.socket, "TCP_KEEPINTVL"):
            assert (
                sock.getsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_KEEPINTVL)
                == 30
            )


async def test_tune_tcp_connection():
    sock = create_socket(trio.socket.AF_INET)
    with sock:
        tune_tcp_connection(sock, no_delay=False)
        assert sock.getsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_NODELAY) == 0
        assert sock.getsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_KEEPALIVE) != 0

        tune_tcp_connection(sock)
        assert sock.getsockopt(trio.socket.IPPROTO_TCP, trio.socket.TCP_NODELAY) != 0


async def test_open_tcp_socket():
    sock = await open_tcp_socket("127.0.0.1:0")
    with sock:
        host, port = sock.getsockname()
        assert host == "127.0.0.1"
        assert port > 0
        assert sock.getsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_REUSEADDR) != 0


async def test_open_tcp_socket_all_interfaces():
    sock = await open_tcp_socket(":0", fast_open=True)
    with sock:
        assert format_socket_address(sock).startswith(":")


async def test_open_tcp_socket_address_in_use():
    sock = await open_tcp_socket("127.0.0.1:0")
    with sock:
        port = sock.getsockname()[1]
        with raises(OSError):
            await open_tcp_socket(f"127.0.0.1:{port}")


async def test_open_tcp_socket_invalid_address():
    with raises(ValueError):
        await open_tcp_socket("127.0.0.1")
    with raises(OSError):
        await open_tcp_socket("127.0.0.1:not-a-port")


def test_fast_open_capabilities():
    assert isinstance(get_fast_open_capability("linux"), LinuxFastOpen)
    assert isinstance(get_fast_open_capability("darwin"), BSDFastOpen)
    assert isinstance(get_fast_open_capability("freebsd13"), BSDFastOpen)
    assert isinstance(get_fast_open_capability("win32"), NoFastOpen)

    assert get_fast_open_capability("linux").queue_length == 256
    assert get_fast_open_capability("darwin").option == 0x105
    assert not get_fast_open_capability("win32").supported


def test_no_fast_open_is_a_no_op():
    class Socket:
        def setsockopt(self, *args):
            raise AssertionError("setsockopt should not be called")

    assert not NoFastOpen().enable(Socket())


def test_fast_open_without_kernel_support():
    class Socket:
        def setsockopt(self, *args):
            raise OSError(ENOPROTOOPT, "Protocol not available")

    assert not LinuxFastOpen().enable(Socket())


def test_fast_open_failure():
    class Socket:
        def setsockopt(self, *args):
            raise OSError(EBADF, "Bad file descriptor")

    with raises(OSError):
        BSDFastOpen(0x105).enable(Socket())


def test_linux_fast_open_sets_queue_length():
    calls = []

    class Socket:
        def setsockopt(self, *args):
            calls.append(args)

    assert LinuxFastOpen(queue_length=16).enable(Socket())
    assert calls == [(trio.socket.IPPROTO_TCP, 23, 16)]


@mark.skipif(
    not sys.platform.startswith("linux"), reason="TCP fast open test needs Linux"
)
async def test_enable_fast_open_on_linux():
    sock = create_socket(trio.socket.AF_INET)
    with sock:
        await sock.bind(("127.0.0.1", 0))
        if enable_fast_open(sock):
            assert sock.getsockopt(trio.socket.IPPROTO_TCP, 23) > 0


async def test_open_tcp_socket_enables_fast_open(monkeypatch):
    calls = []

    def enable(sock):
        calls.append(sock)
        return True

    monkeypatch.setattr("tcplisten.networking.enable_fast_open", enable)

    sock = await open_tcp_socket("127.0.0.1:0", fast_open=True)
    with sock:
        assert calls == [sock]

    calls.clear()
    sock = await open_tcp_socket("127.0.0.1:0")
    with sock:
        assert calls == []
