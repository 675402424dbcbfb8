"""Asynchronous task that serves the connections accepted by a listener,
isolating the failures of individual connections from each other and from
the listener.
"""

import logging
import ssl

from functools import partial
from trio import (
    BrokenResourceError,
    Nursery,
    TASK_STATUS_IGNORED,
    serve_listeners,
)
from trio.abc import Listener, Stream
from typing import Awaitable, Callable, Optional

__all__ = ("serve_listener",)


log = logging.getLogger(__name__.rpartition(".")[0])


async def _handle_connection(
    handler: Callable[[Stream], Awaitable[None]], stream: Stream
) -> None:
    try:
        await handler(stream)
    except BrokenResourceError as ex:
        log.warning(f"Connection dropped: {ex}")
    except ssl.SSLError as ex:
        log.warning(f"TLS error on connection: {ex}")
    except OSError as ex:
        log.warning(f"Socket error on connection: {ex}")
    finally:
        await stream.aclose()


async def serve_listener(
    handler: Callable[[Stream], Awaitable[None]],
    listener: Listener[Stream],
    *,
    handler_nursery: Optional[Nursery] = None,
    task_status=TASK_STATUS_IGNORED,
) -> None:
    """Accepts connections on the given listener and starts a task running
    ``handler(stream)`` for each one.

    Unlike Trio's own `serve_listeners()`, a handler that fails with a broken
    connection, a TLS error or a socket error does not crash the server; the
    error is logged and the connection is closed. The stream is closed when
    the handler returns.

    Parameters:
        handler: the handler to start for each incoming connection
        listener: the listener to accept connections on, e.g., the one
            returned from `open_listener()`
        handler_nursery: the nursery to start handlers in, or ``None`` to use
            an internal nursery
        task_status: this function can be used with ``nursery.start()``

    Returns:
        this function only returns when cancelled
    """
    await serve_listeners(
        partial(_handle_connection, handler),
        [listener],
        handler_nursery=handler_nursery,
        task_status=task_status,
    )
