"""
Local port forwarding for keymaster
Accepts loopback connections and relays them through a hop's SSH session
"""

from __future__ import annotations

import asyncio
import logging
import select
import socket
import threading
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import paramiko

from .errors import ForwardError, KeymasterError, TransportError
from .hops import LocalForwardSpec
from .transport import close_in_background, close_orphan

logger = logging.getLogger(__name__)

BUFFER_SIZE = 32768
LISTEN_BACKLOG = 100


def _relay(client: socket.socket, channel: Any, on_done: Callable[[], None]):
    """Copy bytes between *client* and *channel* until either side ends.

    Runs on a dedicated thread per stream. Both ends are closed on exit.
    *channel* must expose ``fileno()`` that turns readable once ``recv``
    will not block, as paramiko channels do.
    """
    try:
        while True:
            readable, _, _ = select.select([client, channel], [], [])
            if client in readable:
                data = client.recv(BUFFER_SIZE)
                if not data:
                    break
                channel.sendall(data)
            if channel in readable:
                data = channel.recv(BUFFER_SIZE)
                if not data:
                    break
                client.sendall(data)
    except (OSError, ValueError, EOFError, paramiko.SSHException) as exc:
        logger.debug("Stream relay ended: %s", exc)
    finally:
        try:
            channel.close()
        except (OSError, EOFError, paramiko.SSHException) as exc:
            logger.debug("Error closing channel in relay: %s", exc)
        client.close()
        on_done()


def _wake(client: socket.socket):
    """Unblock a relay waiting on *client*."""
    try:
        client.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class TunnelMultiplexer:
    """Listeners for the ``LocalForward`` directives of a single hop.

    Every accepted connection gets its own forwarded channel and its own
    relay thread; streams are independent of each other and of the shared
    executor, which only opens channels. A channel that cannot be opened
    is reported through *on_failure* as a :class:`ForwardError`.
    """

    def __init__(
        self,
        session: Any,
        forwards: Sequence[LocalForwardSpec],
        *,
        executor: Optional[Executor],
        on_failure: Callable[[KeymasterError], None],
        broadcast: Callable[[str], None],
        listen_address: str = '127.0.0.1',
    ):
        self.session = session
        self.forwards = tuple(forwards)
        self.listen_address = listen_address
        self._executor = executor
        self._on_failure = on_failure
        self._broadcast = broadcast
        self._listeners: List[socket.socket] = []
        self._acceptors: Set[asyncio.Task] = set()
        self._streams: Dict[asyncio.Task, socket.socket] = {}
        self._closed = False

    @property
    def active_streams(self) -> int:
        return len(self._streams)

    def sockets(self) -> List[socket.socket]:
        return list(self._listeners)

    def _listen(self, port: int) -> socket.socket:
        family = socket.AF_INET6 if ':' in self.listen_address else socket.AF_INET
        listener = socket.create_server((self.listen_address, port), family=family, backlog=LISTEN_BACKLOG)
        listener.setblocking(False)
        return listener

    async def start(self):
        """Bind one listener per forward, in declaration order."""
        loop = asyncio.get_running_loop()
        hop_label = getattr(getattr(self.session, 'hop', None), 'label', repr(self.session))
        for spec in self.forwards:
            if self._closed:
                return
            try:
                listener = self._listen(spec.local_port)
            except OSError as exc:
                raise TransportError(
                    f"Unable to listen on {self.listen_address}:{spec.local_port}: {exc}"
                ) from exc
            self._listeners.append(listener)
            self._acceptors.add(loop.create_task(self._accept(spec, listener)))
            self._broadcast(
                f"Tunnel created: {self.listen_address}:{spec.local_port} -> "
                f"{spec.remote_host}:{spec.remote_port} via {hop_label}."
            )

    async def close(self):
        """Stop listening and drop every open stream. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        for task in self._acceptors:
            task.cancel()
        await asyncio.gather(*self._acceptors, return_exceptions=True)
        self._acceptors.clear()
        for listener in self._listeners:
            listener.close()
        self._listeners.clear()

        streams = dict(self._streams)
        for task in streams:
            task.cancel()
        await asyncio.gather(*streams, return_exceptions=True)
        # streams cancelled before they ran never got to close their client
        for client in streams.values():
            client.close()

    async def _accept(self, spec: LocalForwardSpec, listener: socket.socket):
        loop = asyncio.get_running_loop()
        while True:
            try:
                client, peer = await loop.sock_accept(listener)
            except OSError as exc:
                if not self._closed:
                    logger.warning("Listener on port %s stopped: %s", spec.local_port, exc)
                return
            task = loop.create_task(self._handle_client(spec, client, peer))
            self._streams[task] = client
            task.add_done_callback(self._forget_stream)

    def _forget_stream(self, task: asyncio.Task):
        self._streams.pop(task, None)

    async def _handle_client(self, spec: LocalForwardSpec, client: socket.socket, peer: Any):
        loop = asyncio.get_running_loop()
        opening = loop.run_in_executor(
            self._executor,
            self.session.open_channel,
            spec.remote_host,
            spec.remote_port,
            (str(peer[0]), int(peer[1])),
        )
        try:
            channel = await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(close_orphan)
            client.close()
            raise
        except TransportError as exc:
            logger.debug("Forward %s could not open a channel", spec, exc_info=True)
            client.close()
            if not self._closed:
                self._on_failure(ForwardError(f"Forward {spec} failed: {exc}"))
            return

        finished = loop.create_future()

        def on_done():
            try:
                loop.call_soon_threadsafe(_set_done, finished)
            except RuntimeError:
                # event loop already closed
                pass

        client.setblocking(True)
        threading.Thread(
            target=_relay,
            args=(client, channel, on_done),
            name=f"keymaster-relay-{spec.local_port}",
            daemon=True,
        ).start()
        try:
            await asyncio.shield(finished)
        except asyncio.CancelledError:
            _wake(client)
            close_in_background(channel)
            await finished
            raise


def _set_done(future: asyncio.Future):
    if not future.done():
        future.set_result(None)
