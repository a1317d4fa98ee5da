"""In-process stand-ins for SSH sessions used across the test-suite."""

import asyncio
import socket
import threading
from typing import Iterable, List, Optional

from keymaster.errors import TransportError
from keymaster.hops import HopDescriptor, LocalForwardSpec


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def make_hop(name: str, *forwards: LocalForwardSpec, host: Optional[str] = None) -> HopDescriptor:
    return HopDescriptor(
        name=name,
        host=host or f"{name}.example.com",
        username='tester',
        private_key=b'KEY',
        local_forwards=tuple(forwards),
    )


class FakeChannel:
    def __init__(self, label: str, log: List[tuple]):
        self.label = label
        self._log = log

    def close(self):
        self._log.append(('close-channel', self.label))


class FakeSession:
    """Records what the engine does with a hop's session."""

    def __init__(self, hop: HopDescriptor, log: List[tuple], *, forward_error: bool = False):
        self.hop = hop
        self.active = True
        self.exception = None
        self.forward_error = forward_error
        self._log = log

    def open_channel(self, host, port, origin=None):
        self._log.append(('open-channel', self.hop.name, host, port))
        if self.forward_error:
            raise TransportError(f"channel to {host}:{port} refused")
        return FakeChannel(host, self._log)

    def is_active(self) -> bool:
        return self.active

    def failure(self):
        return self.exception

    def close(self):
        self.active = False
        self._log.append(('close-session', self.hop.name))


class FakeConnector:
    """Blocking connector that hands out :class:`FakeSession` objects."""

    def __init__(self, *, fail_times: int = 0, forward_error: bool = False, fail_names: Iterable[str] = ()):
        self.log: List[tuple] = []
        self.sessions = {}
        self.fail_times = fail_times
        self.fail_names = frozenset(fail_names)
        self.forward_error = forward_error
        self._lock = threading.Lock()

    def __call__(self, hop, sock):
        with self._lock:
            self.log.append(('connect', hop.name, getattr(sock, 'label', None)))
            if self.fail_times or hop.name in self.fail_names:
                self.fail_times = max(self.fail_times - 1, 0)
                raise TransportError(f"connection to {hop.label} refused")
            session = FakeSession(hop, self.log, forward_error=self.forward_error)
            self.sessions[hop.name] = session
            return session

    def events(self, kind: str) -> List[tuple]:
        return [entry for entry in self.log if entry[0] == kind]


class RecordingDelay:
    """Backoff replacement that records delays and optionally parks forever."""

    def __init__(self, park_after: Optional[int] = None):
        self.delays: List[float] = []
        self.park_after = park_after
        self.parked = asyncio.Event()

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        if self.park_after is not None and len(self.delays) >= self.park_after:
            self.parked.set()
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class SocketChannel:
    """A paramiko-channel look-alike backed by one end of a socketpair."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def fileno(self) -> int:
        return self._sock.fileno()

    def recv(self, size: int) -> bytes:
        try:
            return self._sock.recv(size)
        except OSError:
            return b''

    def sendall(self, data: bytes):
        self._sock.sendall(data)

    def close(self):
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class PairSession:
    """Session whose channels are socketpairs; the test holds the far ends."""

    def __init__(self, hop: Optional[HopDescriptor] = None, *, refuse: bool = False):
        self.hop = hop or make_hop('pair')
        self.refuse = refuse
        self.requests: List[tuple] = []
        self.remotes: List[socket.socket] = []

    def open_channel(self, host, port, origin=None):
        self.requests.append((host, port))
        if self.refuse:
            raise TransportError(f"administratively prohibited: {host}:{port}")
        near, far = socket.socketpair()
        far.setblocking(False)
        self.remotes.append(far)
        return SocketChannel(near)


async def wait_for(predicate, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def recv_exactly(sock: socket.socket, size: int) -> bytes:
    loop = asyncio.get_running_loop()
    data = b''
    while len(data) < size:
        chunk = await loop.sock_recv(sock, size - len(data))
        if not chunk:
            break
        data += chunk
    return data
