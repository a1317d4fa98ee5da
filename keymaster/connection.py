"""
Connection lifecycle for keymaster
Establishes a named multi-hop route, keeps its tunnels up and reconnects with backoff
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .config import Config
from .errors import KeymasterError, TransportError
from .hooks import run_preconnect_hook
from .hops import HopChain, HopDescriptor, establishment_order, resolve_hops
from .signals import Signal
from .transport import HopConnector, close_orphan, make_connector
from .tunnels import TunnelMultiplexer

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.IDLE: frozenset({Phase.CONNECTING, Phase.DESTROYING}),
    Phase.CONNECTING: frozenset({Phase.ACTIVE, Phase.DESTROYING}),
    Phase.ACTIVE: frozenset({Phase.DESTROYING}),
    Phase.DESTROYING: frozenset({Phase.IDLE, Phase.DESTROYED}),
    Phase.DESTROYED: frozenset(),
}


@dataclass
class HopState:
    """Runtime resources of one established hop."""

    descriptor: HopDescriptor
    session: Any
    tunnels: Optional[TunnelMultiplexer] = None
    monitor: Optional[asyncio.Task] = None


Resolver = Callable[[str], HopChain]
Release = Callable[[], Awaitable[Any]]


class Connection:
    """One named route, from the outermost jump host to the target.

    The connection owns every session, channel and listener it acquires.
    Each acquisition pushes its release onto a teardown stack, which is
    unwound in reverse on failure and on :meth:`destroy`. Failures of any
    kind end the current attempt; the connection then backs off for
    ``error_count`` units and tries again, until it is destroyed.
    """

    def __init__(
        self,
        name: str,
        config: Config,
        *,
        resolver: Optional[Resolver] = None,
        connector: Optional[HopConnector] = None,
        delay: Optional[Callable[[float], Awaitable[Any]]] = None,
        executor: Optional[Executor] = None,
    ):
        self.name = name
        self.config = config
        self.error_count = 0
        self.connection_message = Signal('connection_message')
        self.phase_changed = Signal('phase_changed')

        self._phase = Phase.IDLE
        self._resolver = resolver or functools.partial(self._resolve_from_config, config)
        self._connector = connector or make_connector(config)
        self._delay = delay or asyncio.sleep
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(thread_name_prefix=f"keymaster-{name}")
        self._log = logger.getChild(name)

        self._hops: List[HopState] = []
        self._teardown_stack: List[Tuple[str, Release]] = []
        self._teardown_lock = asyncio.Lock()
        self._runner: Optional[asyncio.Task] = None
        self._failure: Optional[asyncio.Future] = None
        self._destroy_requested = False
        self._destroyed = asyncio.Event()
        self._log.debug("Instantiated.")

    def __repr__(self) -> str:
        return f"<Connection {self.name} {self._phase.value}>"

    @staticmethod
    def _resolve_from_config(config: Config, name: str) -> HopChain:
        return resolve_hops(name, config)

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def hops(self) -> Tuple[HopState, ...]:
        return tuple(self._hops)

    @property
    def is_active(self) -> bool:
        return self._phase is Phase.ACTIVE

    # -- public API ------------------------------------------------------

    def activate(self) -> 'Connection':
        """Start connecting unless already running or destroyed.

        Must be called from within a running event loop.
        """
        if self._destroy_requested or self._phase is Phase.DESTROYED:
            return self
        if self._runner is not None and not self._runner.done():
            return self
        self._log.debug("Activating.")
        loop = asyncio.get_running_loop()
        self._runner = loop.create_task(self._run(), name=f"keymaster:{self.name}")
        return self

    async def destroy(self):
        """Tear everything down for good. Later calls are no-ops."""
        if self._destroy_requested:
            return
        self._destroy_requested = True

        runner = self._runner
        if runner is not None and not runner.done() and runner is not asyncio.current_task():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        if self._phase is not Phase.DESTROYING:
            self._set_phase(Phase.DESTROYING)
        await self._teardown()
        self._set_phase(Phase.DESTROYED)
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self._broadcast("Destroyed.")
        self._destroyed.set()

    async def wait_closed(self):
        await self._destroyed.wait()

    # -- state machine ---------------------------------------------------

    def _set_phase(self, phase: Phase):
        if phase not in _TRANSITIONS[self._phase]:
            raise RuntimeError(f"{self.name}: illegal transition {self._phase.value} -> {phase.value}")
        self._log.debug("%s -> %s", self._phase.value, phase.value)
        self._phase = phase
        self.phase_changed.emit(self.name, phase)

    def _broadcast(self, message: str):
        self._log.info(message)
        self.connection_message.emit(self.name, message)

    def backoff_delay(self, failure: KeymasterError) -> float:
        """Seconds to wait before the next attempt after *failure*."""
        if getattr(failure, 'clean', False):
            unit = self.config.close_backoff_unit
        else:
            unit = self.config.error_backoff_unit
        return self.error_count * unit

    async def _run(self):
        while not self._destroy_requested:
            failure = await self._attempt()
            if self._destroy_requested:
                return
            self.error_count += 1
            self._set_phase(Phase.DESTROYING)
            await asyncio.shield(self._teardown())
            self._set_phase(Phase.IDLE)
            delay = self.backoff_delay(failure)
            self._broadcast(f"Reconnecting in {delay:g}s (attempt {self.error_count + 1}).")
            await self._delay(delay)

    async def _attempt(self) -> KeymasterError:
        """Run one connection attempt and return the failure that ended it."""
        loop = asyncio.get_running_loop()
        self._set_phase(Phase.CONNECTING)
        self._failure = loop.create_future()
        self._broadcast("Connecting.")
        try:
            await run_preconnect_hook(
                self.config.preconnect_hook,
                self._broadcast,
                env={'KEYMASTER_CONNECTION': self.name, 'KEYMASTER_SSH': self.config.ssh_path},
            )
            chain = await loop.run_in_executor(self._executor, self._resolver, self.name)
            await self._establish(establishment_order(chain))
        except KeymasterError as exc:
            self._report_failure(exc)
        except Exception as exc:
            self._log.exception("Unexpected error while connecting")
            self._report_failure(KeymasterError(f"Unexpected error: {exc}"))
        else:
            if not self._failure.done():
                self._set_phase(Phase.ACTIVE)
                self.error_count = 0
                self._broadcast("Connected.")
        return await self._failure

    def _report_failure(self, failure: KeymasterError):
        """Funnel a failure from any hop or tunnel into the current attempt."""
        if self._destroy_requested or self._failure is None or self._failure.done():
            self._log.debug("Ignoring failure: %s", failure)
            return
        if getattr(failure, 'clean', False):
            self._broadcast("Connection closed.")
        else:
            self._broadcast(f"Error: {failure}")
        self._failure.set_result(failure)

    # -- establishment ---------------------------------------------------

    def _push(self, label: str, release: Release):
        self._teardown_stack.append((label, release))

    async def _call_owned(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking open in the executor; close its result if we are cancelled."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, func, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            future.add_done_callback(close_orphan)
            raise

    async def _close_in_executor(self, resource: Any):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, resource.close)

    async def _establish(self, order: Sequence[HopDescriptor]):
        upstream: Optional[HopState] = None
        for hop in order:
            if self._failure.done():
                return
            sock = None
            if upstream is not None:
                sock = await self._call_owned(upstream.session.open_channel, hop.host, hop.port)
                self._push(f"channel to {hop.label}", functools.partial(self._close_in_executor, sock))

            session = await self._call_owned(self._connector, hop, sock)
            state = HopState(descriptor=hop, session=session)
            self._hops.append(state)
            self._push(f"session {hop.label}", functools.partial(self._close_in_executor, session))
            self._broadcast(f"Connected to {hop.label}.")

            if hop.local_forwards:
                state.tunnels = TunnelMultiplexer(
                    session,
                    hop.local_forwards,
                    executor=self._executor,
                    on_failure=self._report_failure,
                    broadcast=self._broadcast,
                    listen_address=self.config.listen_address,
                )
                self._push(f"tunnels of {hop.label}", state.tunnels.close)
                await state.tunnels.start()

            state.monitor = asyncio.get_running_loop().create_task(self._monitor(state))
            self._push(f"monitor of {hop.label}", functools.partial(self._stop_monitor, state.monitor))
            upstream = state

    async def _monitor(self, state: HopState):
        label = state.descriptor.label
        while True:
            await asyncio.sleep(self.config.monitor_interval)
            if state.session.is_active():
                continue
            failure = state.session.failure()
            if failure is None or isinstance(failure, EOFError):
                self._report_failure(TransportError(f"Session to {label} closed.", clean=True))
            else:
                self._report_failure(TransportError(f"Session to {label} failed: {failure}"))
            return

    @staticmethod
    async def _stop_monitor(task: asyncio.Task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # -- teardown --------------------------------------------------------

    async def _teardown(self):
        """Release acquired resources, most recent first. Errors are logged only."""
        async with self._teardown_lock:
            while self._teardown_stack:
                label, release = self._teardown_stack.pop()
                try:
                    await release()
                except Exception as exc:
                    self._log.warning("Error while closing %s: %s", label, exc)
                    self._log.debug("Close failure details", exc_info=True)
            self._hops.clear()
