"""
Connection registry for keymaster
Keeps one Connection per activated SSH config entry and relays their events
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from .config import Config
from .connection import Connection
from .signals import Signal
from .ssh_config import SSHConfigSource

logger = logging.getLogger(__name__)


class Keymaster:
    """Process-wide table of active named connections.

    All methods must be called from the event loop thread; ``activate`` and
    ``deactivate`` never suspend, so the table cannot be observed half-updated.
    """

    def __init__(self, config: Config, *, connection_factory: Optional[Callable[[str], Connection]] = None):
        self.config = config
        self.activating = Signal('activating')
        self.deactivating = Signal('deactivating')
        self.connection_message = Signal('connection_message')

        self._connection_factory = connection_factory or self._create_connection
        self._connections: Dict[str, Connection] = {}
        self._teardowns: Set[asyncio.Task] = set()

    def _create_connection(self, name: str) -> Connection:
        return Connection(name, self.config)

    def activate(self, name: str) -> Connection:
        """Activate *name*, or return the connection already running for it."""
        existing = self._connections.get(name)
        if existing is not None:
            return existing

        connection = self._connection_factory(name)
        connection.connection_message.connect(self._relay_message)
        self._connections[name] = connection
        logger.info("Activating %s", name)
        self.activating.emit(name)
        connection.activate()
        return connection

    def deactivate(self, name: str) -> Optional[asyncio.Task]:
        """Remove *name* and start tearing it down.

        Returns the teardown task, or ``None`` when *name* was not active.
        """
        connection = self._connections.pop(name, None)
        if connection is None:
            return None

        logger.info("Deactivating %s", name)
        self.deactivating.emit(name)
        task = asyncio.get_running_loop().create_task(connection.destroy(), name=f"keymaster:destroy:{name}")
        self._teardowns.add(task)
        task.add_done_callback(self._on_teardown_done)
        return task

    def toggle(self, name: str):
        if name in self._connections:
            self.deactivate(name)
        else:
            self.activate(name)

    def get(self, name: str) -> Optional[Connection]:
        return self._connections.get(name)

    def list_active_names(self) -> List[str]:
        return list(self._connections)

    def toggleable_names(self) -> List[str]:
        """Entries from the SSH config that can be switched on and off."""
        return SSHConfigSource.load(self.config.ssh_config_path).toggleable_names()

    async def shutdown(self):
        """Deactivate everything and wait until all teardowns are done."""
        for name in list(self._connections):
            self.deactivate(name)
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    def _relay_message(self, name: str, message: str):
        self.connection_message.emit({'name': name, 'message': message})

    def _on_teardown_done(self, task: asyncio.Task):
        self._teardowns.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Teardown of %s failed: %s", task.get_name(), exc, exc_info=exc)
