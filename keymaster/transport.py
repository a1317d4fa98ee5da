"""
SSH transport for keymaster
Thin layer over paramiko that connects and authenticates one hop at a time
"""

from __future__ import annotations

import asyncio
import functools
import io
import logging
import threading
from typing import Any, Callable, Optional, Tuple

import paramiko

from .config import Config
from .errors import ConfigError, TransportError
from .hops import HopDescriptor

logger = logging.getLogger(__name__)

# Tried in order when loading key material of unknown type
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

_LOOPBACK_ORIGIN = ("127.0.0.1", 0)


def load_private_key(material: bytes, source: str = "<memory>") -> paramiko.PKey:
    """Return a paramiko key parsed from raw private key bytes."""
    try:
        text = material.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Private key {source} is not a text key file") from exc

    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text))
        except paramiko.PasswordRequiredException as exc:
            raise ConfigError(f"Private key {source} is encrypted; load it without a passphrase") from exc
        except (paramiko.SSHException, ValueError) as exc:
            logger.debug("Key %s is not a %s: %s", source, key_class.__name__, exc)
    raise ConfigError(f"Unsupported or invalid private key: {source}")


def _close_quietly(resource: Any) -> None:
    try:
        resource.close()
    except Exception as exc:
        logger.debug("Failed to close %r: %s", resource, exc)


def close_in_background(resource: Any) -> threading.Thread:
    """Close *resource* on a short-lived worker thread.

    paramiko's ``close`` may block on the transport, so it is kept off the
    event loop thread.
    """
    thread = threading.Thread(target=_close_quietly, args=(resource,), name="keymaster-close", daemon=True)
    thread.start()
    return thread


def close_orphan(future: asyncio.Future) -> None:
    """Done-callback that closes a session or channel nobody waits for anymore."""
    if future.cancelled() or future.exception() is not None:
        return
    close_in_background(future.result())


def _select_host_key_policy(auto_add: bool) -> paramiko.MissingHostKeyPolicy:
    return paramiko.AutoAddPolicy() if auto_add else paramiko.RejectPolicy()


class SSHSession:
    """An authenticated session to one hop."""

    def __init__(self, hop: HopDescriptor, client: paramiko.SSHClient):
        self.hop = hop
        self._client = client

    def __repr__(self) -> str:
        return f"<SSHSession {self.hop.label}>"

    @property
    def transport(self) -> Optional[paramiko.Transport]:
        return self._client.get_transport()

    def is_active(self) -> bool:
        transport = self.transport
        return transport is not None and transport.is_active()

    def failure(self) -> Optional[BaseException]:
        """Return the exception that stopped the session, if one was recorded.

        paramiko records ``EOFError`` when the peer closes cleanly.
        """
        transport = self.transport
        if transport is None:
            return None
        return transport.get_exception()

    def open_channel(self, host: str, port: int, origin: Tuple[str, int] = _LOOPBACK_ORIGIN) -> paramiko.Channel:
        """Open a ``direct-tcpip`` channel to *host*:*port* through this hop.

        Blocks until the server accepts or rejects the channel.
        """
        transport = self.transport
        if transport is None or not transport.is_active():
            raise TransportError(f"Session to {self.hop.label} is not active")
        try:
            return transport.open_channel("direct-tcpip", (host, port), origin)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransportError(
                f"Unable to open channel to {host}:{port} via {self.hop.label}: {exc}"
            ) from exc

    def close(self) -> None:
        self._client.close()


def connect_hop(
    hop: HopDescriptor,
    sock: Any = None,
    *,
    auto_add_host_keys: bool = True,
    keepalive_interval: int = 0,
) -> SSHSession:
    """Connect and authenticate to *hop*, blocking until done.

    *sock* is a channel opened through the previous hop; without one the
    session connects directly to ``hop.host:hop.port``.
    """
    pkey = load_private_key(hop.private_key, hop.identity_file or hop.name)

    client = paramiko.SSHClient()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(_select_host_key_policy(auto_add_host_keys))

    try:
        client.connect(
            hostname=hop.host,
            port=hop.port,
            username=hop.username,
            pkey=pkey,
            sock=sock,
            allow_agent=False,
            look_for_keys=False,
        )
    except paramiko.AuthenticationException as exc:
        client.close()
        raise TransportError(f"Authentication failed for {hop.label}: {exc}") from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        client.close()
        raise TransportError(f"Unable to connect to {hop.label}: {exc}") from exc

    transport = client.get_transport()
    if transport is not None and keepalive_interval:
        transport.set_keepalive(keepalive_interval)
    logger.debug("Authenticated to %s%s", hop.label, " (tunnelled)" if sock is not None else "")
    return SSHSession(hop, client)


HopConnector = Callable[[HopDescriptor, Any], SSHSession]


def make_connector(config: Config) -> HopConnector:
    """Return a blocking ``connect(hop, sock)`` bound to *config*."""
    return functools.partial(
        connect_hop,
        auto_add_host_keys=config.auto_add_host_keys,
        keepalive_interval=config.keepalive_interval,
    )
