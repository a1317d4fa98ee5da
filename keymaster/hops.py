"""
Hop resolution for keymaster
Expands a named SSH config entry into the ordered chain of hops needed to reach it
"""

from __future__ import annotations

import getpass
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .config import Config
from .errors import ConfigError
from .ssh_config import Directives, SSHConfigSource

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22


@dataclass(frozen=True)
class LocalForwardSpec:
    """One ``LocalForward <port> <host>:<port>`` directive."""

    local_port: int
    remote_host: str
    remote_port: int

    def __str__(self) -> str:
        host = self.remote_host
        if ':' in host:
            host = f"[{host}]"
        return f"{self.local_port} {host}:{self.remote_port}"


@dataclass(frozen=True)
class HopDescriptor:
    """A single SSH session in a route, built fresh for each attempt."""

    name: str
    host: str
    port: int = DEFAULT_SSH_PORT
    username: str = ''
    private_key: bytes = field(default=b'', repr=False)
    identity_file: str = ''
    local_forwards: Tuple[LocalForwardSpec, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


HopChain = Tuple[HopDescriptor, ...]


def _parse_port(value: str, what: str) -> int:
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {what}: {value!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid {what}: {value!r} is out of range")
    return port


def parse_local_forward(directive: str) -> LocalForwardSpec:
    """Parse ``"<localPort> <remoteHost>:<remotePort>"``.

    The remote host may be a bracketed IPv6 address, e.g. ``[::1]:5432``.
    """
    parts = str(directive).split()
    if len(parts) != 2:
        raise ConfigError(f"Malformed LocalForward directive: {directive!r}")
    local, remote = parts
    if ':' not in remote:
        raise ConfigError(f"Malformed LocalForward directive: {directive!r}")
    remote_host, remote_port = remote.rsplit(':', 1)
    if remote_host.startswith('[') and remote_host.endswith(']'):
        remote_host = remote_host[1:-1]
    if not remote_host:
        raise ConfigError(f"Malformed LocalForward directive: {directive!r}")
    return LocalForwardSpec(
        local_port=_parse_port(local, 'LocalForward local port'),
        remote_host=remote_host,
        remote_port=_parse_port(remote_port, 'LocalForward remote port'),
    )


def resolve_identity_file(identity_files: Sequence[str], config: Config) -> str:
    """Return the absolute path of the key to use for a hop.

    The last listed ``IdentityFile`` wins; without one the configured
    default identity is used. Relative paths are taken from the SSH dir.
    """
    if not identity_files:
        return config.default_identity_path
    path = os.path.expanduser(identity_files[-1])
    if not os.path.isabs(path):
        path = os.path.join(config.ssh_dir, path)
    return os.path.normpath(path)


def read_private_key(path: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as exc:
        raise ConfigError(f"Unable to read private key {path}: {exc.strerror or exc}") from exc


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def build_hop(name: str, directives: Directives, config: Config) -> HopDescriptor:
    """Build the descriptor for one entry from its directives."""
    port = directives.get('port')
    identity = resolve_identity_file(_as_list(directives.get('identityfile')), config)
    return HopDescriptor(
        name=name,
        host=str(directives.get('hostname') or name),
        port=_parse_port(port, 'Port') if port else DEFAULT_SSH_PORT,
        username=str(directives.get('user') or getpass.getuser()),
        private_key=read_private_key(identity),
        identity_file=identity,
        local_forwards=tuple(parse_local_forward(d) for d in _as_list(directives.get('localforward'))),
    )


def jump_names(directives: Directives) -> List[str]:
    """Return the upstream entries of a hop, nearest first.

    ``ProxyJump b1,b2`` reaches the target through ``b2``, which is reached
    through ``b1``.
    """
    raw = str(directives.get('proxyjump') or '').strip()
    if not raw or raw.lower() == 'none':
        return []
    names = [token.strip() for token in raw.split(',') if token.strip()]
    return list(reversed(names))


def _resolve(name: str, source: SSHConfigSource, config: Config, seen: Tuple[str, ...]) -> HopChain:
    if name in seen:
        raise ConfigError(f"ProxyJump cycle detected: {' -> '.join(seen + (name,))}")
    directives = source.lookup(name)
    hop = build_hop(name, directives, config)
    upstream = jump_names(directives)
    if not upstream:
        return (hop,)

    seen = seen + (name,)
    chain: HopChain = (hop,)
    for explicit in upstream[:-1]:
        if explicit in seen:
            raise ConfigError(f"ProxyJump cycle detected: {' -> '.join(seen + (explicit,))}")
        chain += (build_hop(explicit, source.lookup(explicit), config),)
        seen = seen + (explicit,)
    return chain + _resolve(upstream[-1], source, config, seen)


def resolve_hops(name: str, config: Config, source: Optional[SSHConfigSource] = None) -> HopChain:
    """Resolve *name* into its hop chain, target first.

    The SSH config is re-read unless *source* is given. Any problem raises
    :class:`ConfigError`; no partial chain is returned.
    """
    if source is None:
        source = SSHConfigSource.load(config.ssh_config_path)
    chain = _resolve(name, source, config, ())
    logger.debug("Resolved %s to %s", name, " <- ".join(hop.name for hop in chain))
    return chain


def establishment_order(chain: HopChain) -> HopChain:
    """Return *chain* in the order hops must be connected: outermost first."""
    return tuple(reversed(chain))
