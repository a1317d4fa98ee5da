"""Read-only view of the user's SSH client configuration."""

import logging
import os
from typing import Dict, List, Union

import paramiko
from paramiko.ssh_exception import ConfigParseError

from .errors import ConfigError

logger = logging.getLogger(__name__)

Directives = Dict[str, Union[str, List[str]]]


def _is_pattern(token: str) -> bool:
    return '*' in token or '?' in token or token.startswith('!')


class SSHConfigSource:
    """Queryable SSH configuration backed by :class:`paramiko.SSHConfig`.

    Directive names are lowercased. ``IdentityFile`` and ``LocalForward``
    are always lists in declaration order; everything else is a string.
    """

    def __init__(self, config: paramiko.SSHConfig, path: str = ''):
        self._config = config
        self.path = path

    @classmethod
    def load(cls, path: str) -> 'SSHConfigSource':
        """Parse the configuration file at *path*."""
        if not os.path.isfile(path):
            raise ConfigError(f"SSH config file does not exist: {path}")
        try:
            config = paramiko.SSHConfig.from_path(path)
        except OSError as exc:
            raise ConfigError(f"Unable to read SSH config file {path}: {exc}") from exc
        except ConfigParseError as exc:
            raise ConfigError(f"Unable to parse SSH config file {path}: {exc}") from exc
        logger.debug("Loaded SSH config from %s", path)
        return cls(config, path)

    @classmethod
    def from_text(cls, text: str) -> 'SSHConfigSource':
        try:
            return cls(paramiko.SSHConfig.from_text(text))
        except ConfigParseError as exc:
            raise ConfigError(f"Unable to parse SSH config: {exc}") from exc

    def names(self) -> List[str]:
        """Return every concrete (non-wildcard) host name, sorted."""
        return sorted(name for name in self._config.get_hostnames() if not _is_pattern(name))

    def has_entry(self, name: str) -> bool:
        return name in self._config.get_hostnames() and not _is_pattern(name)

    def lookup(self, name: str) -> Directives:
        """Return the effective directives for the entry called *name*."""
        if not self.has_entry(name):
            raise ConfigError(f"Unknown SSH config entry: {name}")
        return dict(self._config.lookup(name))

    def toggleable_names(self) -> List[str]:
        """Return entries that declare forwards and are not hidden.

        An entry is hidden from the toggle list with ``KeymasterIgnore yes``.
        """
        names = []
        for name in self.names():
            directives = self.lookup(name)
            if not directives.get('localforward'):
                continue
            if str(directives.get('keymasterignore', '')).lower() == 'yes':
                continue
            names.append(name)
        return names
