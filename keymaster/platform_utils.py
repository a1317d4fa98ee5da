"""Platform-related utility functions."""

import logging
import os
import platform
from pathlib import Path

APP_NAME = "keymaster"

logger = logging.getLogger(__name__)

_DEFAULT_SSH_BINARIES = {
    "Darwin": "/usr/bin/ssh",
    "Linux": "/usr/bin/ssh",
    "Windows": "C:\\Program Files\\Git\\usr\\bin\\ssh.exe",
}


def _normalize_path(path: str) -> str:
    """Expand user references and return an absolute path."""
    return os.path.abspath(os.path.expanduser(path))


def is_macos() -> bool:
    """Return True if running on macOS."""
    return platform.system() == "Darwin"


def is_windows() -> bool:
    return platform.system() == "Windows"


def get_home_dir() -> str:
    """Return the user's home directory.

    Falls back to ``Path.home`` when ``~`` cannot be expanded, and to the
    current working directory as a last resort.
    """
    expanded = os.path.expanduser("~")
    if expanded and expanded != "~":
        return expanded
    try:
        return str(Path.home())
    except RuntimeError:
        logger.warning(
            "Unable to determine the user's home directory; "
            "falling back to the current working directory."
        )
        return os.getcwd()


def get_config_dir() -> str:
    """Return the per-user configuration directory for keymaster."""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(get_home_dir(), ".config")
    return os.path.join(_normalize_path(base), APP_NAME)


def get_data_dir() -> str:
    """Return the per-user data directory for keymaster."""
    base = os.environ.get("XDG_DATA_HOME") or os.path.join(get_home_dir(), ".local", "share")
    return os.path.join(_normalize_path(base), APP_NAME)


def get_ssh_dir() -> str:
    """Return the user's SSH directory.

    The location can be overridden by setting the ``KEYMASTER_SSH_DIR``
    environment variable.
    """
    override = os.environ.get("KEYMASTER_SSH_DIR")
    if override:
        return _normalize_path(override)
    return _normalize_path(os.path.join(get_home_dir(), ".ssh"))


def get_default_ssh_binary() -> str:
    """Return the platform's default SSH client binary."""
    system = platform.system()
    default = _DEFAULT_SSH_BINARIES.get(system)
    if default is None:
        logger.debug("No default SSH binary known for platform %s", system)
        return "ssh"
    return default
