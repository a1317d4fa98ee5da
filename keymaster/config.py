"""
Configuration Manager for keymaster
Handles the global application settings consumed by the connection engine
"""

import copy
import json
import logging
import os
from typing import Any, Dict, Optional

from .platform_utils import get_config_dir, get_default_ssh_binary, get_ssh_dir

logger = logging.getLogger(__name__)

# Increment this whenever the configuration format changes
CONFIG_VERSION = 1


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *base* with *overrides* applied key by key."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# Settings read as filesystem paths; each may be a string or null
_PATH_SETTINGS = (('ssh', 'dir'), ('ssh', 'config_path'), ('hook', 'preconnect'))


def _find_problem(config: Dict[str, Any], defaults: Dict[str, Any]) -> Optional[str]:
    """Describe the first structural problem in user settings, if any."""
    version = config.get('config_version', CONFIG_VERSION)
    if isinstance(version, bool) or not isinstance(version, int):
        return f"config_version must be an integer, not {version!r}"
    for section, default in defaults.items():
        if isinstance(default, dict) and section in config and not isinstance(config[section], dict):
            return f"section '{section}' must be an object, not {config[section]!r}"
    for section, key in _PATH_SETTINGS:
        value = config.get(section, {}).get(key)
        if value is not None and not isinstance(value, str):
            return f"{section}.{key} must be a string, not {value!r}"
    return None


class Config:
    """Configuration manager for keymaster"""

    def __init__(self, config_file: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.config_file = config_file or os.path.join(get_config_dir(), 'config.json')
        if data is not None:
            defaults = self.get_default_config()
            problem = _find_problem(data, defaults)
            if problem:
                raise ValueError(f"Invalid configuration: {problem}")
            self.config_data = _merge(defaults, data)
        else:
            self.config_data = self.load_json_config()
        self._normalize_paths()

    def load_json_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file, falling back to defaults"""
        defaults = self.get_default_config()
        if not os.path.exists(self.config_file):
            logger.debug("No configuration file at %s; using defaults", self.config_file)
            return defaults
        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load JSON config: {e}")
            return defaults

        if not isinstance(config, dict):
            logger.error("Ignoring configuration file %s: top level must be an object", self.config_file)
            return defaults

        problem = _find_problem(config, defaults)
        if problem:
            logger.error("Ignoring configuration file %s: %s", self.config_file, problem)
            return defaults

        stored_version = config.get('config_version', CONFIG_VERSION)
        if stored_version > CONFIG_VERSION:
            logger.warning(
                "Configuration version %s is newer than supported version %s; unknown keys are ignored",
                stored_version,
                CONFIG_VERSION,
            )
        return _merge(defaults, config)

    def get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values"""
        return {
            'config_version': CONFIG_VERSION,
            'ssh': {
                'path': get_default_ssh_binary(),
                'dir': get_ssh_dir(),
                'config_path': None,  # None means <ssh dir>/config
                'default_identity': 'id_rsa',
                'auto_add_host_keys': True,
                'keepalive_interval': 30,
            },
            'hook': {
                'preconnect': '~/keymaster-hook',
            },
            'backoff': {
                # explicit errors and clean closes back off at different rates
                'error_unit': 4.0,
                'close_unit': 1.0,
            },
            'monitor': {
                'interval': 1.0,
            },
            'tunnels': {
                'listen_address': '127.0.0.1',
            },
        }

    def _normalize_paths(self):
        ssh_cfg = self.config_data['ssh']
        ssh_cfg['dir'] = os.path.abspath(os.path.expanduser(ssh_cfg.get('dir') or get_ssh_dir()))
        if not ssh_cfg.get('config_path'):
            ssh_cfg['config_path'] = os.path.join(ssh_cfg['dir'], 'config')
        else:
            ssh_cfg['config_path'] = os.path.expanduser(ssh_cfg['config_path'])
        hook_cfg = self.config_data['hook']
        if hook_cfg.get('preconnect'):
            hook_cfg['preconnect'] = os.path.expanduser(hook_cfg['preconnect'])

    def get_setting(self, key: str, default=None):
        """Get a setting value using a dotted key such as ``ssh.path``"""
        value = self.config_data
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def _get_float(self, key: str, default: float) -> float:
        value = self.get_setting(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value %r for %s; using %s", value, key, default)
            return default

    @property
    def ssh_path(self) -> str:
        return self.get_setting('ssh.path') or get_default_ssh_binary()

    @property
    def ssh_dir(self) -> str:
        return self.get_setting('ssh.dir')

    @property
    def ssh_config_path(self) -> str:
        return self.get_setting('ssh.config_path')

    @property
    def default_identity_path(self) -> str:
        """Absolute path of the identity used when an entry names none."""
        identity = os.path.expanduser(self.get_setting('ssh.default_identity') or 'id_rsa')
        if not os.path.isabs(identity):
            identity = os.path.join(self.ssh_dir, identity)
        return identity

    @property
    def auto_add_host_keys(self) -> bool:
        return bool(self.get_setting('ssh.auto_add_host_keys', True))

    @property
    def keepalive_interval(self) -> int:
        return max(0, int(self._get_float('ssh.keepalive_interval', 30)))

    @property
    def preconnect_hook(self) -> Optional[str]:
        return self.get_setting('hook.preconnect') or None

    @property
    def error_backoff_unit(self) -> float:
        return self._get_float('backoff.error_unit', 4.0)

    @property
    def close_backoff_unit(self) -> float:
        return self._get_float('backoff.close_unit', 1.0)

    @property
    def monitor_interval(self) -> float:
        return self._get_float('monitor.interval', 1.0)

    @property
    def listen_address(self) -> str:
        return self.get_setting('tunnels.listen_address') or '127.0.0.1'
