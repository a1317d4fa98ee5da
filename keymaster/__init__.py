"""keymaster - toggle SSH tunnels defined in your SSH client configuration."""

__version__ = "0.1.0"

from .config import Config
from .connection import Connection, HopState, Phase
from .errors import ConfigError, ForwardError, KeymasterError, TransportError
from .hops import HopDescriptor, LocalForwardSpec, parse_local_forward, resolve_hops
from .keymaster import Keymaster

__all__ = [
    "Config",
    "ConfigError",
    "Connection",
    "ForwardError",
    "HopDescriptor",
    "HopState",
    "Keymaster",
    "KeymasterError",
    "LocalForwardSpec",
    "Phase",
    "TransportError",
    "parse_local_forward",
    "resolve_hops",
]
