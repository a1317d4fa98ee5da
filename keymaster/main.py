#!/usr/bin/env python3
"""
keymaster - Command-line entry point
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, Sequence

from .config import Config
from .errors import ConfigError
from .keymaster import Keymaster
from .platform_utils import get_data_dir

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None):
    """Set up logging configuration"""
    log_dir = log_dir or get_data_dir()
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Clear any existing handlers
    logging.getLogger().handlers.clear()

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'keymaster.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(formatter)

    # Connection messages are already printed; keep the console for problems
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.getLogger('asyncio').setLevel(logging.DEBUG if verbose else logging.INFO)
    logging.getLogger('paramiko').setLevel(logging.INFO if verbose else logging.WARNING)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Toggle SSH tunnels defined in your SSH config")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--config", metavar="FILE", help="Path to the keymaster JSON configuration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List SSH config entries that can be toggled")

    up = subparsers.add_parser("up", help="Activate connections and keep them up until interrupted")
    up.add_argument("names", nargs="+", metavar="NAME", help="SSH config entry to activate")
    return parser.parse_args(argv)


def _print_message(event):
    print(f"{event['name']}: {event['message']}", flush=True)


async def serve(keymaster: Keymaster, names: Sequence[str]):
    """Keep *names* active until SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt
            pass

    keymaster.connection_message.connect(_print_message)
    keymaster.activating.connect(lambda name: print(f"Activated: {name}", flush=True))
    keymaster.deactivating.connect(lambda name: print(f"Deactivated: {name}", flush=True))
    for name in names:
        keymaster.activate(name)
    try:
        await stop.wait()
    finally:
        await keymaster.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)
    config = Config(config_file=args.config)
    keymaster = Keymaster(config)

    if args.command == "list":
        try:
            names = keymaster.toggleable_names()
        except ConfigError as exc:
            print(f"keymaster: {exc}", file=sys.stderr)
            return 1
        for name in names:
            print(name)
        return 0

    try:
        asyncio.run(serve(keymaster, args.names))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == '__main__':
    sys.exit(main())
