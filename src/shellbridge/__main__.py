"""
shellbridge — drive this machine's shells from a paired phone.

Usage:
    python -m shellbridge --relay-url https://relay.example.com
    shellbridge --log-level DEBUG --no-browser

Settings not given on the command line come from the environment (or a
local .env file); see shellbridge.core.config.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys

from shellbridge.core.config import ShellBridgeConfig
from shellbridge.core.logging import setup_logging
from shellbridge.daemon import Daemon

logger = logging.getLogger("shellbridge")


def build_config(args: argparse.Namespace) -> ShellBridgeConfig:
    config = ShellBridgeConfig.from_env()
    relay = config.relay
    if args.relay_url:
        relay = dataclasses.replace(relay, url=args.relay_url)
    if args.no_browser:
        relay = dataclasses.replace(relay, open_browser=False)
    return dataclasses.replace(config, relay=relay)


def main():
    parser = argparse.ArgumentParser(
        description="Remote terminal daemon with relay pairing and a direct channel"
    )
    parser.add_argument(
        '--relay-url',
        help='Relay server URL (default: $SHELLBRIDGE_RELAY_URL or $RELAY_SERVER_URL)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        help='Log level (default: $SHELLBRIDGE_LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--no-browser', action='store_true',
        help='Print the login URL instead of opening a browser'
    )

    args = parser.parse_args()
    setup_logging(args.log_level)

    config = build_config(args)
    if not config.relay.url:
        print("Error: no relay URL (use --relay-url or SHELLBRIDGE_RELAY_URL)", file=sys.stderr)
        sys.exit(1)

    daemon = Daemon(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def shutdown(sig):
        logger.info(f"Received {signal.Signals(sig).name}")
        loop.create_task(daemon.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown, sig)

    try:
        loop.run_until_complete(daemon.run())
    except KeyboardInterrupt:
        pass
    except (OSError, ValueError) as e:
        logger.error(f"Daemon failed: {e}")
        sys.exit(1)
    finally:
        loop.run_until_complete(daemon.stop())
        loop.close()


if __name__ == '__main__':
    main()
