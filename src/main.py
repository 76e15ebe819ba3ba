"""
Quota Cockpit - Main Entry Point
"""

import asyncio
import signal
import sys
import logging
import os

from services.cockpit_server import CockpitServer

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/config.yaml'

def resolve_config_path() -> str:
    """QUOTA_COCKPIT_CONFIG wins over the generic CONFIG_FILE variable"""
    return os.environ.get('QUOTA_COCKPIT_CONFIG') or os.environ.get('CONFIG_FILE') or DEFAULT_CONFIG_PATH

async def main() -> int:
    server = None
    loop = asyncio.get_running_loop()

    def request_shutdown(signame):
        logger.info(f"Received {signame}, shutting down...")
        if server:
            loop.create_task(server.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda signum, frame: request_shutdown(signal.Signals(signum).name))

    config_path = resolve_config_path()
    try:
        server = CockpitServer(config_path=config_path)
        logger.info(f"Configuration: {config_path}")
        await server.start()
    except asyncio.CancelledError:
        logger.info("Main task cancelled")
    except Exception as e:
        logger.error(f"Quota Cockpit failed: {e}")
        return 1
    finally:
        if server:
            await server.stop()

    return 0

def run():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nQuota Cockpit stopped by user")
        sys.exit(0)

if __name__ == "__main__":
    run()
