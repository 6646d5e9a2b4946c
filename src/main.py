"""
CamLink Local Server - Main Entry Point
"""

import asyncio
import signal
import sys
import logging
from pathlib import Path
import os

from services.camera_server import CameraServer

logger = logging.getLogger(__name__)


async def main() -> int:
    """Run the server until uvicorn exits or SIGINT/SIGTERM arrives"""
    server = None
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop(signum):
        logger.info(f"Received signal {signum.name}, shutting down...")
        stop_requested.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, request_stop, signum)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(signum, lambda s, f: loop.call_soon_threadsafe(stop_requested.set))

    config_path = os.environ.get('CONFIG_FILE', 'config/config.yaml')
    logger.info(f"Using configuration file: {config_path}")

    try:
        server = CameraServer(config_path=config_path)
        serving = asyncio.create_task(server.start())
        stopping = asyncio.create_task(stop_requested.wait())

        done, _ = await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if serving in done:
            serving.result()
            if not server.config['api'].get('enabled', True):
                # Headless mode: discovery and supervision keep running on the scheduler
                logger.info("API disabled; running until stopped")
                await stopping
        else:
            serving.cancel()
            await asyncio.gather(serving, return_exceptions=True)
        stopping.cancel()

    except Exception as e:
        logger.error(f"Server failed: {e}")
        return 1
    finally:
        if server:
            await server.stop()

    return 0


if __name__ == "__main__":
    # Ensure logs and cache directories exist
    Path("logs").mkdir(exist_ok=True)
    Path("data").mkdir(exist_ok=True)

    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        sys.exit(0)
