"""
ASGI entry point for uvicorn
This module exposes the FastAPI app for use with uvicorn command line
"""

import logging
import os
from pathlib import Path

from services.camera_server import CameraServer

# Ensure logs and cache directories exist
Path("logs").mkdir(exist_ok=True)
Path("data").mkdir(exist_ok=True)

logger = logging.getLogger(__name__)

# Build every component synchronously; network work starts in the startup hook
server = CameraServer(config_path=os.environ.get('CONFIG_FILE', 'config/config.yaml'))

# Expose the FastAPI app for uvicorn
app = server.api.app

# Lifespan events for proper initialization and cleanup
@app.on_event("startup")
async def startup_event():
    """Start discovery, connections and supervision; uvicorn serves the API itself"""
    logger.info("Starting up application...")
    await server.start(serve_api=False)

@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown"""
    logger.info("Shutting down application...")
    await server.stop()
    logger.info("Application shut down complete")

logger.info("ASGI app ready for uvicorn")
