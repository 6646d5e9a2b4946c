"""
Main FastAPI application setup

Local HTTP API for the camera server: discovery, cached devices, camera
connections and the reconnection supervisor
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Any, Dict
import logging

# Import modular route factories
from .camera_routes import create_camera_routes, create_reconnection_routes
from .discovery_routes import create_discovery_routes
from .system_routes import create_system_routes

logger = logging.getLogger(__name__)


class CameraAPI:
    """Local HTTP API for camera discovery and connection control"""

    def __init__(self, discovery, cameras: Dict[str, Any], supervisor, config: Dict,
                 database_manager=None, event_log=None):
        self.discovery = discovery
        self.cameras = cameras
        self.supervisor = supervisor
        self.config = config
        self.db = database_manager
        self.event_log = event_log
        self.app = FastAPI(
            title="CamLink Local Server",
            description="Local API for IP camera discovery, connections and automatic reconnection",
            version="1.0.0"
        )
        self._setup_middleware()
        self._setup_routes()

    def _setup_middleware(self):
        origins = self.config.get('api', {}).get('cors_origins', ['*'])
        if origins:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=origins,
                allow_methods=["*"],
                allow_headers=["*"]
            )

    def _setup_routes(self):
        """Setup FastAPI routes using modular approach"""
        system_router = create_system_routes(self.discovery, self.cameras, self.supervisor, self.config, self.db)
        discovery_router = create_discovery_routes(self.discovery)
        camera_router = create_camera_routes(self.cameras, self.supervisor, self.event_log)
        reconnection_router = create_reconnection_routes(self.cameras, self.supervisor)

        self.app.include_router(system_router)
        self.app.include_router(discovery_router)
        self.app.include_router(camera_router)
        self.app.include_router(reconnection_router)
