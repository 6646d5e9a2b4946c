"""
API module for camera discovery and connection control
"""

from .main_api import CameraAPI
from .camera_routes import create_camera_routes, create_reconnection_routes
from .discovery_routes import create_discovery_routes
from .system_routes import create_system_routes

__all__ = ['CameraAPI', 'create_camera_routes', 'create_reconnection_routes',
           'create_discovery_routes', 'create_system_routes']
