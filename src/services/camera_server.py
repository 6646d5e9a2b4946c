"""
Camera Server - Main orchestrator for discovery, connections and reconnection
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

import uvicorn

# Local imports
from config_loader import (
    CacheConfig, ConnectionConfig, DiscoveryConfig, ScannerConfig, load_config, setup_logging
)
from scheduler import Scheduler
from database.manager import DatabaseManager
from discovery.blacklist import DeviceBlacklist
from discovery.cache import DiscoveryCache, JsonFileCacheStore, MemoryCacheStore, PostgresCacheStore
from discovery.manager import CameraDiscovery
from discovery.mdns_probe import MdnsProbe
from discovery.port_scanner import PortScanner
from discovery.upnp_probe import UpnpProbe
from discovery.validator import DeviceValidator
from discovery.ws_discovery_probe import WsDiscoveryProbe
from connection.manager import CameraConnectionManager
from connection.models import CameraTarget, Outcome
from connection.reconnection import ReconnectionConfig, ReconnectionSupervisor
from api.main_api import CameraAPI
from services.connection_log import ConnectionEventLog

logger = logging.getLogger(__name__)


class CameraServer:
    """Main server wiring discovery, camera connections, reconnection and the local API"""

    def __init__(self, config_path: str = "config/config.yaml", config: Optional[Dict] = None):
        self.config = config if config is not None else load_config(config_path)
        setup_logging(self.config)

        self.db = DatabaseManager(self.config) if 'database' in self.config else None
        self.scheduler = Scheduler()

        cache_config = CacheConfig.from_dict(self.config['cache'])
        self.cache = DiscoveryCache(
            store=self._create_cache_store(),
            scheduler=self.scheduler,
            max_age=cache_config.max_age,
            sweep_interval=cache_config.sweep_interval
        )

        self.discovery = CameraDiscovery(
            cache=self.cache,
            scanner=PortScanner(ScannerConfig.from_dict(self.config['scanner'])),
            blacklist=DeviceBlacklist(),
            mdns_probe=MdnsProbe(self.config['mdns']),
            upnp_probe=UpnpProbe(self.config['upnp']),
            ws_probe=WsDiscoveryProbe(self.config['ws_discovery']),
            validator=DeviceValidator(timeout=cache_config.default_timeout),
            config=DiscoveryConfig.from_dict(self.config['discovery'], self.config['network']),
            network_base=self.config['network'].get('network_base')
        )

        # One connection manager per configured camera
        connection_config = ConnectionConfig.from_dict(self.config['connection'])
        self.cameras: Dict[str, CameraConnectionManager] = {}
        for entry in self.config.get('cameras', []):
            target = CameraTarget.from_config(entry)
            self.cameras[target.camera_id] = CameraConnectionManager(target, connection_config)

        reconnection = self.config['reconnection']
        self.supervisor = ReconnectionSupervisor(
            self.scheduler,
            ReconnectionConfig.from_dict(reconnection),
            health_check_interval=float(reconnection.get('health_check_interval_seconds', 30.0))
        )
        for camera_id, entry in zip(self.cameras, self.config.get('cameras', [])):
            if entry.get('reconnection'):
                merged = dict(reconnection)
                merged.update(entry['reconnection'])
                self.supervisor.configure_camera(camera_id, ReconnectionConfig.from_dict(merged))

        self.event_log = ConnectionEventLog(self.db)
        self.api = CameraAPI(self.discovery, self.cameras, self.supervisor, self.config,
                             database_manager=self.db, event_log=self.event_log)

        self.running = False
        self._stopped = False
        self._subscriptions = []
        self._discovery_job = None

    def _create_cache_store(self):
        backend = self.config['cache']['backend']
        if backend == 'postgres':
            return PostgresCacheStore(self.db)
        if backend == 'memory':
            return MemoryCacheStore()
        return JsonFileCacheStore(self.config['cache']['path'])

    async def start(self, serve_api: bool = True):
        """Start all server services"""
        logger.info("Starting CamLink Local Server...")

        try:
            if self.db is not None:
                await self.db.initialize()
                logger.info("Database initialized successfully")

            await self.cache.initialize()
            logger.info(f"Discovery cache ready ({len(self.cache)} device(s))")

            self._wire_supervision()
            await self.supervisor.set_enabled(bool(self.config['reconnection'].get('enabled', True)))
            await self.supervisor.start()

            self.running = True

            await self._discovery_pass(force_refresh=False)

            if self.config['connection'].get('auto_connect', True) and self.cameras:
                await self._connect_cameras()

            scan_interval = self.config['network']['scan_interval_minutes'] * 60
            if scan_interval > 0:
                self._discovery_job = self.scheduler.call_every(
                    scan_interval, self._periodic_discovery, name="periodic_discovery"
                )
                logger.info(f"Discovery service started (every {scan_interval / 60} minutes)")

            logger.info(f"All services started ({self.scheduler.pending_jobs} scheduled jobs, "
                        f"{len(self.cameras)} camera(s))")

            if serve_api and self.config['api'].get('enabled', True):
                await self._start_api_server()

        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop all server services gracefully"""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping server...")
        self.running = False

        await self.discovery.stop()
        await self.supervisor.stop()

        for manager in self.cameras.values():
            try:
                await manager.close()
            except Exception as e:
                logger.error(f"Error closing {manager.camera_id}: {e}")

        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

        await self.scheduler.shutdown()
        await self.cache.close()
        await self.event_log.flush()

        if self.db is not None:
            await self.db.close()
        logger.info("Server stopped")

    def _wire_supervision(self):
        for manager in self.cameras.values():
            self.supervisor.register_camera(manager)
            self._subscriptions.append(manager.state_events.subscribe(self.event_log.on_connection_event))
        self._subscriptions.append(self.supervisor.session_events.subscribe(self.event_log.on_reconnection_event))

    # ================== DISCOVERY ==================

    async def _discovery_pass(self, force_refresh: bool) -> List:
        start = time.time()
        try:
            devices = await self.discovery.discover(force_refresh=force_refresh)
        except Exception as e:
            logger.error(f"Discovery failed: {e}")
            return []
        summary = self.discovery.last_summary
        source = summary.source if summary else "none"
        logger.info(f"[SEARCH] Discovery ({source}): {len(devices)} device(s) in {time.time() - start:.1f}s")
        for device in devices:
            logger.info(f"  {device.ip}:{device.port} {device.protocol} via {device.discovery_method}"
                        + (f" ({device.manufacturer})" if device.manufacturer else ""))
        return devices

    async def _periodic_discovery(self):
        if not self.running:
            return
        logger.info("[REFRESH] Running periodic discovery...")
        await self._discovery_pass(force_refresh=True)

    # ================== CONNECTIONS ==================

    async def _connect_cameras(self):
        """Connect every configured camera; failures are handed to the supervisor"""
        managers = list(self.cameras.values())
        results = await asyncio.gather(*(m.connect() for m in managers), return_exceptions=True)

        for manager, result in zip(managers, results):
            if isinstance(result, Exception):
                logger.error(f"[FAIL] {manager.camera_id}: connect raised {result}")
                continue
            if result.success:
                logger.info(f"[OK] {manager.camera_id} ready via {result.protocol_used.value}")
                continue
            logger.warning(f"[FAIL] {manager.camera_id}: {result.outcome.value}: {result.error}")
            if result.outcome != Outcome.AUTH_FAILED:
                camera_id = manager.camera_id
                self.scheduler.call_later(
                    0, lambda camera_id=camera_id: self._start_reconnection(camera_id),
                    name=f"initial-reconnect:{camera_id}"
                )

    async def _start_reconnection(self, camera_id: str):
        await self.supervisor.start_reconnection(camera_id, reason="initial connection failed")

    # ================== API ==================

    async def _start_api_server(self):
        """Start the FastAPI server"""
        config = uvicorn.Config(
            self.api.app,
            host=self.config['api']['host'],
            port=self.config['api']['port'],
            log_level="info",
            access_log=False  # We handle our own logging
        )

        server = uvicorn.Server(config)

        logger.info(f"Starting API server on {self.config['api']['host']}:{self.config['api']['port']}")
        logger.info(f"API documentation: http://localhost:{self.config['api']['port']}/docs")

        if self.db is not None:
            logger.info("PostgreSQL persistence enabled (cache backend: "
                        f"{self.config['cache']['backend']}, connection history on)")
        else:
            logger.info(f"Local-only mode - cache backend: {self.config['cache']['backend']}")

        await server.serve()
