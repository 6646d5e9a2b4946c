"""
Configuration loader for CamLink Local Server
Loads and validates configuration from YAML files
"""

import yaml
import logging
from typing import Dict, Any, List, Optional
from pathlib import Path
from dataclasses import dataclass, field
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

VALID_PROBES = ('mdns', 'port_scan', 'ws_discovery', 'upnp')
VALID_PROTOCOL_PREFERENCES = ('auto', 'onvif', 'proprietary')
VALID_CACHE_BACKENDS = ('json', 'postgres', 'memory')


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation
    """
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}

        # Apply defaults first so validation sees complete sections
        config = _apply_defaults(config)

        _validate_config(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


def _validate_config(config: Dict) -> None:
    """Validate section values that have no safe default"""
    discovery = config['discovery']
    for probe in discovery['probes']:
        if probe not in VALID_PROBES:
            raise ValueError(f"Unknown discovery probe: {probe} (expected one of {', '.join(VALID_PROBES)})")

    if discovery['deadline_seconds'] <= 0:
        raise ValueError("discovery.deadline_seconds must be positive")

    scanner = config['scanner']
    if scanner['max_concurrent'] < 1:
        raise ValueError("scanner.max_concurrent must be at least 1")

    if not 0.0 < config['connection']['onvif_budget_fraction'] < 1.0:
        raise ValueError("connection.onvif_budget_fraction must be between 0 and 1")

    reconnection = config['reconnection']
    if reconnection['backoff_multiplier'] < 1.0:
        raise ValueError("reconnection.backoff_multiplier must be >= 1.0")
    if reconnection['max_attempts'] < 1:
        raise ValueError("reconnection.max_attempts must be at least 1")
    if reconnection['initial_delay_seconds'] > reconnection['max_delay_seconds']:
        raise ValueError("reconnection.initial_delay_seconds must not exceed max_delay_seconds")

    cache = config['cache']
    if cache['backend'] not in VALID_CACHE_BACKENDS:
        raise ValueError(f"Unknown cache backend: {cache['backend']}")
    if cache['backend'] == 'postgres' and 'database' not in config:
        raise ValueError("cache.backend 'postgres' requires a database section")

    if 'database' in config:
        db = config['database']
        required_db_fields = ['host', 'port', 'database', 'username', 'password']
        for db_field in required_db_fields:
            if db_field not in db:
                raise ValueError(f"Missing required database field: {db_field}")

    seen_ids = set()
    for camera in config['cameras']:
        if 'id' not in camera or 'host' not in camera:
            raise ValueError("Each camera entry requires 'id' and 'host'")
        if camera['id'] in seen_ids:
            raise ValueError(f"Duplicate camera id: {camera['id']}")
        seen_ids.add(camera['id'])
        protocol = camera.get('protocol', 'auto')
        if protocol not in VALID_PROTOCOL_PREFERENCES:
            raise ValueError(f"Camera {camera['id']}: unknown protocol preference '{protocol}'")


def _fill_section(config: Dict, section: str, defaults: Dict) -> None:
    if config.get(section) is None:
        config[section] = {}
    for key, default_value in defaults.items():
        if key not in config[section]:
            config[section][key] = default_value


def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Network defaults (network_base None means detect from the active interface)
    _fill_section(config, 'network', {
        'network_base': None,
        'fallback_network_base': '192.168.1',
        'scan_interval_minutes': 30
    })

    _fill_section(config, 'discovery', {
        'probes': ['mdns', 'port_scan'],
        'deadline_seconds': 5.0,
        'scan_cooldown_seconds': 120,
        'probe_window_seconds': 4.0,
        'validate_on_discovery': False
    })

    _fill_section(config, 'scanner', {
        'max_concurrent': 50,
        'fast_timeout_seconds': 2.0,
        'common_timeout_seconds': 3.0,
        'full_timeout_seconds': 5.0,
        'short_circuit_phases': True
    })

    _fill_section(config, 'mdns', {
        'fast_failure_timeout_seconds': 3.0,
        'discovery_timeout_seconds': 8.0,
        'fallback_delay_seconds': 0.5,
        'fallback_window_seconds': 4.0,
        'fallback_timeout_seconds': 5.0
    })

    _fill_section(config, 'upnp', {
        'timeout_seconds': 5.0,
        'descriptor_timeout_seconds': 5.0
    })

    _fill_section(config, 'ws_discovery', {
        'timeout_seconds': 5.0
    })

    _fill_section(config, 'cache', {
        'backend': 'json',
        'path': 'data/discovery_cache.json',
        'max_age_hours': 24,
        'sweep_interval_hours': 6,
        'default_timeout_seconds': 5.0
    })

    _fill_section(config, 'connection', {
        'timeout_seconds': 10.0,
        'reconnect_pause_seconds': 1.0,
        'onvif_budget_fraction': 0.4,
        'dvrip_connect_timeout_seconds': 5.0,
        'dvrip_response_timeout_seconds': 3.0,
        'auto_connect': True
    })

    _fill_section(config, 'reconnection', {
        'enabled': True,
        'initial_delay_seconds': 1.0,
        'max_delay_seconds': 300.0,
        'backoff_multiplier': 2.0,
        'max_attempts': 10,
        'connection_timeout_seconds': 30.0,
        'jitter_enabled': True,
        'custom_delays': [],
        'health_check_interval_seconds': 30.0
    })

    if config.get('cameras') is None:
        config['cameras'] = []

    _fill_section(config, 'api', {
        'enabled': True,
        'host': '0.0.0.0',
        'port': 8000,
        'cors_origins': ['*']
    })

    _fill_section(config, 'logging', {
        'level': 'INFO',
        'file': 'logs/camlink_server.log',
        'console_output': True,
        'timezone': 'UTC'
    })

    return config


# ================== TYPED CONFIGURATION VIEWS ==================

@dataclass
class ScannerConfig:
    """Port scanner tuning"""
    max_concurrent: int = 50             # Connection attempts in flight per batch
    fast_timeout: float = 2.0            # Phase 1 (RTSP priority ports)
    common_timeout: float = 3.0          # Phase 2 (most common camera ports)
    full_timeout: float = 5.0            # Phase 3 (every remaining port)
    short_circuit_phases: bool = True    # Stop after the first phase with a hit

    @classmethod
    def from_dict(cls, section: Optional[Dict]) -> 'ScannerConfig':
        section = section or {}
        return cls(
            max_concurrent=int(section.get('max_concurrent', 50)),
            fast_timeout=float(section.get('fast_timeout_seconds', 2.0)),
            common_timeout=float(section.get('common_timeout_seconds', 3.0)),
            full_timeout=float(section.get('full_timeout_seconds', 5.0)),
            short_circuit_phases=bool(section.get('short_circuit_phases', True))
        )


@dataclass
class DiscoveryConfig:
    """Discovery orchestration settings"""
    probes: List[str] = field(default_factory=lambda: ['mdns', 'port_scan'])
    deadline: float = 5.0                # Global race deadline
    scan_cooldown: float = 120.0         # Per-subnet port scan cooldown
    probe_window: float = 4.0            # Multicast collection window inside the race
    validate_on_discovery: bool = False
    fallback_network_base: str = '192.168.1'

    @classmethod
    def from_dict(cls, section: Optional[Dict], network: Optional[Dict] = None) -> 'DiscoveryConfig':
        section = section or {}
        network = network or {}
        return cls(
            probes=list(section.get('probes', ['mdns', 'port_scan'])),
            deadline=float(section.get('deadline_seconds', 5.0)),
            scan_cooldown=float(section.get('scan_cooldown_seconds', 120)),
            probe_window=float(section.get('probe_window_seconds', 4.0)),
            validate_on_discovery=bool(section.get('validate_on_discovery', False)),
            fallback_network_base=network.get('fallback_network_base', '192.168.1')
        )


@dataclass
class CacheConfig:
    """Discovery cache retention"""
    max_age: float = 24 * 3600.0
    sweep_interval: float = 6 * 3600.0
    default_timeout: float = 5.0

    @classmethod
    def from_dict(cls, section: Optional[Dict]) -> 'CacheConfig':
        section = section or {}
        return cls(
            max_age=float(section.get('max_age_hours', 24)) * 3600.0,
            sweep_interval=float(section.get('sweep_interval_hours', 6)) * 3600.0,
            default_timeout=float(section.get('default_timeout_seconds', 5.0))
        )


@dataclass
class ConnectionConfig:
    """Per-camera connection timeouts"""
    timeout: float = 10.0
    onvif_budget_fraction: float = 0.4   # share of the timeout ONVIF gets before auto falls back
    reconnect_pause: float = 1.0
    dvrip_connect_timeout: float = 5.0
    dvrip_response_timeout: float = 3.0

    @classmethod
    def from_dict(cls, section: Optional[Dict]) -> 'ConnectionConfig':
        section = section or {}
        return cls(
            timeout=float(section.get('timeout_seconds', 10.0)),
            onvif_budget_fraction=float(section.get('onvif_budget_fraction', 0.4)),
            reconnect_pause=float(section.get('reconnect_pause_seconds', 1.0)),
            dvrip_connect_timeout=float(section.get('dvrip_connect_timeout_seconds', 5.0)),
            dvrip_response_timeout=float(section.get('dvrip_response_timeout_seconds', 3.0))
        )


# ================== LOGGING ==================

class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a configured pytz timezone"""

    def __init__(self, fmt=None, timezone: str = 'UTC'):
        super().__init__(fmt)
        try:
            self.tz = pytz.timezone(timezone)
        except pytz.UnknownTimeZoneError:
            self.tz = pytz.utc

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')


def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with timezone-aware timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    timezone = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, timezone=timezone)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )

    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logging.getLogger().addHandler(console_handler)

    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, tz={timezone}, console={log_config.get('console_output', True)}, file={log_file}")


def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "network": {
            "network_base": "192.168.1",
            "fallback_network_base": "192.168.1",
            "scan_interval_minutes": 30
        },
        "discovery": {
            "probes": ["mdns", "port_scan", "ws_discovery", "upnp"],
            "deadline_seconds": 5.0,
            "scan_cooldown_seconds": 120,
            "probe_window_seconds": 4.0,
            "validate_on_discovery": False
        },
        "scanner": {
            "max_concurrent": 50,
            "fast_timeout_seconds": 2.0,
            "common_timeout_seconds": 3.0,
            "full_timeout_seconds": 5.0,
            "short_circuit_phases": True
        },
        "cache": {
            "backend": "json",
            "path": "data/discovery_cache.json",
            "max_age_hours": 24,
            "sweep_interval_hours": 6
        },
        "connection": {
            "timeout_seconds": 10.0,
            "onvif_budget_fraction": 0.4,
            "reconnect_pause_seconds": 1.0,
            "auto_connect": True
        },
        "reconnection": {
            "enabled": True,
            "initial_delay_seconds": 1.0,
            "max_delay_seconds": 300.0,
            "backoff_multiplier": 2.0,
            "max_attempts": 10,
            "connection_timeout_seconds": 30.0,
            "jitter_enabled": True,
            "custom_delays": [],
            "health_check_interval_seconds": 30.0
        },
        "cameras": [
            {
                "id": "front_door",
                "host": "192.168.1.64",
                "protocol": "auto",
                "onvif_port": 80,
                "username": "admin",
                "password": "changeme"
            }
        ],
        "database": {
            "host": "localhost",
            "port": 5432,
            "database": "camlink_db",
            "username": "postgres",
            "password": "postgres"
        },
        "api": {
            "enabled": True,
            "host": "0.0.0.0",
            "port": 8000,
            "cors_origins": ["*"]
        },
        "logging": {
            "level": "INFO",
            "file": "logs/camlink_server.log",
            "console_output": True,
            "timezone": "America/New_York"
        }
    }
