"""Tests for YAML configuration loading, defaults and validation."""

import logging

import pytest
import yaml

from config_loader import (
    CacheConfig,
    ConnectionConfig,
    DiscoveryConfig,
    ScannerConfig,
    TimezoneFormatter,
    get_sample_config,
    load_config,
)


def write_config(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestLoadConfig:
    """Defaults and validation on load."""

    def test_empty_file_gets_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        config = load_config(str(path))

        assert config['discovery']['probes'] == ['mdns', 'port_scan']
        assert config['discovery']['deadline_seconds'] == 5.0
        assert config['cache']['backend'] == 'json'
        assert config['reconnection']['max_attempts'] == 10
        assert config['cameras'] == []
        assert 'database' not in config

    def test_partial_section_keeps_explicit_values(self, tmp_path):
        config = load_config(write_config(tmp_path, {'scanner': {'max_concurrent': 16}}))

        assert config['scanner']['max_concurrent'] == 16
        assert config['scanner']['fast_timeout_seconds'] == 2.0

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_sample_config_is_valid(self, tmp_path):
        config = load_config(write_config(tmp_path, get_sample_config()))
        assert config['cameras'][0]['id'] == 'front_door'

    @pytest.mark.parametrize("data, message", [
        ({'discovery': {'probes': ['bonjour']}}, "Unknown discovery probe"),
        ({'discovery': {'deadline_seconds': 0}}, "deadline_seconds"),
        ({'scanner': {'max_concurrent': 0}}, "max_concurrent"),
        ({'connection': {'onvif_budget_fraction': 1.0}}, "onvif_budget_fraction"),
        ({'reconnection': {'backoff_multiplier': 0.5}}, "backoff_multiplier"),
        ({'reconnection': {'initial_delay_seconds': 600}}, "initial_delay_seconds"),
        ({'cache': {'backend': 'redis'}}, "Unknown cache backend"),
        ({'cache': {'backend': 'postgres'}}, "requires a database section"),
        ({'database': {'host': 'localhost'}}, "Missing required database field"),
        ({'cameras': [{'id': 'a'}]}, "requires 'id' and 'host'"),
        ({'cameras': [{'id': 'a', 'host': '1.2.3.4'}, {'id': 'a', 'host': '1.2.3.5'}]}, "Duplicate camera id"),
        ({'cameras': [{'id': 'a', 'host': '1.2.3.4', 'protocol': 'rtsp'}]}, "unknown protocol preference"),
    ])
    def test_validation_errors(self, tmp_path, data, message):
        with pytest.raises(ValueError, match=message):
            load_config(write_config(tmp_path, data))


class TestTypedViews:
    """Dataclass views over config sections."""

    def test_scanner_config(self):
        config = ScannerConfig.from_dict({'max_concurrent': 8, 'fast_timeout_seconds': 0.5,
                                          'short_circuit_phases': False})
        assert config.max_concurrent == 8
        assert config.fast_timeout == 0.5
        assert config.common_timeout == 3.0
        assert not config.short_circuit_phases

    def test_discovery_config_takes_network_fallback(self):
        config = DiscoveryConfig.from_dict({'probes': ['upnp'], 'deadline_seconds': 2},
                                           {'fallback_network_base': '10.0.0'})
        assert config.probes == ['upnp']
        assert config.deadline == 2.0
        assert config.fallback_network_base == '10.0.0'

    def test_cache_config_converts_hours(self):
        config = CacheConfig.from_dict({'max_age_hours': 2, 'sweep_interval_hours': 0.5})
        assert config.max_age == 7200.0
        assert config.sweep_interval == 1800.0

    def test_none_sections_use_defaults(self):
        assert ConnectionConfig.from_dict(None) == ConnectionConfig()
        assert ScannerConfig.from_dict(None) == ScannerConfig()


class TestTimezoneFormatter:
    """Log timestamps rendered in the configured zone."""

    def test_unknown_zone_falls_back_to_utc(self):
        formatter = TimezoneFormatter("%(asctime)s", timezone="Mars/Olympus")
        assert formatter.tz.zone == "UTC"

    def test_format_time(self):
        formatter = TimezoneFormatter("%(asctime)s", timezone="UTC")
        record = logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)
        record.created = 0.0
        assert formatter.formatTime(record) == "1970-01-01 00:00:00 UTC"
