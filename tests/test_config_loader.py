from __future__ import annotations

import logging

import pytest
import yaml

from config_loader import TimezoneFormatter, get_sample_config, load_config


def _write(tmp_path, data):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_load_applies_defaults(tmp_path):
    path = _write(tmp_path, {
        "discovery": {"max_attempts": 2},
        "telemetry": {},
        "polling": {"refresh_interval_seconds": 60},
    })

    config = load_config(path)

    assert config["discovery"]["max_attempts"] == 2
    assert config["discovery"]["boot_attempts"] == 3
    assert config["telemetry"]["warmup_delays_seconds"] == [0.5, 1, 2]
    assert config["polling"]["health_check_interval_seconds"] == 300
    assert config["display"]["warning_threshold"] == 30
    assert config["api"]["port"] == 8765
    assert config["cache"]["enabled"] is True


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.yaml"))


@pytest.mark.parametrize("data, message", [
    ({"telemetry": {}, "polling": {"refresh_interval_seconds": 60}}, "discovery"),
    ({"discovery": {}, "telemetry": {}, "polling": {}}, "refresh_interval_seconds"),
    ({"discovery": {}, "telemetry": {}, "polling": {"refresh_interval_seconds": 0}}, "positive"),
    ({"discovery": {"boot_attempts": 0}, "telemetry": {}, "polling": {"refresh_interval_seconds": 60}},
     "boot_attempts"),
    ({"discovery": {}, "telemetry": {}, "polling": {"refresh_interval_seconds": 60},
      "display": {"warning_threshold": 130}}, "warning_threshold"),
])
def test_invalid_config_rejected(tmp_path, data, message):
    with pytest.raises(ValueError, match=message):
        load_config(_write(tmp_path, data))


def test_sample_config_is_loadable(tmp_path):
    config = load_config(_write(tmp_path, get_sample_config()))
    assert config["polling"]["refresh_interval_seconds"] == 120


def test_timezone_formatter_uses_configured_zone():
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "hello", None, None)
    record.created = 0

    assert TimezoneFormatter(timezone_name="Asia/Tokyo").formatTime(record) == "1970-01-01 09:00:00 JST"
    assert TimezoneFormatter(timezone_name="Not/AZone").formatTime(record) == "1970-01-01 00:00:00 UTC"
