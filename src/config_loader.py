"""
Configuration loader for Quota Cockpit
Loads and validates configuration from YAML files
"""

import yaml
import logging
from typing import Dict, Any
from pathlib import Path
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

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

        # Validate required sections
        _validate_config(config)

        # Apply defaults
        config = _apply_defaults(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

def _validate_config(config: Dict) -> None:
    """Validate that required configuration sections exist"""
    required_sections = ['discovery', 'telemetry', 'polling']

    for section in required_sections:
        if section not in config or config[section] is None:
            raise ValueError(f"Missing required configuration section: {section}")

    # Validate polling section
    polling = config['polling']
    if 'refresh_interval_seconds' not in polling:
        raise ValueError("polling.refresh_interval_seconds is required")
    if polling['refresh_interval_seconds'] <= 0:
        raise ValueError("polling.refresh_interval_seconds must be positive")

    # Validate discovery section
    discovery = config['discovery']
    for field in ('max_attempts', 'boot_attempts', 'max_consecutive_failures'):
        if field in discovery and discovery[field] < 1:
            raise ValueError(f"discovery.{field} must be at least 1")

    # Validate display thresholds if present
    if 'display' in config:
        _validate_thresholds(config['display'])

def _validate_thresholds(display_config: Dict) -> None:
    """Validate quota notification thresholds"""
    warning = display_config.get('warning_threshold', 30)
    critical = display_config.get('critical_threshold', 10)

    for name, value in (('warning_threshold', warning), ('critical_threshold', critical)):
        if not 0 <= value <= 100:
            raise ValueError(f"display.{name} must be between 0 and 100")

    if critical > warning:
        logger.warning(f"critical_threshold ({critical}) is above warning_threshold ({warning}) - "
                       "warning notifications will never be shown")

def _apply_section_defaults(config: Dict, section: str, defaults: Dict) -> None:
    if config.get(section) is None:
        config[section] = {}
    for key, default_value in defaults.items():
        if key not in config[section]:
            config[section][key] = default_value

def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Discovery defaults
    _apply_section_defaults(config, 'discovery', {
        'max_attempts': 3,
        'boot_attempts': 3,
        'boot_backoff_seconds': 2,
        'max_consecutive_failures': 5,
        'process_timeout_seconds': 15,
        'verify_timeout_seconds': 2,
        'retry_delay_seconds': 0.1,
        'cold_start_wait_seconds': 3,
        'require_verified_port': False
    })

    # Telemetry defaults
    _apply_section_defaults(config, 'telemetry', {
        'request_timeout_seconds': 10,
        'readiness_timeout_seconds': 10,
        'readiness_poll_interval_seconds': 0.5,
        'readiness_probe_timeout_seconds': 2,
        'init_max_retries': 3,
        'init_retry_base_seconds': 1,
        'warmup_delays_seconds': [0.5, 1, 2]
    })

    # Polling defaults
    _apply_section_defaults(config, 'polling', {
        'health_check_interval_seconds': 300
    })

    # Display defaults
    _apply_section_defaults(config, 'display', {
        'grouping_enabled': True,
        'visible_models': [],
        'warning_threshold': 30,
        'critical_threshold': 10,
        'notification_enabled': True
    })

    # Settings state file defaults
    _apply_section_defaults(config, 'state', {
        'file': 'data/settings_state.yaml'
    })

    # Quota cache defaults
    _apply_section_defaults(config, 'cache', {
        'enabled': True,
        'directory': 'data/quota_cache'
    })

    # API defaults
    _apply_section_defaults(config, 'api', {
        'enabled': True,
        'host': '127.0.0.1',
        'port': 8765,
        'cors_origins': [],
        'max_notifications': 50
    })

    # Logging defaults
    _apply_section_defaults(config, 'logging', {
        'level': 'INFO',
        'file': 'logs/quota_cockpit.log',
        'console_output': True,
        'timezone': 'UTC'
    })

    return config


class TimezoneFormatter(logging.Formatter):
    """Formatter that renders timestamps in a configured timezone"""

    def __init__(self, fmt=None, timezone_name: str = 'UTC'):
        super().__init__(fmt)
        try:
            self.tz = pytz.timezone(timezone_name)
        except pytz.UnknownTimeZoneError:
            self.tz = pytz.utc

    def formatTime(self, record, datefmt=None):
        # Convert timestamp to the configured timezone
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
    timezone_name = log_config.get('timezone', 'UTC')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = TimezoneFormatter(log_format, timezone_name)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )
    logging.getLogger().setLevel(getattr(logging, level.upper()))

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logging.getLogger().addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        # Create logs directory if it doesn't exist
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, timezone={timezone_name}, "
                f"console={log_config.get('console_output', True)}, file={log_file}")

def get_sample_config() -> Dict:
    """Return a sample configuration documenting every key"""
    return {
        "discovery": {
            "max_attempts": 3,                  # Scans per discovery run
            "boot_attempts": 3,                 # Discovery runs at startup
            "boot_backoff_seconds": 2,          # Doubles after each failed boot attempt
            "max_consecutive_failures": 5,      # Rediscoveries before giving up
            "process_timeout_seconds": 15,
            "verify_timeout_seconds": 2,
            "retry_delay_seconds": 0.1,
            "cold_start_wait_seconds": 3,
            "require_verified_port": False      # True: never use an unverified port
        },
        "telemetry": {
            "request_timeout_seconds": 10,
            "readiness_timeout_seconds": 10,
            "readiness_poll_interval_seconds": 0.5,
            "readiness_probe_timeout_seconds": 2,
            "init_max_retries": 3,
            "init_retry_base_seconds": 1,
            "warmup_delays_seconds": [0.5, 1, 2]
        },
        "polling": {
            "refresh_interval_seconds": 120,
            "health_check_interval_seconds": 300
        },
        "display": {
            "grouping_enabled": True,
            "visible_models": [],
            "warning_threshold": 30,
            "critical_threshold": 10,
            "notification_enabled": True
        },
        "state": {
            "file": "data/settings_state.yaml"
        },
        "cache": {
            "enabled": True,
            "directory": "data/quota_cache"
        },
        "api": {
            "enabled": True,
            "host": "127.0.0.1",
            "port": 8765,
            "cors_origins": [],
            "max_notifications": 50
        },
        "logging": {
            "level": "INFO",
            "file": "logs/quota_cockpit.log",
            "console_output": True,
            "timezone": "UTC"
        }
    }
