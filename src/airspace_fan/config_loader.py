"""
Configuration loader for the Airspace Fan Local Server
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
    if 'network' not in config:
        raise ValueError("Missing required configuration section: network")

    network = config['network']
    if 'ip_ranges' not in network or not network['ip_ranges']:
        raise ValueError("network.ip_ranges is required and must not be empty")

    if 'max_workers' in network and int(network['max_workers']) < 1:
        raise ValueError("network.max_workers must be at least 1")

    fans = config.get('fans', {})
    for model, levels in fans.get('speed_levels', {}).items():
        if int(levels) < 1:
            raise ValueError(f"fans.speed_levels.{model} must be at least 1")

    background = config.get('background', {})
    if 'check_budget_seconds' in background and 'host_expiration_seconds' in background:
        budget = float(background['check_budget_seconds'])
        expiration = float(background['host_expiration_seconds'])
        if budget >= expiration:
            # The local budget has to fire before the host kills the work
            logger.warning(
                f"background.check_budget_seconds ({budget}) is not below "
                f"host_expiration_seconds ({expiration}) - checks may be killed by the host"
            )

def _apply_section_defaults(config: Dict, section: str, defaults: Dict) -> None:
    if section not in config or config[section] is None:
        config[section] = {}
    for key, default_value in defaults.items():
        if key not in config[section]:
            config[section][key] = default_value

def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Network defaults
    _apply_section_defaults(config, 'network', {
        'port': 80,
        'request_timeout': 3,
        'max_workers': 16,
        'scan_interval_minutes': 30
    })

    # Fan defaults
    _apply_section_defaults(config, 'fans', {
        'default_speed_levels': 7,
        'speed_levels': {},
        'max_timer_hours': 12,
        'fault_threshold': 3,
        'refresh_interval_seconds': 5
    })

    # Weather defaults
    _apply_section_defaults(config, 'weather', {
        'enabled': False,
        'api_key': None,
        'zip_code': None,
        'country_code': 'US',
        'update_interval_minutes': 15,
        'timeout_seconds': 10,
        'retry_attempts': 3
    })

    # Background window defaults
    _apply_section_defaults(config, 'background', {
        'identifier': 'temperature-out-of-range',
        'check_budget_seconds': 25,
        'host_expiration_seconds': 30,
        'minimum_interval_minutes': 15,
        'scan_on_alert': True
    })

    _apply_section_defaults(config, 'preferences', {
        'file': 'config/preferences.yaml'
    })

    # API defaults
    _apply_section_defaults(config, 'api', {
        'host': '0.0.0.0',
        'port': 8000
    })

    # Logging defaults
    _apply_section_defaults(config, 'logging', {
        'level': 'INFO',
        'file': 'logs/airspace_fan.log',
        'console_output': True,
        'timezone': 'America/New_York'
    })

    return config

def speed_levels_for_model(config: Dict, model: str) -> int:
    """Number of discrete speed levels for a fan model"""
    fans = config.get('fans', {})
    levels = fans.get('speed_levels', {}) or {}
    return int(levels.get(model, fans.get('default_speed_levels', 7)))


class LocalTimeFormatter(logging.Formatter):
    """Formatter that renders timestamps in the site's local timezone"""

    def __init__(self, fmt=None, timezone_name: str = 'America/New_York'):
        super().__init__(fmt)
        self.local_tz = pytz.timezone(timezone_name)

    def formatTime(self, record, datefmt=None):
        dt = datetime.fromtimestamp(record.created, tz=self.local_tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS TZ
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')

def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with local-timezone timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')

    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = LocalTimeFormatter(log_format, log_config.get('timezone', 'America/New_York'))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[]
    )

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logging.getLogger().addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, console={log_config.get('console_output', True)}, file={log_file}")

def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "network": {
            "ip_ranges": ["192.168.1.1-192.168.1.254"],
            "port": 80,
            "request_timeout": 3,
            "max_workers": 16,
            "scan_interval_minutes": 30
        },
        "fans": {
            "default_speed_levels": 7,
            "speed_levels": {"2.5eWHF": 7, "4.3eWHF": 10},
            "max_timer_hours": 12,
            "fault_threshold": 3,
            "refresh_interval_seconds": 5
        },
        "weather": {
            "enabled": True,
            "api_key": "YOUR_API_KEY_HERE",
            "zip_code": "02101",
            "update_interval_minutes": 15,
            "timeout_seconds": 10,
            "retry_attempts": 3
        },
        "background": {
            "identifier": "temperature-out-of-range",
            "check_budget_seconds": 25,
            "host_expiration_seconds": 30,
            "minimum_interval_minutes": 15,
            "scan_on_alert": True
        },
        "preferences": {
            "file": "config/preferences.yaml"
        },
        "api": {
            "host": "0.0.0.0",
            "port": 8000
        },
        "logging": {
            "level": "INFO",
            "file": "logs/airspace_fan.log",
            "console_output": True,
            "timezone": "America/New_York"
        }
    }
