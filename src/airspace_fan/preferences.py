"""
User preferences: alert thresholds and per-fan display names, kept in a YAML file
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .monitoring.threshold import ThresholdConfig

logger = logging.getLogger(__name__)


class PreferenceStore:
    """Reads and writes user preferences"""

    def __init__(self, path: str = "config/preferences.yaml"):
        self.path = Path(path)
        self._data: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        if not self.path.exists():
            logger.info(f"No preference file at {self.path} - using defaults")
            self._data = {}
            return
        try:
            with open(self.path, 'r') as f:
                self._data = yaml.safe_load(f) or {}
            logger.info(f"Preferences loaded from {self.path}")
        except yaml.YAMLError as e:
            logger.error(f"Unreadable preference file {self.path}: {e} - using defaults")
            self._data = {}

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, 'w') as f:
            yaml.safe_dump(self._data, f, default_flow_style=False, sort_keys=True)
        tmp_path.replace(self.path)

    # ================== THRESHOLDS ==================

    def threshold_config(self) -> ThresholdConfig:
        thresholds = self._data.get('thresholds', {}) or {}
        defaults = ThresholdConfig()
        return ThresholdConfig(
            low_bound=float(thresholds.get('low_bound', defaults.low_bound)),
            high_bound=float(thresholds.get('high_bound', defaults.high_bound)),
            enabled=bool(thresholds.get('enabled', defaults.enabled))
        )

    def set_threshold_config(self, config: ThresholdConfig) -> None:
        if config.low_bound >= config.high_bound:
            raise ValueError("low_bound must be below high_bound")
        self._data['thresholds'] = {
            'low_bound': config.low_bound,
            'high_bound': config.high_bound,
            'enabled': config.enabled
        }
        self.save()
        logger.info(
            f"Thresholds updated: low={config.low_bound} high={config.high_bound} enabled={config.enabled}"
        )

    # ================== FAN NAMES ==================

    def fan_name(self, mac_addr: str, default: Optional[str] = None) -> Optional[str]:
        names = self._data.get('fan_names', {}) or {}
        return names.get(mac_addr.upper(), default)

    def set_fan_name(self, mac_addr: str, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("fan name must not be empty")
        self._data.setdefault('fan_names', {})[mac_addr.upper()] = name
        self.save()
        logger.info(f"Fan {mac_addr.upper()} renamed to '{name}'")
